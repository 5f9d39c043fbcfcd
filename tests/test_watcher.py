"""
Tests for the debounced file watcher.

Most tests drive record()/flush() directly with a long debounce so no
timer fires during the test.
"""

import threading
import time
from pathlib import Path

import pytest

from trove.watcher import Watcher, is_note_path


class Recorder:
    def __init__(self):
        self.calls = []
        self.overflows = 0
        self.event = threading.Event()

    def __call__(self, path, kind):
        self.calls.append((Path(path).name, kind))
        self.event.set()

    def overflow(self):
        self.overflows += 1
        self.event.set()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def watcher(tmp_path, recorder):
    w = Watcher(tmp_path, recorder, debounce=60.0, max_pending=5,
                on_overflow=recorder.overflow)
    yield w
    w.stop()


class TestFiltering:
    """Only visible markdown files are of interest."""

    @pytest.mark.parametrize("name,expected", [
        ("note.md", True),
        (".note.md.swp", False),
        (".hidden.md", False),
        ("note.txt", False),
        ("note.md~", False),
        (".abc123.tmp", False),
    ])
    def test_is_note_path(self, name, expected):
        """Hidden, temp and non-markdown files are filtered."""
        assert is_note_path(Path("/x") / name) is expected

    def test_ignored_paths_not_recorded(self, watcher, tmp_path):
        """Filtered paths don't count as events."""
        watcher.record(tmp_path / "image.png", "created")
        assert watcher.events_received == 0
        assert watcher.flush() == 0


class TestCoalescing:
    """Per-path coalescing and dispatch order."""

    def test_latest_kind_wins(self, watcher, recorder, tmp_path):
        """Several events for one path dispatch once, as the last kind."""
        path = tmp_path / "a.md"
        watcher.record(path, "created")
        watcher.record(path, "modified")
        watcher.record(path, "modified")
        assert watcher.flush() == 1
        assert recorder.calls == [("a.md", "modified")]
        assert watcher.events_received == 3
        assert watcher.changes_dispatched == 1

    def test_deletes_dispatched_last(self, watcher, recorder, tmp_path):
        """Creates and modifications go before deletions."""
        watcher.record(tmp_path / "old.md", "deleted")
        watcher.record(tmp_path / "new.md", "created")
        watcher.record(tmp_path / "other.md", "modified")
        watcher.flush()
        assert recorder.calls[-1] == ("old.md", "deleted")
        assert {c for c in recorder.calls[:2]} == {("new.md", "created"), ("other.md", "modified")}

    def test_flush_empties_pending(self, watcher, recorder, tmp_path):
        """A flush clears the pending set."""
        watcher.record(tmp_path / "a.md", "created")
        watcher.flush()
        assert watcher.flush() == 0
        assert len(recorder.calls) == 1

    def test_callback_errors_do_not_stop_dispatch(self, tmp_path, caplog):
        """One failing callback doesn't block the rest."""
        seen = []

        def callback(path, kind):
            seen.append(path.name)
            if path.name == "a.md":
                raise RuntimeError("boom")

        w = Watcher(tmp_path, callback, debounce=60.0)
        w.record(tmp_path / "a.md", "created")
        w.record(tmp_path / "b.md", "created")
        assert w.flush() == 2
        assert sorted(seen) == ["a.md", "b.md"]
        assert "boom" in caplog.text


class TestOverflow:
    """Too many pending paths collapse to one full pass."""

    def test_overflow_calls_full_pass_once(self, watcher, recorder, tmp_path):
        """Past max_pending, one full pass replaces the per-file calls."""
        for i in range(8):
            watcher.record(tmp_path / f"n{i}.md", "created")
        assert watcher.flush() == 1
        assert recorder.overflows == 1
        assert recorder.calls == []
        assert watcher.overflows == 1

    def test_normal_after_overflow(self, watcher, recorder, tmp_path):
        """Dispatch is per file again after an overflow."""
        for i in range(8):
            watcher.record(tmp_path / f"n{i}.md", "created")
        watcher.flush()
        watcher.record(tmp_path / "later.md", "created")
        watcher.flush()
        assert recorder.calls == [("later.md", "created")]


class TestMoveEvents:
    """File moves split into delete + create; directory changes force a full pass."""

    def test_on_moved(self, watcher, recorder, tmp_path):
        """A file move becomes create at the new path, then delete at the old."""
        from watchdog.events import FileMovedEvent

        watcher.on_moved(FileMovedEvent(str(tmp_path / "a.md"), str(tmp_path / "b.md")))
        watcher.flush()
        assert recorder.calls == [("b.md", "created"), ("a.md", "deleted")]

    def test_empty_directory_create_ignored(self, watcher, tmp_path):
        """A new empty directory is left to the file events that follow."""
        from watchdog.events import DirCreatedEvent

        (tmp_path / "sub").mkdir()
        watcher.on_created(DirCreatedEvent(str(tmp_path / "sub")))
        assert watcher.events_received == 0

    def test_populated_directory_create_triggers_full_pass(self, watcher, recorder, tmp_path):
        """A directory moved in from outside arrives with its notes already present."""
        from watchdog.events import DirCreatedEvent

        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "a.md").write_text("x")
        watcher.on_created(DirCreatedEvent(str(tmp_path / "sub")))
        watcher.flush()
        assert recorder.overflows == 1
        assert recorder.calls == []

    def test_directory_delete_triggers_full_pass(self, watcher, recorder, tmp_path):
        """Deleting a directory replaces pending changes with one full pass."""
        from watchdog.events import DirDeletedEvent

        watcher.record(tmp_path / "a.md", "modified")
        watcher.on_deleted(DirDeletedEvent(str(tmp_path / "sub")))
        assert watcher.flush() == 1
        assert recorder.overflows == 1
        assert recorder.calls == []

    def test_directory_move_triggers_full_pass(self, watcher, recorder, tmp_path):
        """Moving a directory schedules a full pass even with no file events."""
        from watchdog.events import DirMovedEvent

        watcher.on_moved(DirMovedEvent(str(tmp_path / "old"), str(tmp_path / "new")))
        watcher.flush()
        assert recorder.overflows == 1
        assert recorder.calls == []

    def test_hidden_directory_delete_ignored(self, watcher, recorder, tmp_path):
        """Editor and VCS directories don't hold notes."""
        from watchdog.events import DirDeletedEvent

        watcher.on_deleted(DirDeletedEvent(str(tmp_path / ".git")))
        watcher.flush()
        assert recorder.overflows == 0

    def test_back_to_incremental_after_directory_pass(self, watcher, recorder, tmp_path):
        """The full pass is one-shot; later events dispatch per file."""
        from watchdog.events import DirDeletedEvent

        watcher.on_deleted(DirDeletedEvent(str(tmp_path / "sub")))
        watcher.flush()
        watcher.record(tmp_path / "b.md", "created")
        watcher.flush()
        assert recorder.overflows == 1
        assert recorder.calls == [("b.md", "created")]


class TestDebounce:
    """The timer flushes after a quiet period."""

    def test_timer_flushes(self, tmp_path, recorder):
        """Pending changes flush once the debounce expires."""
        w = Watcher(tmp_path, recorder, debounce=0.05)
        w.record(tmp_path / "a.md", "created")
        assert recorder.event.wait(5.0)
        assert recorder.calls == [("a.md", "created")]
        w.stop()

    def test_stop_flushes_pending(self, tmp_path, recorder):
        """stop() flushes what is pending."""
        w = Watcher(tmp_path, recorder, debounce=60.0)
        w.record(tmp_path / "a.md", "modified")
        w.stop()
        assert recorder.calls == [("a.md", "modified")]


@pytest.mark.slow
class TestObserver:
    """End to end with a real watchdog observer."""

    def test_sees_new_file(self, tmp_path, recorder):
        """A file written to the tree reaches the callback."""
        with Watcher(tmp_path, recorder, debounce=0.1) as w:
            assert w.is_running
            (tmp_path / "a.md").write_text("hello")
            deadline = time.monotonic() + 10
            while time.monotonic() < deadline and not recorder.calls:
                time.sleep(0.05)
        assert ("a.md", "created") in recorder.calls or ("a.md", "modified") in recorder.calls
        assert not w.is_running
