"""
Tests for the markdown file store.
"""

from pathlib import Path

import pytest

from trove.errors import NotFoundError
from trove.file_store import FileStore, build_file_path, parse_note, render_note, MalformedNoteError
from trove.types import slugify

from conftest import make_meta, write_raw


class TestPaths:
    """Deterministic file locations."""

    def test_slug_path(self, tmp_path):
        """Files live at <type>/<category>/<date>-<slug>.md."""
        meta = make_meta(
            title="Hello, World! (Part 2)",
            category="general",
            created="2024-01-15T10:00:00Z",
        )
        path = build_file_path(tmp_path, meta)
        assert path.as_posix().endswith("note/general/2024-01-15-hello-world-part-2.md")

    def test_empty_category_defaults(self, tmp_path):
        """A blank category files under "uncategorized"."""
        meta = make_meta(category="")
        assert build_file_path(tmp_path, meta).parent.name == "uncategorized"

    def test_category_cannot_escape_tree(self, tmp_path):
        """Path separators in a category stay inside the tree."""
        meta = make_meta(category="../../etc")
        path = build_file_path(tmp_path, meta)
        assert path.parent.parent == tmp_path / "note"

    def test_slug_capped_at_60(self):
        """Long titles are cut to 60 characters."""
        assert len(slugify("word " * 40)) <= 60

    def test_slug_of_symbols_only(self):
        """A title with no word characters still gets a slug."""
        assert slugify("!!!") == "untitled"


class TestRoundTrip:
    """save() then read() returns what was written."""

    @pytest.mark.parametrize("body", [
        "Plain text.",
        "",
        "\n\nLeading blank lines and trailing spaces   \n",
        "---\nA body that contains a delimiter line\n---\n",
        "Unicode: café, 日本語, emoji 🎉",
        "a\r\nb\rc",
        "Windows lines\r\nkept as written\r\n",
    ])
    def test_body_exact(self, file_store, body):
        """The body comes back byte for byte, line endings included."""
        meta = make_meta(tags=["a", "b, with comma"], category="general")
        path = file_store.save(meta, body)
        note = file_store.read(path)
        assert note is not None
        assert note.content == body
        assert note.metadata.id == meta.id
        assert note.metadata.title == meta.title
        assert note.metadata.tags == ["a", "b, with comma"]
        assert note.metadata.category == "general"

    def test_optional_fields(self, file_store):
        """Optional header fields survive a save and read."""
        meta = make_meta(
            source_url="https://example.com/a",
            author="someone",
            gist="short",
            status="read",
            input_source="url",
            links=["other"],
        )
        note = file_store.read(file_store.save(meta, "x"))
        assert note.metadata.source_url == "https://example.com/a"
        assert note.metadata.author == "someone"
        assert note.metadata.gist == "short"
        assert note.metadata.status == "read"
        assert note.metadata.input_source == "url"
        assert note.metadata.links == ["other"]

    def test_header_format(self):
        """The header is YAML between --- lines, with unset fields left out."""
        text = render_note(make_meta(), "body")
        assert text.startswith("---\nid: note-1\n")
        data, body = parse_note(text)
        assert data["category"] == "uncategorized"
        assert "inputSource" not in data
        assert body == "body"

    def test_line_endings_written_verbatim(self, file_store):
        """Carriage returns in the body reach the disk untranslated."""
        path = file_store.save(make_meta(), "a\r\nb\rc")
        assert Path(path).read_bytes().endswith(b"---\na\r\nb\rc")


class TestRead:
    """read() and startup scan tolerate bad files."""

    def test_missing_is_none(self, file_store, tmp_path):
        """A missing file reads as None."""
        assert file_store.read(tmp_path / "nope.md") is None

    def test_no_frontmatter_is_none(self, file_store, knowledge_dir):
        """A file with no header is not a note."""
        path = write_raw(knowledge_dir / "note" / "x.md", "just text\n")
        assert file_store.read(path) is None

    def test_missing_id_is_none(self, file_store, knowledge_dir):
        """A header without an id is not a note."""
        path = write_raw(knowledge_dir / "note" / "x.md",
                         "---\ntype: note\ntitle: T\ncreated: 2024-01-01\n---\nbody")
        assert file_store.read(path) is None

    def test_unknown_type_is_none(self, file_store, knowledge_dir):
        """A header with an unknown type is not a note."""
        path = write_raw(knowledge_dir / "x.md",
                         "---\nid: a\ntype: podcast\ntitle: T\ncreated: 2024-01-01\n---\n")
        assert file_store.read(path) is None

    def test_tolerates_missing_optional_fields(self, file_store, knowledge_dir):
        """Only id, type, title and created are required."""
        path = write_raw(knowledge_dir / "x.md",
                         "---\nid: a\ntype: note\ntitle: T\ncreated: 2024-01-01\n---\nbody")
        note = file_store.read(path)
        assert note.metadata.tags == []
        assert note.metadata.links == []
        assert note.metadata.category == "uncategorized"
        assert note.metadata.updated == "2024-01-01"

    def test_invalid_yaml_raises_in_parser(self):
        """Broken YAML is a MalformedNoteError from the parser."""
        with pytest.raises(MalformedNoteError):
            parse_note("---\nid: [unclosed\n---\nbody")

    def test_scan_skips_malformed(self, knowledge_dir, caplog):
        """The startup scan logs and skips unreadable files."""
        FileStore(knowledge_dir).save(make_meta(id="good"), "ok")
        write_raw(knowledge_dir / "note" / "bad.md", "no header")
        store = FileStore(knowledge_dir)
        assert store.count() == 1
        assert store.read_by_id("good").content == "ok"
        assert "bad.md" in caplog.text

    def test_scan_duplicate_id_first_wins(self, knowledge_dir):
        """With two files claiming one id, the first in sorted order wins."""
        text = "---\nid: dup\ntype: note\ntitle: T\ncreated: 2024-01-01\n---\n"
        write_raw(knowledge_dir / "a.md", text + "first")
        write_raw(knowledge_dir / "b.md", text + "second")
        store = FileStore(knowledge_dir)
        assert store.read_by_id("dup").content == "first"


class TestWrite:
    """save/update/remove semantics."""

    def test_save_registers_id(self, file_store):
        """save() records the id's path."""
        path = file_store.save(make_meta(id="x"), "body")
        assert file_store.path_for("x") == path
        assert file_store.read_by_id("x").content == "body"

    def test_collision_with_other_id_gets_suffix(self, file_store):
        """A path taken by another note gets a numeric suffix."""
        p1 = file_store.save(make_meta(id="a", title="Same"), "one")
        p2 = file_store.save(make_meta(id="b", title="Same"), "two")
        assert p1 != p2
        assert Path(p2).name == "2024-01-15-same-2.md"
        assert file_store.read(p1).content == "one"
        assert file_store.read(p2).content == "two"

    def test_resave_same_id_new_path_removes_old(self, file_store):
        """A retitled note moves and the old file is removed."""
        old = file_store.save(make_meta(id="a", title="Old title"), "x")
        new = file_store.save(make_meta(id="a", title="New title"), "x")
        assert old != new
        assert not Path(old).exists()
        assert file_store.path_for("a") == new

    def test_resave_same_path_overwrites(self, file_store):
        """Saving the same note again replaces the file in place."""
        p1 = file_store.save(make_meta(id="a"), "one")
        p2 = file_store.save(make_meta(id="a"), "two")
        assert p1 == p2
        assert file_store.read(p1).content == "two"

    def test_save_leaves_no_temp_files(self, file_store, knowledge_dir):
        """Atomic writes clean up their temp files."""
        file_store.save(make_meta(), "x")
        names = [p.name for p in knowledge_dir.rglob("*")]
        assert not any(n.endswith(".tmp") for n in names)

    def test_update_merges_and_bumps_updated(self, file_store):
        """update() merges metadata and moves the updated timestamp."""
        path = file_store.save(make_meta(tags=["a"]), "body")
        note = file_store.update(path, {"tags": ["a", "b"]})
        assert note.metadata.tags == ["a", "b"]
        assert note.content == "body"
        assert note.metadata.updated > "2024-01-15T10:00:00.000Z"
        assert file_store.read(path).metadata.tags == ["a", "b"]

    def test_update_new_body(self, file_store):
        """update() can replace the body."""
        path = file_store.save(make_meta(), "old")
        file_store.update(path, {}, "new")
        assert file_store.read(path).content == "new"

    def test_update_cannot_change_id(self, file_store):
        """The id in an update is ignored."""
        path = file_store.save(make_meta(id="keep-me"), "x")
        note = file_store.update(path, {"id": "other"})
        assert note.metadata.id == "keep-me"

    def test_update_missing_raises(self, file_store, tmp_path):
        """Updating a missing file raises NotFoundError."""
        with pytest.raises(NotFoundError):
            file_store.update(tmp_path / "missing.md", {"title": "x"})

    def test_remove_is_idempotent(self, file_store):
        """Removing twice is fine and unregisters the id."""
        path = file_store.save(make_meta(id="gone"), "x")
        file_store.remove(path)
        file_store.remove(path)
        assert not Path(path).exists()
        assert file_store.path_for("gone") is None

    def test_list_sorted_and_filtered(self, file_store):
        """list() is newest first and filters by type."""
        file_store.save(make_meta(id="a", title="A", created="2024-01-01T00:00:00Z"), "")
        file_store.save(make_meta(id="b", title="B", created="2024-03-01T00:00:00Z"), "")
        file_store.save(make_meta(id="c", title="C", type="article",
                                  created="2024-02-01T00:00:00Z"), "")
        assert [n.id for n in file_store.list()] == ["b", "c", "a"]
        assert [n.id for n in file_store.list(type="article")] == ["c"]

    def test_register_and_unregister(self, file_store, tmp_path):
        """The id index can be maintained by path or by id."""
        file_store.register_file("x", tmp_path / "x.md")
        assert file_store.path_for("x") == str(tmp_path / "x.md")
        assert file_store.unregister_file(tmp_path / "x.md") == "x"
        assert file_store.path_for("x") is None
        file_store.register_file("y", tmp_path / "y.md")
        file_store.unregister("y")
        assert file_store.path_for("y") is None
