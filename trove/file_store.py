"""
File store: one markdown file per note.

This is the durable, human-editable source of truth. Each file is a YAML
frontmatter header followed by the markdown body, at

    {base_dir}/{type}/{category}/{YYYY-MM-DD}-{slug}.md

The store keeps an in-memory id -> path index, rebuilt by scanning
``base_dir`` when the store is constructed. The index and secondary
stores are derived from these files; see reconciler.py.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Iterator, Optional, Union

import yaml

from .errors import NotFoundError
from .types import DEFAULT_CATEGORY, Note, NoteMetadata, slugify, utc_now

logger = logging.getLogger(__name__)

NOTE_SUFFIX = ".md"

# Opening '---' line, header, closing '---' line. The body is everything after.
_FRONTMATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)^---[ \t]*(?:\r?\n|\Z)", re.S | re.M)

PathLike = Union[str, Path]


class MalformedNoteError(ValueError):
    """A file exists but is not a readable note."""


def _path_segment(value: str) -> str:
    """Make a type/category value safe to use as one directory name."""
    segment = value.strip().replace("/", "-").replace("\\", "-")
    if segment in ("", ".", ".."):
        return DEFAULT_CATEGORY
    return segment


def build_file_path(base_dir: Path, meta: NoteMetadata, suffix: str = "") -> Path:
    """Deterministic location of a note file.

    ``suffix`` disambiguates slugs that collide with a different note.
    """
    date = meta.created[:10]
    category = _path_segment(meta.category or DEFAULT_CATEGORY)
    directory = base_dir / _path_segment(meta.type) / category
    return directory / f"{date}-{slugify(meta.title)}{suffix}{NOTE_SUFFIX}"


def render_note(meta: NoteMetadata, content: str) -> str:
    """Serialise metadata and body to the on-disk file format."""
    header = yaml.safe_dump(
        meta.to_frontmatter(),
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )
    return f"---\n{header}---\n{content}"


def parse_note(text: str) -> tuple[dict[str, Any], str]:
    """
    Split file text into (header mapping, body).

    Raises:
        MalformedNoteError: no frontmatter block, or invalid YAML
    """
    match = _FRONTMATTER_RE.match(text)
    if match is None:
        raise MalformedNoteError("No frontmatter header")
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        raise MalformedNoteError(f"Invalid frontmatter: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedNoteError("Frontmatter is not a mapping")
    return data, text[match.end():]


def load_note(path: Path) -> Note:
    """
    Read and strictly parse one note file.

    Raises:
        OSError: file can't be read
        MalformedNoteError: header missing, invalid, or lacking required fields
    """
    with open(path, encoding="utf-8", newline="") as f:
        text = f.read()
    data, content = parse_note(text)
    try:
        metadata = NoteMetadata.from_frontmatter(data)
    except ValueError as e:
        raise MalformedNoteError(str(e)) from e
    return Note(metadata=metadata, content=content, file_path=str(path))


def iter_note_files(base_dir: Path) -> Iterator[Path]:
    """All note files under base_dir, in sorted (deterministic) order.

    Hidden files and directories (leading '.') are skipped; editors and
    the atomic-write temp files live there.
    """
    if not base_dir.exists():
        return
    for root, dirs, files in os.walk(base_dir):
        dirs[:] = sorted(d for d in dirs if not d.startswith("."))
        for name in sorted(files):
            if name.endswith(NOTE_SUFFIX) and not name.startswith("."):
                yield Path(root) / name


def _atomic_write(path: Path, text: str) -> None:
    """Write text to path via a temp file in the same directory and rename."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class FileStore:
    """
    Markdown-file store for canonical note records.

    Owns the id -> path index; no other component touches it except
    through the register/unregister methods.
    """

    def __init__(self, base_dir: PathLike):
        """
        Args:
            base_dir: Root directory of the note tree (created if missing)
        """
        self._base_dir = Path(base_dir)
        self._base_dir.mkdir(parents=True, exist_ok=True)
        self._id_index: dict[str, Path] = {}
        self.scan()
        logger.info("File store initialized: %s (%d notes)", self._base_dir, len(self._id_index))

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def scan(self) -> int:
        """
        Rebuild the id index from the files on disk.

        Malformed files are skipped with a warning. When two files claim
        the same id, the first in sorted order wins.

        Returns:
            Number of indexed notes
        """
        index: dict[str, Path] = {}
        for path in iter_note_files(self._base_dir):
            try:
                note = load_note(path)
            except (OSError, UnicodeDecodeError, MalformedNoteError) as e:
                logger.warning("Skipping malformed note file %s: %s", path, e)
                continue
            if note.id in index:
                logger.warning(
                    "Duplicate note id %s in %s (already at %s), ignoring",
                    note.id, path, index[note.id],
                )
                continue
            index[note.id] = path
        self._id_index = index
        return len(index)

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def save(self, metadata: NoteMetadata, content: str) -> str:
        """
        Write a note to its deterministic path.

        If a different note already occupies the computed path, a numeric
        suffix is appended to the slug. If this id was previously stored at
        another path (e.g. the title changed), the old file is removed so
        that there is at most one file per id.

        Returns:
            The file path written
        """
        metadata.validate()
        path = self._free_path(metadata)
        path.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write(path, render_note(metadata, content))

        previous = self._id_index.get(metadata.id)
        self._id_index[metadata.id] = path
        if previous is not None and previous != path:
            self._unlink(previous)
        logger.debug("Note saved: %s -> %s", metadata.id, path)
        return str(path)

    def _free_path(self, metadata: NoteMetadata) -> Path:
        """First candidate path not owned by a different note."""
        n = 1
        while True:
            candidate = build_file_path(
                self._base_dir, metadata, suffix="" if n == 1 else f"-{n}"
            )
            owner = self._owner_of(candidate)
            if owner is None or owner == metadata.id:
                return candidate
            n += 1

    def _owner_of(self, path: Path) -> Optional[str]:
        """Id of the note stored at path, if any."""
        for id, indexed in self._id_index.items():
            if indexed == path:
                return id
        if not path.exists():
            return None
        # On disk but not indexed (added out of band since the last scan)
        try:
            return load_note(path).id
        except (OSError, UnicodeDecodeError, MalformedNoteError):
            return "<unreadable>"

    def update(
        self,
        path: PathLike,
        changes: Optional[dict[str, Any]] = None,
        content: Optional[str] = None,
    ) -> Note:
        """
        Merge metadata changes (and optionally a new body) into an existing note.

        The file is rewritten in place and ``updated`` is bumped. The id
        cannot be changed.

        Raises:
            NotFoundError: path does not hold a readable note
            ValueError: the merged metadata is invalid
        """
        path = Path(path)
        existing = self.read(path)
        if existing is None:
            raise NotFoundError("Note file", str(path))

        changes = {k: v for k, v in (changes or {}).items() if k not in ("id", "updated")}
        metadata = dataclasses.replace(existing.metadata, **changes, updated=utc_now())
        metadata.validate()
        new_content = existing.content if content is None else content

        _atomic_write(path, render_note(metadata, new_content))
        self._id_index[metadata.id] = path
        logger.debug("Note updated: %s (%s)", metadata.id, path)
        return Note(metadata=metadata, content=new_content, file_path=str(path))

    def remove(self, path: PathLike) -> None:
        """Delete a note file and its index entry. Missing paths are a no-op."""
        path = Path(path)
        self.unregister_file(path)
        self._unlink(path)

    def _unlink(self, path: Path) -> None:
        try:
            path.unlink()
            logger.debug("Note removed: %s", path)
        except FileNotFoundError:
            pass

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def read(self, path: PathLike) -> Optional[Note]:
        """
        Read a note file.

        Returns None (not an error) if the file is missing or unreadable.
        """
        path = Path(path)
        if not path.is_file():
            return None
        try:
            return load_note(path)
        except (OSError, UnicodeDecodeError, MalformedNoteError) as e:
            logger.warning("Failed to read note %s: %s", path, e)
            return None

    def read_by_id(self, id: str) -> Optional[Note]:
        """Read a note via the id index. None if unknown or unreadable."""
        path = self._id_index.get(id)
        if path is None:
            return None
        return self.read(path)

    def path_for(self, id: str) -> Optional[str]:
        """Indexed file path for an id."""
        path = self._id_index.get(id)
        return str(path) if path is not None else None

    def list(self, type: Optional[str] = None) -> list[Note]:
        """All readable notes, optionally of one type, newest created first."""
        notes = []
        for path in list(self._id_index.values()):
            note = self.read(path)
            if note is not None and (type is None or note.metadata.type == type):
                notes.append(note)
        notes.sort(key=lambda n: n.metadata.created, reverse=True)
        return notes

    def count(self) -> int:
        return len(self._id_index)

    # -------------------------------------------------------------------------
    # Index maintenance (used by the reconciler and watcher)
    # -------------------------------------------------------------------------

    def register_file(self, id: str, path: PathLike) -> None:
        """Record that id lives at path."""
        self._id_index[id] = Path(path)

    def unregister(self, id: str) -> None:
        """Forget an id."""
        self._id_index.pop(id, None)

    def unregister_file(self, path: PathLike) -> Optional[str]:
        """Forget whichever id is indexed at path. Returns that id, if any."""
        path = Path(path)
        for id, indexed in list(self._id_index.items()):
            if indexed == path:
                del self._id_index[id]
                return id
        return None
