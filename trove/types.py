"""
Data types for the knowledge store.

A note is split into metadata (the frontmatter header of its file) and a
markdown body. The same metadata is projected into the index row and,
partially, into the vector document; ``id`` is the join key everywhere.
"""

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional


# Closed sets. Anything outside these is rejected by parse/validate.
CONTENT_TYPES = frozenset({
    "note", "journal", "article", "youtube", "tweet", "image",
    "conversation", "reminder",
})
CONTENT_STATUSES = frozenset({"saved", "read", "archived"})
INPUT_SOURCES = frozenset({"text", "voice", "url", "file", "image"})

DEFAULT_CATEGORY = "uncategorized"
MAX_SLUG_LENGTH = 60

# Header fields a file must carry to be a readable note
REQUIRED_FIELDS = ("id", "type", "title", "created")

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def utc_now() -> str:
    """Current UTC timestamp: YYYY-MM-DDTHH:MM:SS.mmmZ.

    Lexicographic order matches chronological order, which the index
    relies on for range filters and sorting.
    """
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def slugify(title: str) -> str:
    """Lowercase, collapse non-alphanumeric runs to '-', trim, cap at 60 chars."""
    slug = _SLUG_RE.sub("-", title.lower()).strip("-")[:MAX_SLUG_LENGTH]
    return slug or "untitled"


def content_hash(content: str) -> str:
    """Full SHA256 of a note body, used only for drift detection."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def embedding_text(title: str, content: str, max_chars: int = 30_000) -> str:
    """The string that gets embedded for a note: title, blank line, body."""
    return f"{title}\n\n{content}"[:max_chars]


def _as_timestamp(value: Any) -> str:
    """Normalise a header timestamp.

    Hand-edited files may carry unquoted YAML dates, which the loader turns
    into date/datetime objects.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _as_list(value: Any) -> list[str]:
    """Header list fields: accept a YAML list or a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None and str(v) != ""]
    raise ValueError(f"Expected a list, got {type(value).__name__}")


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


@dataclass
class NoteMetadata:
    """
    Metadata header of a note.

    ``created``/``updated`` are ISO-8601 UTC strings. ``tags`` and ``links``
    keep their order. Image fields are only set for ``type == "image"``.
    """
    id: str
    type: str
    title: str
    created: str
    updated: str
    tags: list[str] = field(default_factory=list)
    links: list[str] = field(default_factory=list)
    category: str = DEFAULT_CATEGORY
    source_url: Optional[str] = None
    author: Optional[str] = None
    gist: Optional[str] = None
    status: Optional[str] = None
    input_source: Optional[str] = None
    image_path: Optional[str] = None
    image_metadata: Optional[dict[str, Any]] = None
    ocr_text: Optional[str] = None

    def validate(self) -> None:
        """Raise ValueError if the metadata cannot be stored."""
        if not self.id:
            raise ValueError("Note id is required")
        if self.type not in CONTENT_TYPES:
            raise ValueError(
                f"Unknown content type: {self.type!r} "
                f"(expected one of {', '.join(sorted(CONTENT_TYPES))})"
            )
        if not self.title or not self.title.strip():
            raise ValueError("Note title is required")
        if self.status is not None and self.status not in CONTENT_STATUSES:
            raise ValueError(f"Unknown status: {self.status!r}")
        if self.input_source is not None and self.input_source not in INPUT_SOURCES:
            raise ValueError(f"Unknown input source: {self.input_source!r}")

    def to_frontmatter(self) -> dict[str, Any]:
        """Header mapping in on-disk order. Absent optional fields are omitted."""
        fm: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "created": self.created,
            "updated": self.updated,
            "tags": list(self.tags),
            "links": list(self.links),
            "category": self.category or DEFAULT_CATEGORY,
        }
        optional = {
            "source_url": self.source_url,
            "author": self.author,
            "gist": self.gist,
            "status": self.status,
            "inputSource": self.input_source,
            "image_path": self.image_path,
            "image_metadata": self.image_metadata,
            "ocr_text": self.ocr_text,
        }
        fm.update({k: v for k, v in optional.items() if v})
        return fm

    @classmethod
    def from_frontmatter(cls, data: dict[str, Any]) -> "NoteMetadata":
        """
        Build metadata from a parsed header.

        Strict: raises ValueError on a missing required field or an
        invalid value, so no partial record ever leaves the parser.
        """
        if not isinstance(data, dict):
            raise ValueError("Frontmatter is not a mapping")
        missing = [f for f in REQUIRED_FIELDS if not data.get(f)]
        if missing:
            raise ValueError(f"Missing required field(s): {', '.join(missing)}")

        created = _as_timestamp(data["created"])
        image_metadata = data.get("image_metadata")
        meta = cls(
            id=str(data["id"]),
            type=str(data["type"]),
            title=str(data["title"]),
            created=created,
            updated=_as_timestamp(data["updated"]) if data.get("updated") else created,
            tags=_as_list(data.get("tags")),
            links=_as_list(data.get("links")),
            category=_optional_str(data.get("category")) or DEFAULT_CATEGORY,
            source_url=_optional_str(data.get("source_url")),
            author=_optional_str(data.get("author")),
            gist=_optional_str(data.get("gist")),
            status=_optional_str(data.get("status")),
            input_source=_optional_str(data.get("inputSource")),
            image_path=_optional_str(data.get("image_path")),
            image_metadata=image_metadata if isinstance(image_metadata, dict) else None,
            ocr_text=_optional_str(data.get("ocr_text")),
        )
        meta.validate()
        return meta


@dataclass
class Note:
    """A full note: metadata, markdown body, and the file it lives in."""
    metadata: NoteMetadata
    content: str
    file_path: str

    @property
    def id(self) -> str:
        return self.metadata.id


@dataclass
class NoteRow:
    """
    A row of the ``notes`` index table.

    ``tags``/``links`` are the stored JSON arrays; use ``tag_list`` and
    ``link_list`` for the decoded lists. ``snippet`` is only set on
    full-text search hits.
    """
    id: str
    type: str
    title: str
    content: str
    file_path: str
    tags: str
    links: str
    category: str
    created: str
    updated: str
    source_url: Optional[str] = None
    author: Optional[str] = None
    gist: Optional[str] = None
    content_hash: Optional[str] = None
    status: Optional[str] = None
    input_source: Optional[str] = None
    snippet: Optional[str] = None

    @property
    def tag_list(self) -> list[str]:
        return _decode_list(self.tags)

    @property
    def link_list(self) -> list[str]:
        return _decode_list(self.links)

    def to_note(self) -> Note:
        """Reconstruct a Note from the denormalised row content."""
        metadata = NoteMetadata(
            id=self.id,
            type=self.type,
            title=self.title,
            created=self.created,
            updated=self.updated,
            tags=self.tag_list,
            links=self.link_list,
            category=self.category or DEFAULT_CATEGORY,
            source_url=self.source_url,
            author=self.author,
            gist=self.gist,
            status=self.status,
            input_source=self.input_source,
        )
        return Note(metadata=metadata, content=self.content, file_path=self.file_path)


def _decode_list(stored: str) -> list[str]:
    """Decode a stored list column (JSON array; legacy comma-joined text)."""

    if not stored:
        return []
    if stored.startswith("["):
        try:
            return [str(v) for v in json.loads(stored)]
        except ValueError:
            pass
    return [v for v in stored.split(",") if v]


@dataclass
class SearchResult:
    """A resolved note with its score for the search mode that produced it."""
    note: Note
    score: float
    highlights: list[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.note.metadata.id


@dataclass
class VectorDocument:
    """An entry of the vector index. ``text`` is what was actually embedded."""
    id: str
    vector: list[float]
    text: str
    type: str
    title: str


@dataclass(frozen=True)
class VectorSearchResult:
    """A nearest-neighbour hit. Higher ``score`` means more similar."""
    id: str
    score: float
    type: str
    title: str = ""
    text: str = ""


@dataclass
class ReminderEntry:
    """A reminder row. Kept in the index database, not in the file store."""
    id: str
    title: str
    created: str
    updated: str
    description: Optional[str] = None
    due_date: Optional[str] = None
    priority: str = "medium"
    completed: bool = False
