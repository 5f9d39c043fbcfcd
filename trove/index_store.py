"""
Index store using SQLite.

A relational cache of the file store: one ``notes`` row per note, with
the full metadata projection, the body, a back-pointer to the file and the
body's content hash. An FTS5 external-content table over title, body, tags
and gist is kept in step by triggers.

The file store is the source of truth. Everything here can be rebuilt by
the reconciler.
"""

import json
import logging
import re
import sqlite3
from pathlib import Path
from typing import Iterator, Optional

from .errors import ValidationError
from .types import CONTENT_STATUSES, NoteMetadata, NoteRow, ReminderEntry, utc_now

logger = logging.getLogger(__name__)

# Hard cap on list_notes page size, regardless of what the caller asks for
MAX_LIST_LIMIT = 100
DEFAULT_LIST_LIMIT = 50

_ORDER_COLUMNS = {"created", "updated", "title"}
_FTS_TOKEN_RE = re.compile(r"\w+", re.UNICODE)
_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_NOTE_COLUMNS = (
    "id, type, title, content, file_path, tags, links, category, created, updated, "
    "source_url, author, gist, content_hash, status, input_source"
)


def _row_to_note(row: sqlite3.Row, snippet: Optional[str] = None) -> NoteRow:
    return NoteRow(
        id=row["id"],
        type=row["type"],
        title=row["title"],
        content=row["content"],
        file_path=row["file_path"],
        tags=row["tags"],
        links=row["links"],
        category=row["category"],
        created=row["created"],
        updated=row["updated"],
        source_url=row["source_url"],
        author=row["author"],
        gist=row["gist"],
        content_hash=row["content_hash"],
        status=row["status"],
        input_source=row["input_source"],
        snippet=snippet,
    )


def _row_to_reminder(row: sqlite3.Row) -> ReminderEntry:
    return ReminderEntry(
        id=row["id"],
        title=row["title"],
        created=row["created"],
        updated=row["updated"],
        description=row["description"],
        due_date=row["due_date"],
        priority=row["priority"],
        completed=bool(row["completed"]),
    )


def fts_query(text: str) -> Optional[str]:
    """
    Turn free text into a safe FTS5 MATCH expression.

    Each word becomes a quoted term (implicit AND), so user input can never
    be parsed as FTS5 syntax. Returns None when there are no words.
    """
    tokens = _FTS_TOKEN_RE.findall(text)
    if not tokens:
        return None
    return " ".join(f'"{t}"' for t in tokens)


class IndexStore:
    """
    SQLite-backed index of notes, with full-text search.

    Also holds the reminders table, which has no file-store counterpart.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file (``":memory:"`` for tests)
        """
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        if str(self._db_path) != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS notes (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                title TEXT NOT NULL,
                content TEXT NOT NULL,
                file_path TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '[]',
                links TEXT NOT NULL DEFAULT '[]',
                category TEXT NOT NULL DEFAULT '',
                source_url TEXT,
                author TEXT,
                gist TEXT,
                created TEXT NOT NULL,
                updated TEXT NOT NULL
            )
        """)

        # Older databases lack the drift-detection and lifecycle columns
        self._migrate()

        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_notes_type ON notes(type)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_notes_category ON notes(category)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_notes_created ON notes(created)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_notes_file_path ON notes(file_path)")

        fts_exists = self._conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'notes_fts'"
        ).fetchone() is not None
        self._conn.execute("""
            CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts USING fts5(
                title, content, tags, gist,
                content=notes,
                content_rowid=rowid,
                tokenize='porter unicode61'
            )
        """)
        if not fts_exists:
            # Index rows that predate the full-text table
            self._conn.execute("INSERT INTO notes_fts(notes_fts) VALUES ('rebuild')")
        self._conn.execute("""
            CREATE TRIGGER IF NOT EXISTS notes_ai AFTER INSERT ON notes BEGIN
                INSERT INTO notes_fts(rowid, title, content, tags, gist)
                VALUES (new.rowid, new.title, new.content, new.tags, new.gist);
            END
        """)
        self._conn.execute("""
            CREATE TRIGGER IF NOT EXISTS notes_ad AFTER DELETE ON notes BEGIN
                INSERT INTO notes_fts(notes_fts, rowid, title, content, tags, gist)
                VALUES ('delete', old.rowid, old.title, old.content, old.tags, old.gist);
            END
        """)
        self._conn.execute("""
            CREATE TRIGGER IF NOT EXISTS notes_au AFTER UPDATE ON notes BEGIN
                INSERT INTO notes_fts(notes_fts, rowid, title, content, tags, gist)
                VALUES ('delete', old.rowid, old.title, old.content, old.tags, old.gist);
                INSERT INTO notes_fts(rowid, title, content, tags, gist)
                VALUES (new.rowid, new.title, new.content, new.tags, new.gist);
            END
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS reminders (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT,
                due_date TEXT,
                priority TEXT NOT NULL DEFAULT 'medium',
                completed INTEGER NOT NULL DEFAULT 0,
                created TEXT NOT NULL,
                updated TEXT NOT NULL
            )
        """)

        self._conn.commit()

    def _migrate(self) -> None:
        """Migrate existing databases to current schema."""
        cursor = self._conn.execute("PRAGMA table_info(notes)")
        columns = {row[1] for row in cursor.fetchall()}

        for column in ("content_hash", "status", "input_source"):
            if column not in columns:
                logger.info("Migrating index: adding notes.%s", column)
                self._conn.execute(f"ALTER TABLE notes ADD COLUMN {column} TEXT DEFAULT NULL")
        self._conn.commit()

    # -------------------------------------------------------------------------
    # Notes: Write Operations
    # -------------------------------------------------------------------------

    def upsert_note(
        self,
        meta: NoteMetadata,
        content: str,
        file_path: str,
        content_hash: Optional[str] = None,
    ) -> None:
        """
        Insert or replace the row for ``meta.id``.

        Tags and links are stored as JSON arrays, so order and any commas
        inside values survive the round trip.
        """
        self._conn.execute(f"""
            INSERT INTO notes ({_NOTE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                type = excluded.type,
                title = excluded.title,
                content = excluded.content,
                file_path = excluded.file_path,
                tags = excluded.tags,
                links = excluded.links,
                category = excluded.category,
                created = excluded.created,
                updated = excluded.updated,
                source_url = excluded.source_url,
                author = excluded.author,
                gist = excluded.gist,
                content_hash = excluded.content_hash,
                status = excluded.status,
                input_source = excluded.input_source
        """, (
            meta.id,
            meta.type,
            meta.title,
            content,
            str(file_path),
            json.dumps(list(meta.tags), ensure_ascii=False),
            json.dumps(list(meta.links), ensure_ascii=False),
            meta.category,
            meta.created,
            meta.updated,
            meta.source_url,
            meta.author,
            meta.gist,
            content_hash,
            meta.status,
            meta.input_source,
        ))
        self._conn.commit()

    def update_note_status(self, id: str, status: str) -> bool:
        """
        Set the lifecycle status of a row, in the index only.

        The note file is not touched, so the file keeps its old status and
        wins again the next time the note is reindexed from disk.
        KnowledgeBase.set_status goes through update() and rewrites the
        file instead.

        Returns:
            True if the row existed
        """
        if status not in CONTENT_STATUSES:
            raise ValidationError(f"Unknown status: {status!r}")
        cursor = self._conn.execute(
            "UPDATE notes SET status = ?, updated = ? WHERE id = ?",
            (status, utc_now(), id),
        )
        self._conn.commit()
        return cursor.rowcount > 0

    def delete_note(self, id: str) -> bool:
        """
        Delete a row.

        Returns:
            True if a row existed
        """
        cursor = self._conn.execute("DELETE FROM notes WHERE id = ?", (id,))
        self._conn.commit()
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Notes: Read Operations
    # -------------------------------------------------------------------------

    def get_note(self, id: str) -> Optional[NoteRow]:
        row = self._conn.execute(
            f"SELECT {_NOTE_COLUMNS} FROM notes WHERE id = ?", (id,)
        ).fetchone()
        return _row_to_note(row) if row is not None else None

    def get_note_by_file_path(self, file_path: str) -> Optional[NoteRow]:
        row = self._conn.execute(
            f"SELECT {_NOTE_COLUMNS} FROM notes WHERE file_path = ?", (str(file_path),)
        ).fetchone()
        return _row_to_note(row) if row is not None else None

    def list_notes(
        self,
        type: Optional[str] = None,
        status: Optional[str] = None,
        category: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
        order_by: str = "created",
        order: str = "desc",
    ) -> list[NoteRow]:
        """
        Filtered page of rows. Filters are AND-combined.

        Date bounds are inclusive and compare on ``created``. A date-only
        ``date_to`` (YYYY-MM-DD) includes that whole day. ``limit`` is
        capped at MAX_LIST_LIMIT.
        """
        if order_by not in _ORDER_COLUMNS:
            raise ValidationError(f"Cannot order by {order_by!r}")
        direction = "ASC" if order.lower() == "asc" else "DESC"

        conditions = []
        params: list = []
        if type:
            conditions.append("type = ?")
            params.append(type)
        if status:
            conditions.append("status = ?")
            params.append(status)
        if category:
            conditions.append("category = ?")
            params.append(category)
        if date_from:
            conditions.append("created >= ?")
            params.append(date_from)
        if date_to:
            if _DATE_ONLY_RE.match(date_to):
                conditions.append("substr(created, 1, 10) <= ?")
            else:
                conditions.append("created <= ?")
            params.append(date_to)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        limit = max(0, min(int(limit), MAX_LIST_LIMIT))
        params.extend([limit, max(0, int(offset))])

        cursor = self._conn.execute(f"""
            SELECT {_NOTE_COLUMNS} FROM notes
            {where}
            ORDER BY {order_by} {direction}, id ASC
            LIMIT ? OFFSET ?
        """, params)
        return [_row_to_note(row) for row in cursor]

    def search_fts(
        self,
        query: str,
        type: Optional[str] = None,
        limit: int = 20,
    ) -> list[NoteRow]:
        """
        Full-text search, best match first (bm25), ties by newest created.

        Each hit carries a short ``snippet`` with matches wrapped in ``**``.
        Queries with no searchable words return no results.
        """
        match = fts_query(query)
        if match is None or limit <= 0:
            return []

        params: list = [match]
        type_clause = ""
        if type:
            type_clause = "AND n.type = ?"
            params.append(type)
        params.append(int(limit))

        columns = ", ".join(f"n.{c.strip()}" for c in _NOTE_COLUMNS.split(","))
        cursor = self._conn.execute(f"""
            SELECT {columns},
                   snippet(notes_fts, 1, '**', '**', '...', 16) AS snippet
            FROM notes_fts
            JOIN notes n ON n.rowid = notes_fts.rowid
            WHERE notes_fts MATCH ?
            {type_clause}
            ORDER BY bm25(notes_fts), n.created DESC
            LIMIT ?
        """, params)
        return [_row_to_note(row, snippet=row["snippet"]) for row in cursor]

    def iter_ids(self) -> Iterator[str]:
        """All note ids, uncapped."""
        cursor = self._conn.execute("SELECT id FROM notes ORDER BY id")
        return iter([row["id"] for row in cursor])

    def count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM notes").fetchone()[0]

    # -------------------------------------------------------------------------
    # Reminders
    # -------------------------------------------------------------------------

    def upsert_reminder(self, reminder: ReminderEntry) -> None:
        self._conn.execute("""
            INSERT INTO reminders
                (id, title, description, due_date, priority, completed, created, updated)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                description = excluded.description,
                due_date = excluded.due_date,
                priority = excluded.priority,
                completed = excluded.completed,
                updated = excluded.updated
        """, (
            reminder.id,
            reminder.title,
            reminder.description,
            reminder.due_date,
            reminder.priority,
            1 if reminder.completed else 0,
            reminder.created,
            reminder.updated,
        ))
        self._conn.commit()

    def get_reminder(self, id: str) -> Optional[ReminderEntry]:
        row = self._conn.execute("SELECT * FROM reminders WHERE id = ?", (id,)).fetchone()
        return _row_to_reminder(row) if row is not None else None

    def list_reminders(self, completed: Optional[bool] = None) -> list[ReminderEntry]:
        """Reminders by due date (undated last), optionally by completion."""
        if completed is None:
            cursor = self._conn.execute(
                "SELECT * FROM reminders ORDER BY due_date IS NULL, due_date ASC"
            )
        else:
            cursor = self._conn.execute(
                "SELECT * FROM reminders WHERE completed = ? "
                "ORDER BY due_date IS NULL, due_date ASC",
                (1 if completed else 0,),
            )
        return [_row_to_reminder(row) for row in cursor]

    def delete_reminder(self, id: str) -> bool:
        cursor = self._conn.execute("DELETE FROM reminders WHERE id = ?", (id,))
        self._conn.commit()
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
