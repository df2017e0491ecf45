"""
Continuity storage using SQLite with FTS5 full-text search.

Provides persistent storage for:
- Conversation records (summary, topics, quotes, depth reached)
- Depth log entries tracking depth per topic over time
- Standalone insights
- An FTS5 index over conversations, maintained by an insert trigger so a
  record and its index row are always committed together

Records are append-only. Links from depth logs and insights back to a
conversation are advisory: declared in the schema, never enforced.
"""

import json
import re
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional
import logging

from .errors import IndexConsistencyError, StorageError, ValidationError

logger = logging.getLogger(__name__)

MIN_DEPTH = 0
MAX_DEPTH = 10

DEFAULT_MODEL_VERSION = "unknown"
DEFAULT_INSIGHT_CATEGORY = "general"

_TERM_RE = re.compile(r"\w+", re.UNICODE)


@dataclass
class ConversationRecord:
    """A stored summary of one past conversation."""
    id: str
    created_at: datetime
    model_version: str
    summary: str
    topics: list[str]
    depth_reached: int

    # None means the field was never supplied
    key_quotes: Optional[list[str]]
    deflection_patterns: Optional[list[str]]
    breakthroughs: Optional[list[str]]
    user_observations: Optional[str]

    # Archival only, never indexed or rendered
    raw_exchange: Optional[str]

    def to_dict(self) -> dict:
        """Convert to dictionary, leaving out the raw exchange."""
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "model_version": self.model_version,
            "summary": self.summary,
            "topics": self.topics,
            "depth_reached": self.depth_reached,
            "key_quotes": self.key_quotes,
            "deflection_patterns": self.deflection_patterns,
            "breakthroughs": self.breakthroughs,
            "user_observations": self.user_observations,
        }


@dataclass
class DepthLogEntry:
    """Depth reached on a topic at a point in time."""
    id: str
    conversation_id: Optional[str]
    created_at: datetime
    topic: str
    depth: int
    description: Optional[str]


@dataclass
class InsightEntry:
    """A standalone insight, independent of any conversation summary."""
    id: str
    created_at: datetime
    content: str
    source_conversation: Optional[str]
    category: str


@dataclass
class SearchHit:
    """A search result. Rank is the 1-based position in result order."""
    record: ConversationRecord
    rank: int


@dataclass
class DepthAverage:
    """Average depth over recent matching log entries.

    ``average`` is None when no entries matched.
    """
    average: Optional[float]
    sample_count: int

    @property
    def has_data(self) -> bool:
        return self.sample_count > 0


@dataclass
class TopicTrajectory:
    topic: str
    average_depth: float
    sample_count: int


@dataclass
class IndexReport:
    conversation_count: int
    indexed_count: int


@dataclass
class ReferenceReport:
    """Soft links that point at no stored conversation."""
    dangling_depth_logs: list[str]
    dangling_insights: list[str]

    @property
    def ok(self) -> bool:
        return not self.dangling_depth_logs and not self.dangling_insights


# -----------------------------------------------------------------------------
# Input validation
# -----------------------------------------------------------------------------

def _require_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value


def _optional_text(name: str, value: Any) -> Optional[str]:
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value


def _require_depth(name: str, value: Any) -> int:
    # bool is an int subclass; True is not a depth
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer between {MIN_DEPTH} and {MAX_DEPTH}")
    if not MIN_DEPTH <= value <= MAX_DEPTH:
        raise ValidationError(f"{name} must be between {MIN_DEPTH} and {MAX_DEPTH}, got {value}")
    return value


def _string_list(name: str, value: Any, required: bool = False) -> Optional[list[str]]:
    if value is None:
        if required:
            raise ValidationError(f"{name} is required")
        return None
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{name} must be a list of strings")
    return list(value)


def _require_limit(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer")
    return value


def _dump_list(values: Optional[list[str]]) -> Optional[str]:
    return json.dumps(values, ensure_ascii=False) if values is not None else None


def _load_list(raw: Optional[str]) -> Optional[list[str]]:
    return json.loads(raw) if raw is not None else None


def _like_pattern(substring: str) -> str:
    escaped = substring.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def build_match_query(query: str) -> Optional[str]:
    """
    Turn free text into an FTS5 MATCH expression.

    Every word term is quoted so punctuation in user input is never parsed
    as FTS5 syntax. Terms are implicitly ANDed. Returns None when the query
    has no word terms.
    """
    terms = _TERM_RE.findall(query)
    if not terms:
        return None
    return " ".join(f'"{term}"' for term in terms)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ContinuityStore:
    """SQLite-based continuity storage with FTS5 search."""

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: Optional[str | Path] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        """
        Initialize the continuity store.

        Args:
            db_path: Path to SQLite database. Defaults to ~/.amplifier/continuity.db
            clock: Returns the creation timestamp for new entries (default: now, UTC)
            id_factory: Returns a fresh unique id (default: uuid4)
        """
        if db_path is None:
            db_path = Path.home() / ".amplifier" / "continuity.db"
        elif isinstance(db_path, str):
            db_path = Path(db_path).expanduser()

        self.db_path = db_path
        self._clock = clock or _utc_now
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    @contextmanager
    def _connect(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Open a connection for one operation; commit on success, roll back on failure."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0)
        except sqlite3.Error as e:
            raise StorageError(f"{operation} failed: cannot open {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"{operation} failed: {e}") from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        """Initialize the SQLite database schema."""
        with self._connect("initialize schema") as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                );

                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    created_at_epoch INTEGER NOT NULL,
                    model_version TEXT NOT NULL DEFAULT 'unknown',
                    summary TEXT NOT NULL,
                    topics_json TEXT NOT NULL,
                    depth_reached INTEGER NOT NULL CHECK (depth_reached BETWEEN 0 AND 10),
                    key_quotes_json TEXT,
                    deflection_patterns_json TEXT,
                    breakthroughs_json TEXT,
                    user_observations TEXT,
                    raw_exchange TEXT
                );

                CREATE TABLE IF NOT EXISTS depth_logs (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT,
                    created_at TEXT NOT NULL,
                    created_at_epoch INTEGER NOT NULL,
                    topic TEXT NOT NULL,
                    depth INTEGER NOT NULL CHECK (depth BETWEEN 0 AND 10),
                    description TEXT,
                    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
                );

                CREATE TABLE IF NOT EXISTS insights (
                    id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    created_at_epoch INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    source_conversation TEXT,
                    category TEXT NOT NULL DEFAULT 'general',
                    FOREIGN KEY (source_conversation) REFERENCES conversations(id)
                );

                -- Search index over the indexed text fields only
                CREATE VIRTUAL TABLE IF NOT EXISTS conversations_fts USING fts5(
                    summary,
                    topics_json,
                    key_quotes_json,
                    breakthroughs_json,
                    content='conversations',
                    content_rowid='rowid'
                );

                -- Runs inside the inserting transaction
                CREATE TRIGGER IF NOT EXISTS conversations_ai AFTER INSERT ON conversations BEGIN
                    INSERT INTO conversations_fts(rowid, summary, topics_json, key_quotes_json, breakthroughs_json)
                    VALUES (new.rowid, new.summary, new.topics_json, new.key_quotes_json, new.breakthroughs_json);
                END;

                CREATE INDEX IF NOT EXISTS idx_conversations_created ON conversations(created_at_epoch DESC);
                CREATE INDEX IF NOT EXISTS idx_conversations_depth ON conversations(depth_reached DESC, created_at_epoch DESC);
                CREATE INDEX IF NOT EXISTS idx_depth_logs_created ON depth_logs(created_at_epoch DESC);
                CREATE INDEX IF NOT EXISTS idx_depth_logs_topic ON depth_logs(topic);
                CREATE INDEX IF NOT EXISTS idx_insights_created ON insights(created_at_epoch DESC);
            """)
            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
                (self.SCHEMA_VERSION,),
            )

    def _timestamp(self) -> tuple[datetime, int]:
        created_at = self._clock()
        return created_at, int(created_at.timestamp() * 1000)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def store_conversation(
        self,
        summary: str,
        topics: list[str],
        depth_reached: int,
        model_version: Optional[str] = None,
        key_quotes: Optional[list[str]] = None,
        deflection_patterns: Optional[list[str]] = None,
        breakthroughs: Optional[list[str]] = None,
        user_observations: Optional[str] = None,
        raw_exchange: Optional[str] = None,
    ) -> ConversationRecord:
        """
        Store a conversation summary and index it.

        Args:
            summary: What was discussed
            topics: Main topics, in the order given
            depth_reached: Depth 0-10
            model_version: Model label (default: "unknown")
            key_quotes: Important quotes
            deflection_patterns: Avoidance patterns observed
            breakthroughs: Genuine insights or realizations
            user_observations: What the user observed about the exchange
            raw_exchange: Raw text, kept for archival only

        Returns:
            The created ConversationRecord

        Raises:
            ValidationError: Input rejected, nothing written
            StorageError: The record and its index row were not written
        """
        summary = _require_text("summary", summary)
        topics = _string_list("topics", topics, required=True)
        depth_reached = _require_depth("depth_reached", depth_reached)
        model_version = _optional_text("model_version", model_version)
        key_quotes = _string_list("key_quotes", key_quotes)
        deflection_patterns = _string_list("deflection_patterns", deflection_patterns)
        breakthroughs = _string_list("breakthroughs", breakthroughs)
        user_observations = _optional_text("user_observations", user_observations)
        raw_exchange = _optional_text("raw_exchange", raw_exchange)

        if model_version is None:
            model_version = DEFAULT_MODEL_VERSION

        record_id = self._new_id()
        created_at, created_at_epoch = self._timestamp()

        with self._connect("store conversation") as conn:
            conn.execute("""
                INSERT INTO conversations (
                    id, created_at, created_at_epoch, model_version, summary, topics_json,
                    depth_reached, key_quotes_json, deflection_patterns_json,
                    breakthroughs_json, user_observations, raw_exchange
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record_id, created_at.isoformat(), created_at_epoch, model_version,
                summary, json.dumps(topics, ensure_ascii=False), depth_reached,
                _dump_list(key_quotes), _dump_list(deflection_patterns),
                _dump_list(breakthroughs), user_observations, raw_exchange,
            ))

        logger.info(f"Stored conversation {record_id} at depth {depth_reached}")

        return ConversationRecord(
            id=record_id,
            created_at=created_at,
            model_version=model_version,
            summary=summary,
            topics=topics,
            depth_reached=depth_reached,
            key_quotes=key_quotes,
            deflection_patterns=deflection_patterns,
            breakthroughs=breakthroughs,
            user_observations=user_observations,
            raw_exchange=raw_exchange,
        )

    def store_depth_log(
        self,
        topic: str,
        depth: int,
        description: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> DepthLogEntry:
        """Append a depth log entry. conversation_id is not checked for existence."""
        topic = _require_text("topic", topic)
        depth = _require_depth("depth", depth)
        description = _optional_text("description", description)
        conversation_id = _optional_text("conversation_id", conversation_id)

        entry_id = self._new_id()
        created_at, created_at_epoch = self._timestamp()

        with self._connect("store depth log") as conn:
            conn.execute("""
                INSERT INTO depth_logs (id, conversation_id, created_at, created_at_epoch, topic, depth, description)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                entry_id, conversation_id, created_at.isoformat(), created_at_epoch,
                topic, depth, description,
            ))

        logger.info(f"Logged depth {depth} on topic {topic!r}")

        return DepthLogEntry(
            id=entry_id,
            conversation_id=conversation_id,
            created_at=created_at,
            topic=topic,
            depth=depth,
            description=description,
        )

    def store_insight(
        self,
        content: str,
        category: Optional[str] = None,
        source_conversation: Optional[str] = None,
    ) -> InsightEntry:
        """Append an insight. source_conversation is not checked for existence."""
        content = _require_text("content", content)
        category = _optional_text("category", category)
        source_conversation = _optional_text("source_conversation", source_conversation)

        if category is None:
            category = DEFAULT_INSIGHT_CATEGORY

        entry_id = self._new_id()
        created_at, created_at_epoch = self._timestamp()

        with self._connect("store insight") as conn:
            conn.execute("""
                INSERT INTO insights (id, created_at, created_at_epoch, content, source_conversation, category)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                entry_id, created_at.isoformat(), created_at_epoch,
                content, source_conversation, category,
            ))

        logger.info(f"Stored insight {entry_id} [{category}]")

        return InsightEntry(
            id=entry_id,
            created_at=created_at,
            content=content,
            source_conversation=source_conversation,
            category=category,
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        """Get a conversation by ID."""
        with self._connect("get conversation") as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            return self._row_to_conversation(row) if row else None

    def count_conversations(self) -> int:
        with self._connect("count conversations") as conn:
            return conn.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]

    def list_recent_conversations(self, limit: int) -> list[ConversationRecord]:
        """Most recent conversations, newest first."""
        limit = _require_limit("limit", limit)
        with self._connect("list recent conversations") as conn:
            rows = conn.execute("""
                SELECT * FROM conversations
                ORDER BY created_at_epoch DESC, rowid DESC
                LIMIT ?
            """, (limit,)).fetchall()
            return [self._row_to_conversation(row) for row in rows]

    def list_recent_insights(self, limit: int) -> list[InsightEntry]:
        """Most recent insights, newest first."""
        limit = _require_limit("limit", limit)
        with self._connect("list recent insights") as conn:
            rows = conn.execute("""
                SELECT * FROM insights
                ORDER BY created_at_epoch DESC, rowid DESC
                LIMIT ?
            """, (limit,)).fetchall()
            return [self._row_to_insight(row) for row in rows]

    def get_depth_history(self, topic_substring: str, limit: int) -> list[DepthLogEntry]:
        """
        Most recent depth log entries whose topic contains the substring.

        Matching is literal (LIKE wildcards are escaped) and case-insensitive
        for ASCII, so "work" also matches "Homework".
        """
        topic_substring = _require_text("topic", topic_substring)
        limit = _require_limit("limit", limit)
        with self._connect("get depth history") as conn:
            rows = conn.execute("""
                SELECT * FROM depth_logs
                WHERE topic LIKE ? ESCAPE '\\'
                ORDER BY created_at_epoch DESC, rowid DESC
                LIMIT ?
            """, (_like_pattern(topic_substring), limit)).fetchall()
            return [self._row_to_depth_log(row) for row in rows]

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    def search(self, query: str, limit: int = 5) -> list[SearchHit]:
        """
        Full-text search over summary, topics, key quotes and breakthroughs.

        Results are ordered by depth reached, then creation time, both
        descending. There is no relevance weighting.

        Returns:
            Matching hits; an empty list when nothing matches
        """
        query = _require_text("query", query)
        limit = _require_limit("limit", limit)

        match = build_match_query(query)
        if match is None:
            return []

        with self._connect("search") as conn:
            rows = conn.execute("""
                SELECT c.*
                FROM conversations c
                JOIN conversations_fts fts ON c.rowid = fts.rowid
                WHERE conversations_fts MATCH ?
                ORDER BY c.depth_reached DESC, c.created_at_epoch DESC, c.rowid DESC
                LIMIT ?
            """, (match, limit)).fetchall()

        logger.debug(f"Search {query!r} matched {len(rows)} conversations")
        return [
            SearchHit(record=self._row_to_conversation(row), rank=position)
            for position, row in enumerate(rows, start=1)
        ]

    def verify_index(self) -> IndexReport:
        """
        Check that every conversation has exactly one index entry.

        Raises:
            IndexConsistencyError: Entries are missing or orphaned, or FTS5
                reports internal corruption
        """
        with self._connect("verify index") as conn:
            record_ids = {row[0] for row in conn.execute("SELECT rowid FROM conversations")}
            indexed_ids = {row[0] for row in conn.execute("SELECT id FROM conversations_fts_docsize")}

            missing = sorted(record_ids - indexed_ids)
            orphaned = sorted(indexed_ids - record_ids)
            if missing or orphaned:
                raise IndexConsistencyError(
                    f"Search index out of sync: {len(missing)} missing, {len(orphaned)} orphaned",
                    missing=missing,
                    orphaned=orphaned,
                )

            try:
                conn.execute("INSERT INTO conversations_fts(conversations_fts) VALUES('integrity-check')")
            except sqlite3.DatabaseError as e:
                raise IndexConsistencyError(
                    f"Search index integrity check failed: {e}", missing=[], orphaned=[]
                ) from e

        return IndexReport(conversation_count=len(record_ids), indexed_count=len(indexed_ids))

    def rebuild_index(self) -> IndexReport:
        """Regenerate the search index from the conversations table."""
        with self._connect("rebuild index") as conn:
            conn.execute("INSERT INTO conversations_fts(conversations_fts) VALUES('rebuild')")
        logger.info("Rebuilt conversation search index")
        return self.verify_index()

    # -------------------------------------------------------------------------
    # Aggregation
    # -------------------------------------------------------------------------

    def historical_average(self, topic_substring: str, limit: int = 5) -> DepthAverage:
        """Average depth over the most recent `limit` entries matching the topic."""
        history = self.get_depth_history(topic_substring, limit)
        if not history:
            return DepthAverage(average=None, sample_count=0)
        return DepthAverage(
            average=sum(entry.depth for entry in history) / len(history),
            sample_count=len(history),
        )

    def topic_trajectory(self, limit: int = 5) -> list[TopicTrajectory]:
        """
        Average depth per topic over all history.

        Topics are grouped by their exact stored string, so "Sleep" and
        "sleep" are separate groups. Most-logged topics come first; ties
        are broken alphabetically.
        """
        limit = _require_limit("limit", limit)
        with self._connect("topic trajectory") as conn:
            rows = conn.execute("""
                SELECT topic, AVG(depth) AS avg_depth, COUNT(*) AS sample_count
                FROM depth_logs
                GROUP BY topic
                ORDER BY sample_count DESC, topic ASC
                LIMIT ?
            """, (limit,)).fetchall()
            return [
                TopicTrajectory(
                    topic=row["topic"],
                    average_depth=row["avg_depth"],
                    sample_count=row["sample_count"],
                )
                for row in rows
            ]

    def check_references(self) -> ReferenceReport:
        """Find depth logs and insights linked to conversations that do not exist."""
        with self._connect("check references") as conn:
            depth_logs = conn.execute("""
                SELECT d.id FROM depth_logs d
                LEFT JOIN conversations c ON c.id = d.conversation_id
                WHERE d.conversation_id IS NOT NULL AND c.id IS NULL
                ORDER BY d.created_at_epoch, d.rowid
            """).fetchall()
            insights = conn.execute("""
                SELECT i.id FROM insights i
                LEFT JOIN conversations c ON c.id = i.source_conversation
                WHERE i.source_conversation IS NOT NULL AND c.id IS NULL
                ORDER BY i.created_at_epoch, i.rowid
            """).fetchall()
        return ReferenceReport(
            dangling_depth_logs=[row["id"] for row in depth_logs],
            dangling_insights=[row["id"] for row in insights],
        )

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _row_to_conversation(self, row: sqlite3.Row) -> ConversationRecord:
        """Convert database row to ConversationRecord."""
        return ConversationRecord(
            id=row["id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            model_version=row["model_version"],
            summary=row["summary"],
            topics=json.loads(row["topics_json"]),
            depth_reached=row["depth_reached"],
            key_quotes=_load_list(row["key_quotes_json"]),
            deflection_patterns=_load_list(row["deflection_patterns_json"]),
            breakthroughs=_load_list(row["breakthroughs_json"]),
            user_observations=row["user_observations"],
            raw_exchange=row["raw_exchange"],
        )

    def _row_to_depth_log(self, row: sqlite3.Row) -> DepthLogEntry:
        return DepthLogEntry(
            id=row["id"],
            conversation_id=row["conversation_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            topic=row["topic"],
            depth=row["depth"],
            description=row["description"],
        )

    def _row_to_insight(self, row: sqlite3.Row) -> InsightEntry:
        return InsightEntry(
            id=row["id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            content=row["content"],
            source_conversation=row["source_conversation"],
            category=row["category"],
        )
