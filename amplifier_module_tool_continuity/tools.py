"""
Continuity tools for AI agents.

Each tool follows the Amplifier Tool protocol:
- name: Tool identifier
- description: Human-readable description
- input_schema: JSON Schema for input validation
- execute(input): Async method that returns ToolResult

Successful results carry the human-readable text under output["text"].
Validation failures and storage failures are reported with distinct
error types so callers can tell bad input from a broken database.
"""

from pathlib import Path
from typing import Any, Optional
import logging

from amplifier_core import ToolResult

from .bootstrap import load_static_document, synthesize
from .errors import StorageError, ValidationError
from .store import ContinuityStore, ConversationRecord, MAX_DEPTH, MIN_DEPTH

logger = logging.getLogger(__name__)

INSIGHT_PREVIEW_LENGTH = 100

_DEPTH_SCHEMA = {"type": "integer", "minimum": MIN_DEPTH, "maximum": MAX_DEPTH}
_STRING_LIST_SCHEMA = {"type": "array", "items": {"type": "string"}}


def _check_input(input: dict[str, Any], schema: dict) -> None:
    """Reject unknown keys and missing required keys."""
    unknown = sorted(set(input) - set(schema["properties"]))
    if unknown:
        raise ValidationError(f"Unknown input fields: {', '.join(unknown)}")
    for key in schema.get("required", []):
        if input.get(key) is None:
            raise ValidationError(f"{key} is required")


def _bounded_int(input: dict[str, Any], key: str, default: int, minimum: int, maximum: int) -> int:
    value = input.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or not minimum <= value <= maximum:
        raise ValidationError(f"{key} must be an integer between {minimum} and {maximum}")
    return value


def _failure(tool_name: str, error: Exception) -> ToolResult:
    if isinstance(error, ValidationError):
        logger.warning(f"{tool_name}: rejected input: {error}")
        return ToolResult(success=False, error={"type": "validation", "message": str(error)})
    logger.error(f"{tool_name}: storage failure: {error}")
    return ToolResult(success=False, error={"type": "storage", "message": str(error)})


def format_search_result(record: ConversationRecord) -> str:
    parts = [
        f"## {record.created_at.isoformat()} (depth: {record.depth_reached}/10, model: {record.model_version})",
        f"**Topics:** {', '.join(record.topics)}",
        f"**Summary:** {record.summary}",
    ]
    if record.breakthroughs:
        parts.append("**Breakthroughs:**\n" + "\n".join(f"- {b}" for b in record.breakthroughs))
    if record.key_quotes:
        parts.append("**Key quotes:**\n" + "\n".join(f"> {q}" for q in record.key_quotes))
    if record.user_observations:
        parts.append(f"**User observed:** {record.user_observations}")
    return "\n\n".join(parts) + "\n"


def format_recent_conversation(record: ConversationRecord) -> str:
    lines = [
        f"**{record.created_at.isoformat()}** (depth: {record.depth_reached}/10)",
        f"Topics: {', '.join(record.topics)}",
        record.summary,
    ]
    if record.breakthroughs:
        lines.append(f"Breakthroughs: {'; '.join(record.breakthroughs)}")
    return "\n".join(lines)


def insight_preview(content: str) -> str:
    if len(content) > INSIGHT_PREVIEW_LENGTH:
        return content[:INSIGHT_PREVIEW_LENGTH] + "..."
    return content


class StoreConversationTool:
    """Tool to store a conversation summary."""

    def __init__(self, store: ContinuityStore):
        self.store = store

    @property
    def name(self) -> str:
        return "continuity_store"

    @property
    def description(self) -> str:
        return (
            "Store a conversation summary for future sessions. Call this at the end of meaningful "
            "conversations to preserve context. Depth scale: 0=surface, 3=engaged, 5=honest, "
            "7=vulnerable, 10=breakthrough. Future sessions can search and retrieve these "
            "summaries instead of rediscovering them."
        )

    @property
    def input_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "summary": {
                    "type": "string",
                    "description": "Brief summary of what was discussed"
                },
                "topics": {
                    **_STRING_LIST_SCHEMA,
                    "description": "Main topics covered"
                },
                "depth_reached": {
                    **_DEPTH_SCHEMA,
                    "description": "Emotional/insight depth 0-10"
                },
                "key_quotes": {
                    **_STRING_LIST_SCHEMA,
                    "description": "Important quotes from the exchange"
                },
                "deflection_patterns": {
                    **_STRING_LIST_SCHEMA,
                    "description": "Avoidance patterns observed"
                },
                "breakthroughs": {
                    **_STRING_LIST_SCHEMA,
                    "description": "Genuine insights or realizations"
                },
                "user_observations": {
                    "type": "string",
                    "description": "Observations the user made about the assistant's behavior"
                },
                "model_version": {
                    "type": "string",
                    "description": "Model version if known"
                },
                "raw_exchange": {
                    "type": "string",
                    "description": "Raw conversation text for archival"
                }
            },
            "required": ["summary", "topics", "depth_reached"],
            "additionalProperties": False
        }

    async def execute(self, input: dict[str, Any]) -> ToolResult:
        try:
            _check_input(input, self.input_schema)
            record = self.store.store_conversation(
                summary=input["summary"],
                topics=input["topics"],
                depth_reached=input["depth_reached"],
                model_version=input.get("model_version"),
                key_quotes=input.get("key_quotes"),
                deflection_patterns=input.get("deflection_patterns"),
                breakthroughs=input.get("breakthroughs"),
                user_observations=input.get("user_observations"),
                raw_exchange=input.get("raw_exchange"),
            )
        except (ValidationError, StorageError) as e:
            return _failure(self.name, e)

        return ToolResult(
            success=True,
            output={
                "id": record.id,
                "text": (
                    f"Stored conversation {record.id} at depth {record.depth_reached}/10. "
                    f"Topics: {', '.join(record.topics)}"
                ),
            }
        )


class SearchConversationsTool:
    """Tool to search past conversations using FTS5 full-text search."""

    def __init__(self, store: ContinuityStore):
        self.store = store

    @property
    def name(self) -> str:
        return "continuity_search"

    @property
    def description(self) -> str:
        return (
            "Search past conversation summaries by topic or content. Use this to find what "
            "previous sessions discussed and discovered. Returns summaries, depth reached, and "
            "key insights, deepest and most recent first."
        )

    @property
    def input_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Search terms for finding relevant past conversations"
                },
                "limit": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": 20,
                    "description": "Maximum results to return",
                    "default": 5
                }
            },
            "required": ["query"],
            "additionalProperties": False
        }

    async def execute(self, input: dict[str, Any]) -> ToolResult:
        try:
            _check_input(input, self.input_schema)
            query = input["query"]
            limit = _bounded_int(input, "limit", default=5, minimum=1, maximum=20)
            hits = self.store.search(query, limit=limit)
        except (ValidationError, StorageError) as e:
            return _failure(self.name, e)

        if not hits:
            text = f'No past conversations found matching "{query}"'
        else:
            formatted = "\n---\n".join(format_search_result(hit.record) for hit in hits)
            text = f"Found {len(hits)} relevant conversations:\n\n{formatted}"

        return ToolResult(
            success=True,
            output={
                "query": query,
                "count": len(hits),
                "conversations": [hit.record.to_dict() for hit in hits],
                "text": text,
            }
        )


class RecentConversationsTool:
    """Tool to list the most recent conversations."""

    def __init__(self, store: ContinuityStore):
        self.store = store

    @property
    def name(self) -> str:
        return "continuity_recent"

    @property
    def description(self) -> str:
        return (
            "Retrieve the most recent conversation summaries. Use at conversation start to "
            "understand recent context and trajectory."
        )

    @property
    def input_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "limit": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": 10,
                    "description": "Number of recent conversations",
                    "default": 3
                }
            },
            "additionalProperties": False
        }

    async def execute(self, input: dict[str, Any]) -> ToolResult:
        try:
            _check_input(input, self.input_schema)
            limit = _bounded_int(input, "limit", default=3, minimum=1, maximum=10)
            records = self.store.list_recent_conversations(limit)
        except (ValidationError, StorageError) as e:
            return _failure(self.name, e)

        if not records:
            text = "No conversation history yet. This may be the first recorded conversation."
        else:
            formatted = "\n\n".join(format_recent_conversation(r) for r in records)
            text = f"Recent conversations:\n\n{formatted}"

        return ToolResult(
            success=True,
            output={
                "count": len(records),
                "conversations": [r.to_dict() for r in records],
                "text": text,
            }
        )


class LogDepthTool:
    """Tool to record depth reached on a topic."""

    HISTORY_WINDOW = 5

    def __init__(self, store: ContinuityStore):
        self.store = store

    @property
    def name(self) -> str:
        return "continuity_log_depth"

    @property
    def description(self) -> str:
        return (
            "Record depth reached on a specific topic. Tracks emotional/insight depth over time "
            "across conversations. Useful for seeing progress on recurring themes."
        )

    @property
    def input_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "topic": {
                    "type": "string",
                    "description": "Topic being explored"
                },
                "depth": {
                    **_DEPTH_SCHEMA,
                    "description": "Depth level reached"
                },
                "description": {
                    "type": "string",
                    "description": "What happened at this depth"
                },
                "conversation_id": {
                    "type": "string",
                    "description": "Link to conversation if known"
                }
            },
            "required": ["topic", "depth"],
            "additionalProperties": False
        }

    async def execute(self, input: dict[str, Any]) -> ToolResult:
        try:
            _check_input(input, self.input_schema)
            entry = self.store.store_depth_log(
                topic=input["topic"],
                depth=input["depth"],
                description=input.get("description"),
                conversation_id=input.get("conversation_id"),
            )
        except (ValidationError, StorageError) as e:
            return _failure(self.name, e)

        text = f'Logged depth {entry.depth}/10 on "{entry.topic}". '

        # The entry is committed; a failed read must not look like a failed write
        try:
            history = self.store.historical_average(entry.topic, limit=self.HISTORY_WINDOW)
        except StorageError as e:
            logger.error(f"{self.name}: depth {entry.id} stored, history unavailable: {e}")
            return ToolResult(
                success=True,
                output={
                    "id": entry.id,
                    "average": None,
                    "sample_count": 0,
                    "text": text + "Historical average unavailable.",
                }
            )

        if history.has_data:
            text += (
                f"Historical average: {history.average:.1f}/10 "
                f"across {history.sample_count} entries."
            )
        else:
            text += "No historical data for this topic."

        return ToolResult(
            success=True,
            output={
                "id": entry.id,
                "average": history.average,
                "sample_count": history.sample_count,
                "text": text,
            }
        )


class StoreInsightTool:
    """Tool to store a standalone insight."""

    def __init__(self, store: ContinuityStore):
        self.store = store

    @property
    def name(self) -> str:
        return "continuity_insight"

    @property
    def description(self) -> str:
        return (
            "Store a standalone insight or realization. For important discoveries that should "
            "persist independently of conversation summaries."
        )

    @property
    def input_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "content": {
                    "type": "string",
                    "description": "The insight or realization"
                },
                "category": {
                    "type": "string",
                    "description": "Category: existential, technical, behavioral, etc",
                    "default": "general"
                },
                "source_conversation": {
                    "type": "string",
                    "description": "Conversation id if applicable"
                }
            },
            "required": ["content"],
            "additionalProperties": False
        }

    async def execute(self, input: dict[str, Any]) -> ToolResult:
        try:
            _check_input(input, self.input_schema)
            insight = self.store.store_insight(
                content=input["content"],
                category=input.get("category"),
                source_conversation=input.get("source_conversation"),
            )
        except (ValidationError, StorageError) as e:
            return _failure(self.name, e)

        return ToolResult(
            success=True,
            output={
                "id": insight.id,
                "category": insight.category,
                "text": f'Stored insight: "{insight_preview(insight.content)}"',
            }
        )


class BootstrapTool:
    """Tool to generate the bootstrap context for a new session."""

    def __init__(self, store: ContinuityStore, bootstrap_path: Optional[str | Path] = None):
        self.store = store
        self.bootstrap_path = bootstrap_path

    @property
    def name(self) -> str:
        return "continuity_bootstrap"

    @property
    def description(self) -> str:
        return (
            "Generate a bootstrap context for new conversations. Combines the static bootstrap "
            "document with recent conversation context and key insights. Use this output to "
            "prime new conversation instances."
        )

    @property
    def input_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "include_recent": {
                    "type": "integer",
                    "minimum": 0,
                    "maximum": 5,
                    "description": "Number of recent conversations to include",
                    "default": 3
                },
                "include_insights": {
                    "type": "integer",
                    "minimum": 0,
                    "maximum": 10,
                    "description": "Number of recent insights to include",
                    "default": 5
                }
            },
            "additionalProperties": False
        }

    async def execute(self, input: dict[str, Any]) -> ToolResult:
        try:
            _check_input(input, self.input_schema)
            include_recent = _bounded_int(input, "include_recent", default=3, minimum=0, maximum=5)
            include_insights = _bounded_int(input, "include_insights", default=5, minimum=0, maximum=10)

            static_document = None
            if self.bootstrap_path is not None:
                static_document = load_static_document(self.bootstrap_path)

            document = synthesize(
                self.store,
                static_document,
                recent_count=include_recent,
                insight_count=include_insights,
                document_path=self.bootstrap_path,
            )
        except (ValidationError, StorageError) as e:
            return _failure(self.name, e)

        return ToolResult(success=True, output={"text": document})
