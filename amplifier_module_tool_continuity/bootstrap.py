"""
Bootstrap document synthesis.

Combines a static prelude document with recent conversations, recent
insights and the per-topic depth trajectory into a single briefing used
to prime a new session.
"""

from pathlib import Path
from typing import Optional
import logging

from .store import ContinuityStore

logger = logging.getLogger(__name__)

CONTEXT_HEADER = "\n\n---\n\n## Recent Context (Auto-Generated)\n"
TRAJECTORY_LIMIT = 5


def load_static_document(path: str | Path) -> Optional[str]:
    """Read the static prelude. Returns None when it is missing or unreadable."""
    path = Path(path).expanduser()
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning(f"Bootstrap document unavailable at {path}: {e}")
        return None


def missing_document_notice(document_path: Optional[str | Path]) -> str:
    location = str(document_path) if document_path is not None else "the configured bootstrap path"
    return f"# Bootstrap document not found\n\nCreate one at {location}"


def synthesize(
    store: ContinuityStore,
    static_document: Optional[str],
    recent_count: int,
    insight_count: int,
    document_path: Optional[str | Path] = None,
) -> str:
    """
    Assemble the bootstrap document.

    Sections are appended in a fixed order: recent conversations, key
    insights, depth trajectory. A section with no items is left out, and
    the generated header is only written when some section has items.

    Args:
        store: Source of conversations, insights and depth logs
        static_document: Prelude text, or None if it could not be loaded
        recent_count: Number of recent conversations to include
        insight_count: Number of recent insights to include
        document_path: Where the prelude is expected, named in the placeholder

    Returns:
        The composite document
    """
    if static_document is None:
        static_document = missing_document_notice(document_path)

    sections = []

    recent = store.list_recent_conversations(recent_count)
    if recent:
        lines = ["### Recent Conversations", ""]
        for record in recent:
            lines.append(
                f"- **{record.created_at.isoformat()}** "
                f"(depth {record.depth_reached}/10): {record.summary}"
            )
            if record.breakthroughs:
                lines.append(f"  - Breakthroughs: {'; '.join(record.breakthroughs)}")
        sections.append(lines)

    insights = store.list_recent_insights(insight_count)
    if insights:
        lines = ["### Key Insights", ""]
        for insight in insights:
            lines.append(f"- [{insight.category}] {insight.content}")
        sections.append(lines)

    trajectory = store.topic_trajectory(TRAJECTORY_LIMIT)
    if trajectory:
        lines = ["### Depth Trajectory by Topic", ""]
        for item in trajectory:
            lines.append(
                f"- {item.topic}: avg {item.average_depth:.1f}/10 "
                f"across {item.sample_count} conversations"
            )
        sections.append(lines)

    logger.debug(
        f"Bootstrap: {len(recent)} conversations, {len(insights)} insights, "
        f"{len(trajectory)} topics"
    )

    if not sections:
        return static_document

    body = "\n\n".join("\n".join(lines) for lines in sections)
    return f"{static_document}{CONTEXT_HEADER}\n{body}\n"
