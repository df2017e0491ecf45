"""
Continuity Tool Module for Amplifier.

Gives a new, stateless session access to context from past conversations.
Conversation summaries, per-topic depth logs and insights are persisted in
SQLite; conversations are searchable through an FTS5 index.

Tools provided:
- continuity_store: Store a conversation summary
- continuity_search: Search past conversations
- continuity_recent: List the most recent conversations
- continuity_log_depth: Record depth reached on a topic
- continuity_insight: Store a standalone insight
- continuity_bootstrap: Generate the bootstrap document for a new session
"""

import logging
import os
from pathlib import Path

from amplifier_core import ModuleCoordinator

from .errors import ContinuityError, IndexConsistencyError, StorageError, ValidationError
from .store import ContinuityStore
from .tools import (
    StoreConversationTool,
    SearchConversationsTool,
    RecentConversationsTool,
    LogDepthTool,
    StoreInsightTool,
    BootstrapTool,
)

__version__ = "0.1.0"
__all__ = [
    "mount",
    "ContinuityStore",
    "ContinuityError",
    "ValidationError",
    "StorageError",
    "IndexConsistencyError",
]

logger = logging.getLogger(__name__)

DB_PATH_ENV = "CONTINUITY_DB_PATH"
BOOTSTRAP_PATH_ENV = "BOOTSTRAP_PATH"


async def mount(coordinator: ModuleCoordinator, config: dict | None = None):
    """
    Mount the continuity tool module.

    Args:
        coordinator: Amplifier coordinator instance
        config: Configuration dictionary with optional keys:
            - storage_path: Path to SQLite database
              (default: $CONTINUITY_DB_PATH, else ~/.amplifier/continuity.db)
            - bootstrap_path: Path to the static bootstrap document
              (default: $BOOTSTRAP_PATH, else ~/.amplifier/bootstrap.md)

    Returns:
        Cleanup function
    """
    config = config or {}

    storage_path = config.get("storage_path") or os.environ.get(DB_PATH_ENV)
    bootstrap_path = (
        config.get("bootstrap_path")
        or os.environ.get(BOOTSTRAP_PATH_ENV)
        or Path.home() / ".amplifier" / "bootstrap.md"
    )

    store = ContinuityStore(db_path=storage_path)

    tools = [
        StoreConversationTool(store),
        SearchConversationsTool(store),
        RecentConversationsTool(store),
        LogDepthTool(store),
        StoreInsightTool(store),
        BootstrapTool(store, bootstrap_path=bootstrap_path),
    ]

    for tool in tools:
        await coordinator.mount("tools", tool, name=tool.name)
        logger.debug(f"Mounted continuity tool: {tool.name}")

    # Other modules (hooks, context providers) can reach the store here
    coordinator.set_capability("continuity.store", store)

    logger.info(f"Continuity module mounted with {len(tools)} tools (storage: {store.db_path})")

    async def cleanup():
        logger.info("Continuity module cleanup complete")

    return cleanup
