"""Database module for Unibox."""

from unibox.database.connection import (
    async_session_factory,
    close_database,
    create_engine_for_url,
    engine,
    get_db,
    get_db_context,
    init_database,
)
from unibox.database.dialect import insert_for
from unibox.database.models import (
    Base,
    ChannelAccount,
    ChannelConversation,
    ChannelEntitlement,
    ChannelMessage,
    UsageCounter,
)
from unibox.database.retry import run_with_storage_retry

__all__ = [
    "Base",
    "ChannelAccount",
    "ChannelConversation",
    "ChannelEntitlement",
    "ChannelMessage",
    "UsageCounter",
    "async_session_factory",
    "close_database",
    "create_engine_for_url",
    "engine",
    "get_db",
    "get_db_context",
    "init_database",
    "insert_for",
    "run_with_storage_retry",
]
