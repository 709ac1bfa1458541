"""Database models package.

Models are split into domain-specific modules:
- channels: ChannelAccount, ChannelConversation, ChannelMessage
- billing: UsageCounter, ChannelEntitlement
"""

from .base import Base, JSONType, _generate_uuid
from .billing import (
    LIMIT_MESSAGES_PER_PERIOD,
    SOURCE_ADDON,
    SOURCE_PLAN,
    ChannelEntitlement,
    UsageCounter,
)
from .channels import (
    ACCOUNT_CONNECTED,
    ACCOUNT_DISCONNECTED,
    ACCOUNT_NEEDS_ACTION,
    DIRECTION_IN,
    DIRECTION_OUT,
    PROVIDERS,
    ChannelAccount,
    ChannelConversation,
    ChannelMessage,
)

__all__ = [
    "ACCOUNT_CONNECTED",
    "ACCOUNT_DISCONNECTED",
    "ACCOUNT_NEEDS_ACTION",
    "DIRECTION_IN",
    "DIRECTION_OUT",
    "LIMIT_MESSAGES_PER_PERIOD",
    "PROVIDERS",
    "SOURCE_ADDON",
    "SOURCE_PLAN",
    "Base",
    "ChannelAccount",
    "ChannelConversation",
    "ChannelEntitlement",
    "ChannelMessage",
    "JSONType",
    "UsageCounter",
    "_generate_uuid",
]
