"""Canonical provider events.

Webhook payloads arrive in several shapes. The normalizer maps each one to a
member of the ``ProviderEvent`` union below; anything it does not recognise
becomes a ``RawEvent`` so the pipeline can acknowledge it as a no-op.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    """Discriminator for the provider event union."""

    MESSAGE = "message"
    MESSAGE_STATUS = "message_status"
    ACCOUNT_STATUS = "account_status"
    RAW = "raw"


class Direction(str, Enum):
    """Message direction relative to the connected account."""

    IN = "in"
    OUT = "out"


@dataclass(frozen=True)
class InboundEvent:
    """A new message observed on a connected account."""

    external_account_id: str
    external_conversation_id: str
    external_message_id: str
    direction: Direction
    body: str
    occurred_at: datetime
    provider: str | None = None
    subject: str | None = None
    attachments: list[dict[str, Any]] = field(default_factory=list)
    sender_id: str | None = None
    sender_display_name: str | None = None
    is_group: bool = False
    parent_external_id: str | None = None
    thread_id: str | None = None
    # True when external_message_id was derived from the payload contents
    fingerprinted: bool = False
    chat_info: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    kind = EventKind.MESSAGE


@dataclass(frozen=True)
class MessageStatusEvent:
    """A delivery or read receipt for a previously sent message."""

    external_account_id: str
    external_message_id: str
    status: str
    occurred_at: datetime
    provider: str | None = None
    external_conversation_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    kind = EventKind.MESSAGE_STATUS


@dataclass(frozen=True)
class AccountStatusEvent:
    """A connection status change reported by the relay.

    ``account.updated`` carries the external account id; ``connection.status``
    only carries the relay connection id stored in the account's
    connection data.
    """

    status: str
    external_account_id: str | None = None
    connection_id: str | None = None
    connection_data: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    kind = EventKind.ACCOUNT_STATUS


@dataclass(frozen=True)
class RawEvent:
    """Catch-all for event types the pipeline does not act on."""

    type_tag: str
    fields: dict[str, Any] = field(default_factory=dict)

    kind = EventKind.RAW


ProviderEvent = InboundEvent | MessageStatusEvent | AccountStatusEvent | RawEvent
