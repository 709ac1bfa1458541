"""Socket.IO payload shapes for inbox events."""

from typing import Any

from unibox.database.models import DIRECTION_IN, ChannelMessage
from unibox.utils.timeutil import isoformat_utc

# Server -> client events
EVENT_NEW_MESSAGE = "new_message"
EVENT_MESSAGE_SENT = "message_sent"
EVENT_MESSAGE_STATUS = "message_status"
EVENT_CONVERSATION_READ = "conversation_read"
EVENT_MESSAGE_DELETED = "message_deleted"
EVENT_ACCOUNT_STATUS = "account_status"
EVENT_USER_TYPING = "user_typing"
EVENT_ERROR = "error"


def _account_address(connection_data: dict[str, Any] | None) -> str:
    data = connection_data or {}
    for key in ("phone_number", "email", "username", "identifier"):
        if data.get(key):
            return str(data[key])
    return "unknown"


def message_payload(
    message: ChannelMessage,
    *,
    connection_data: dict[str, Any] | None = None,
    recipient: str | None = None,
) -> dict[str, Any]:
    """Canonical message plus sender/recipient display fields.

    For inbound messages the recipient is the connected account; for
    outbound ones the sender is.
    """
    own_address = _account_address(connection_data)
    if message.direction == DIRECTION_IN:
        sender = message.sender_id or "unknown"
        sender_name = message.sender_name or "Unknown"
        to = own_address
    else:
        sender = own_address
        sender_name = message.sender_name or "Me"
        to = recipient or "unknown"

    return {
        "id": message.id,
        "text": message.body,
        "from": sender,
        "fromName": sender_name,
        "to": to,
        "timestamp": isoformat_utc(message.sent_at),
        "direction": message.direction,
        "chat_id": message.conversation_id,
        "conversation_id": message.conversation_id,
        "provider_msg_id": message.external_message_id,
        "subject": message.subject,
        "attachments": list(message.attachments or []),
        "status": message.status,
        "sync_status": message.sync_status,
        "is_reply": message.is_reply,
        "parent_message_id": message.parent_message_id,
        "reply_count": message.reply_count,
        "thread_id": message.thread_id,
        "provider_metadata": dict(message.provider_metadata or {}),
        "created_at": isoformat_utc(message.created_at),
    }


def status_payload(message: ChannelMessage) -> dict[str, Any]:
    """Payload for a delivery/read receipt or a send outcome."""
    return {
        "id": message.id,
        "chat_id": message.conversation_id,
        "conversation_id": message.conversation_id,
        "provider_msg_id": message.external_message_id,
        "status": message.status,
        "sync_status": message.sync_status,
        "read_at": isoformat_utc(message.read_at),
    }
