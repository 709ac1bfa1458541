"""Event normalizer: provider webhook payloads to canonical events.

Two body shapes are accepted:

- wrapped: ``{"event": "message.new", "data": {...}}``
- flat (legacy): the event fields at the top level, with or without an
  ``event`` key

The mapping is pure. It never touches storage and only raises
``MalformedPayload``.
"""

import hashlib
from collections.abc import Mapping
from typing import Any

import structlog

from unibox.exceptions import MalformedPayload
from unibox.pipeline.events import (
    AccountStatusEvent,
    Direction,
    InboundEvent,
    MessageStatusEvent,
    ProviderEvent,
    RawEvent,
)
from unibox.utils.timeutil import parse_timestamp, utcnow

logger = structlog.get_logger()

MESSAGE_EVENT_TYPES = frozenset(
    {
        "message.new",
        "message_received",
        "message.received",
        "mail_received",
        "mail.received",
        "email.received",
    }
)

STATUS_EVENT_TYPES: dict[str, str] = {
    "message.delivered": "delivered",
    "message_delivered": "delivered",
    "message.read": "read",
    "message_read": "read",
}

ACCOUNT_EVENT_TYPES = frozenset({"account.updated", "connection.status", "account_status"})

# Relay account types to local provider tags
ACCOUNT_TYPE_PROVIDERS: dict[str, str] = {
    "WHATSAPP": "whatsapp",
    "INSTAGRAM": "instagram",
    "LINKEDIN": "linkedin",
    "TELEGRAM": "telegram",
    "MAIL": "email",
    "GOOGLE": "email",
    "GOOGLE_OAUTH": "email",
    "OUTLOOK": "email",
    "IMAP": "email",
}

# Relay connection states to local account statuses
CONNECTED_STATES = frozenset(
    {"connected", "ok", "creation_success", "reconnected", "sync_success", "running"}
)
NEEDS_ACTION_STATES = frozenset(
    {"needs_action", "credentials", "error", "stopped", "connecting", "permissions"}
)


def unwrap(body: Mapping[str, Any]) -> tuple[str | None, dict[str, Any]]:
    """Split a webhook body into its event type and event data.

    Falls back to the flat shape when there is no ``data`` object.
    """
    event_type = body.get("event") or body.get("type")
    data = body.get("data")
    if isinstance(data, Mapping):
        return (str(event_type) if event_type else None), dict(data)
    return (str(event_type) if event_type else None), dict(body)


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    """First non-empty value among ``keys``."""
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _as_str(value: Any) -> str | None:
    if value in (None, ""):
        return None
    return str(value)


def _provider_from(data: Mapping[str, Any], provider_hint: str | None) -> str | None:
    if provider_hint:
        return provider_hint
    account_type = data.get("account_type")
    if isinstance(account_type, str):
        return ACCOUNT_TYPE_PROVIDERS.get(account_type.upper())
    return None


def _sender(data: Mapping[str, Any]) -> tuple[str | None, str | None]:
    """Sender id and display name from chat or email payloads."""
    sender = data.get("sender") or data.get("from_attendee") or data.get("from")
    if isinstance(sender, Mapping):
        sender_id = _first(sender, "attendee_id", "identifier", "id", "address", "email")
        sender_name = _first(sender, "attendee_name", "display_name", "name")
        return _as_str(sender_id), _as_str(sender_name)
    if isinstance(sender, str):
        return sender, None
    return None, None


def _attachments(data: Mapping[str, Any]) -> list[dict[str, Any]]:
    raw = data.get("attachments") or []
    if not isinstance(raw, list):
        raise MalformedPayload("attachments must be a list", field="attachments")
    return [dict(item) if isinstance(item, Mapping) else {"value": item} for item in raw]


def _parent_reference(data: Mapping[str, Any]) -> str | None:
    """External id of the message being replied to, if any."""
    direct = _first(data, "parent_message_id", "reply_to_message_id")
    if direct:
        return str(direct)
    for key in ("quoted", "in_reply_to"):
        ref = data.get(key)
        if isinstance(ref, Mapping):
            value = _first(ref, "provider_id", "message_id", "id")
            if value:
                return str(value)
        elif isinstance(ref, str) and ref:
            return ref
    return None


def _email_thread_root(data: Mapping[str, Any]) -> str | None:
    """Conversation key for email payloads without an explicit thread id."""
    references = data.get("references")
    if isinstance(references, list) and references:
        return _as_str(references[0])
    if isinstance(references, str) and references.strip():
        return references.split()[0]
    return _parent_reference(data)


def fingerprint_message_id(
    external_account_id: str,
    external_conversation_id: str,
    occurred_at_iso: str,
    sender_id: str | None,
    body: str,
) -> str:
    """Deterministic message id for payloads that carry none."""
    digest = hashlib.sha256(
        "|".join(
            [external_account_id, external_conversation_id, occurred_at_iso, sender_id or "", body]
        ).encode("utf-8")
    ).hexdigest()
    return f"fp_{digest[:40]}"


def normalize_message(data: Mapping[str, Any], provider_hint: str | None = None) -> InboundEvent:
    """Map a new-message payload to an InboundEvent."""
    provider = _provider_from(data, provider_hint)

    external_account_id = _as_str(data.get("account_id"))
    if not external_account_id:
        raise MalformedPayload("missing external account id", field="account_id")

    external_conversation_id = _as_str(
        _first(data, "provider_chat_id", "chat_id", "thread_id", "conversation_id")
    )
    if not external_conversation_id and provider == "email":
        external_conversation_id = _email_thread_root(data) or _as_str(
            _first(data, "message_id", "provider_id", "email_id")
        )
    if not external_conversation_id:
        raise MalformedPayload("missing conversation identifier", field="chat_id")

    occurred_at = parse_timestamp(_first(data, "timestamp", "date", "sent_at", "created_at"))
    if occurred_at is None:
        raise MalformedPayload("missing or invalid occurrence timestamp", field="timestamp")

    body = _first(data, "message", "text", "body_plain", "body") or ""
    if not isinstance(body, str):
        raise MalformedPayload("message body must be a string", field="message")

    sender_id, sender_name = _sender(data)

    external_message_id = _as_str(
        _first(data, "provider_message_id", "message_id", "provider_id", "email_id", "id")
    )
    fingerprinted = False
    if not external_message_id:
        external_message_id = fingerprint_message_id(
            external_account_id,
            external_conversation_id,
            occurred_at.isoformat(),
            sender_id,
            body,
        )
        fingerprinted = True

    is_sender = data.get("is_sender")
    direction = Direction.OUT if is_sender in (True, 1, "1", "true") else Direction.IN

    thread_id = _as_str(data.get("thread_id"))
    if thread_id is None and provider == "email":
        thread_id = _email_thread_root(data)

    chat_info = {
        "original_chat_id": _as_str(data.get("chat_id")),
        "provider_chat_id": _as_str(data.get("provider_chat_id")),
        "sender": data.get("sender") or data.get("from_attendee"),
        "is_group": bool(data.get("is_group") or False),
        "folder": data.get("folder") or [],
    }

    return InboundEvent(
        provider=provider,
        external_account_id=external_account_id,
        external_conversation_id=external_conversation_id,
        external_message_id=external_message_id,
        direction=direction,
        body=body,
        subject=_as_str(data.get("subject")),
        attachments=_attachments(data),
        sender_id=sender_id,
        sender_display_name=sender_name,
        occurred_at=occurred_at,
        is_group=bool(data.get("is_group") or False),
        parent_external_id=_parent_reference(data),
        thread_id=thread_id,
        fingerprinted=fingerprinted,
        chat_info=chat_info,
        raw=dict(data),
    )


def normalize_status(
    status: str, data: Mapping[str, Any], provider_hint: str | None = None
) -> MessageStatusEvent:
    """Map a delivery/read receipt payload to a MessageStatusEvent."""
    external_account_id = _as_str(data.get("account_id"))
    if not external_account_id:
        raise MalformedPayload("missing external account id", field="account_id")
    external_message_id = _as_str(_first(data, "provider_message_id", "message_id", "provider_id"))
    if not external_message_id:
        raise MalformedPayload("missing message id", field="message_id")
    occurred_at = parse_timestamp(_first(data, "timestamp", "date")) or utcnow()
    return MessageStatusEvent(
        provider=_provider_from(data, provider_hint),
        external_account_id=external_account_id,
        external_conversation_id=_as_str(_first(data, "provider_chat_id", "chat_id")),
        external_message_id=external_message_id,
        status=status,
        occurred_at=occurred_at,
        raw=dict(data),
    )


def map_account_status(raw_status: Any) -> str:
    """Relay connection state to connected / needs_action / disconnected."""
    value = str(raw_status or "").strip().lower()
    if value in CONNECTED_STATES:
        return "connected"
    if value in NEEDS_ACTION_STATES:
        return "needs_action"
    return "disconnected"


def normalize_account_status(data: Mapping[str, Any]) -> AccountStatusEvent:
    """Map account.updated / connection.status payloads."""
    # Relay account_status webhooks nest the fields under AccountStatus
    nested = data.get("AccountStatus")
    if isinstance(nested, Mapping):
        data = {**data, **nested}
        raw_status = _first(data, "status", "message")
    else:
        raw_status = data.get("status")

    external_account_id = _as_str(data.get("account_id"))
    connection_id = _as_str(data.get("connection_id"))
    if not external_account_id and not connection_id:
        raise MalformedPayload("missing account or connection id", field="account_id")
    if raw_status in (None, ""):
        raise MalformedPayload("missing account status", field="status")

    connection_data = data.get("connection_data") or {}
    if not isinstance(connection_data, Mapping):
        raise MalformedPayload("connection_data must be an object", field="connection_data")

    return AccountStatusEvent(
        external_account_id=external_account_id,
        connection_id=connection_id,
        status=map_account_status(raw_status),
        connection_data=dict(connection_data),
        raw=dict(data),
    )


def normalize(
    provider_hint: str | None, body: Any, event_type: str | None = None
) -> ProviderEvent:
    """Normalize a webhook body into a canonical provider event.

    Args:
        provider_hint: Provider tag implied by the endpoint (e.g. "email"),
            or None when the payload itself names the account type.
        body: Parsed JSON body.
        event_type: Event type tag. Defaults to the one carried by the body.

    Returns:
        An InboundEvent, MessageStatusEvent, AccountStatusEvent or RawEvent.

    Raises:
        MalformedPayload: If the body is not an object or a recognised event
            lacks a mandatory field.
    """
    if not isinstance(body, Mapping):
        raise MalformedPayload("webhook body must be a JSON object")

    body_event_type, data = unwrap(body)
    event_type = event_type or body_event_type

    if event_type is None:
        # Legacy flat shape without an event tag
        if provider_hint == "email" or _first(data, "message", "message_id", "text"):
            event_type = "mail_received" if provider_hint == "email" else "message_received"
        else:
            return RawEvent(type_tag="unknown", fields=data)

    if event_type in MESSAGE_EVENT_TYPES:
        return normalize_message(data, provider_hint)
    if event_type in STATUS_EVENT_TYPES:
        return normalize_status(STATUS_EVENT_TYPES[event_type], data, provider_hint)
    if event_type in ACCOUNT_EVENT_TYPES:
        return normalize_account_status(data)

    logger.debug("Unhandled webhook event type", event_type=event_type)
    return RawEvent(type_tag=event_type, fields=data)
