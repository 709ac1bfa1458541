"""Outbound send collaborators.

The outbound pipeline does not know how a provider delivers a message. It
asks the registry for the sender of a provider tag and gets back a
``SendResult``.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

logger = structlog.get_logger()


@dataclass
class SendResult:
    """Result of an external send attempt."""

    success: bool
    external_message_id: str | None = None
    error: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "external_message_id": self.external_message_id,
            "error": self.error,
        }


@dataclass(frozen=True)
class OutboundMessage:
    """What a sender needs to deliver one message."""

    provider: str
    external_account_id: str
    external_conversation_id: str
    body: str
    subject: str | None = None
    attachments: list[dict[str, Any]] = field(default_factory=list)
    reply_to_external_id: str | None = None
    thread_id: str | None = None
    connection_data: dict[str, Any] = field(default_factory=dict)
    chat_info: dict[str, Any] = field(default_factory=dict)


class MessageSender(Protocol):
    """Anything that can deliver an outbound message for a provider."""

    async def send(self, message: OutboundMessage) -> SendResult: ...


class SenderRegistry:
    """Maps provider tags to senders, with a default for relay providers."""

    def __init__(self, default: MessageSender | None = None) -> None:
        self._default = default
        self._senders: dict[str, MessageSender] = {}

    def register(self, provider: str, sender: MessageSender) -> None:
        self._senders[provider] = sender

    def get(self, provider: str) -> MessageSender | None:
        return self._senders.get(provider, self._default)

    async def send(self, message: OutboundMessage) -> SendResult:
        """Deliver through the provider's sender; a missing sender is a failed send."""
        sender = self.get(message.provider)
        if sender is None:
            logger.error("No sender configured for provider", provider=message.provider)
            return SendResult(success=False, error=f"No sender configured for {message.provider}")
        return await sender.send(message)
