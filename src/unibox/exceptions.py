"""Custom exception classes for the Unibox service."""


class ConfigurationError(ValueError):
    """Raised when configuration validation fails."""


class DefaultSecretKeyError(ConfigurationError):
    """Raised when no explicit JWT secret key is configured in production."""

    def __init__(self) -> None:
        super().__init__(
            "JWT_SECRET_KEY must be set explicitly in production. "
            "Set the JWT_SECRET_KEY environment variable to a secure random string.",
        )


class ShortSecretKeyError(ConfigurationError):
    """Raised when JWT secret key is too short in production."""

    def __init__(self) -> None:
        super().__init__("JWT_SECRET_KEY must be at least 32 characters in production.")


class UniboxError(Exception):
    """Base exception for inbox pipeline failures."""


# Ingestion pipeline exceptions
class PipelineError(UniboxError):
    """Base class for webhook ingestion failures."""


class MalformedPayload(PipelineError):  # noqa: N818
    """Raised when a webhook payload lacks a mandatory field."""

    def __init__(self, reason: str, field: str | None = None) -> None:
        self.reason = reason
        self.field = field
        message = f"Malformed payload: {reason}"
        if field:
            message = f"{message} (field: {field})"
        super().__init__(message)


class UnknownAccount(PipelineError):  # noqa: N818
    """Raised when an event references an account that is not connected."""

    def __init__(self, external_account_id: str, provider: str | None = None) -> None:
        self.external_account_id = external_account_id
        self.provider = provider
        super().__init__(
            f"No connected account for external id {external_account_id}"
            + (f" on {provider}" if provider else "")
        )


class InvalidSignature(PipelineError):  # noqa: N818
    """Raised when a webhook signature does not match the payload."""

    def __init__(self) -> None:
        super().__init__("Webhook signature verification failed")


class TransientStorageError(UniboxError):
    """Raised when storage stays unavailable after bounded retries."""

    def __init__(self, operation: str, attempts: int, original_error: str) -> None:
        self.operation = operation
        self.attempts = attempts
        self.original_error = original_error
        super().__init__(
            f"Storage operation '{operation}' failed after {attempts} attempts: {original_error}"
        )


# Outbound send exceptions
class SendError(UniboxError):
    """Base class for outbound send failures."""


class LimitExceeded(SendError):  # noqa: N818
    """Raised when a send would exceed the user's monthly message limit."""

    def __init__(self, provider: str, sent: int, limit: int, period: str) -> None:
        self.provider = provider
        self.sent = sent
        self.limit = limit
        self.period = period
        super().__init__(
            f"Monthly message limit exceeded for {provider}: {sent}/{limit} in {period}"
        )


class ExternalSendFailure(SendError):  # noqa: N818
    """Raised when the provider rejects or fails an outbound message."""

    def __init__(self, provider: str, detail: str, message_id: str | None = None) -> None:
        self.provider = provider
        self.detail = detail
        self.message_id = message_id
        super().__init__(f"Failed to send {provider} message: {detail}")


class AccountNotConnected(SendError):  # noqa: N818
    """Raised when sending through an account that is not connected."""

    def __init__(self, account_id: str, status: str) -> None:
        self.account_id = account_id
        self.status = status
        super().__init__(f"Account {account_id} is {status}, not connected")


class MessageNotRetryable(SendError):  # noqa: N818
    """Raised when a retry is requested for a message that did not fail."""

    def __init__(self, message_id: str, status: str) -> None:
        self.message_id = message_id
        self.status = status
        super().__init__(f"Message {message_id} is {status} and cannot be retried")


# Lookup exceptions
class NotFoundError(UniboxError):
    """Base class for missing or foreign resources."""


class ConversationNotFound(NotFoundError):  # noqa: N818
    """Raised when a conversation does not exist or belongs to another user."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found")


class MessageNotFound(NotFoundError):  # noqa: N818
    """Raised when a message does not exist or belongs to another user."""

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        super().__init__(f"Message {message_id} not found")


class AccountNotFound(NotFoundError):  # noqa: N818
    """Raised when an account does not exist or belongs to another user."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


# Provider client exceptions
class ProviderClientError(Exception):
    """Base exception for relay API call failures."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ProviderConnectionError(ProviderClientError):
    """Raised when the relay API cannot be reached."""

    def __init__(self, original_error: str) -> None:
        self.original_error = original_error
        super().__init__(f"Failed to connect to provider relay: {original_error}")


class ProviderHTTPError(ProviderClientError):
    """Raised when the relay API returns an HTTP error."""

    def __init__(self, status_code: int, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Provider relay error: {detail}", status_code=status_code)


class ProviderNotConfiguredError(ProviderClientError):
    """Raised when the relay API key is missing."""

    def __init__(self) -> None:
        super().__init__("UNIPILE_API_KEY is not configured")
