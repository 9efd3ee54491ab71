# companion_relay/core/errors.py
"""
Error types shared by the relay, the store and the response generator.

Every error carries a `public_message`: the short, generic text that may be
shown to a client. The exception's own message (and anything chained to it)
is for the server log only.
"""


class RelayError(RuntimeError):
    """Base class for failures raised while processing a turn."""

    public_message = "Failed to process message"

    def __init__(self, message: str = "", public_message: str = "") -> None:
        super().__init__(message or self.public_message)
        if public_message:
            self.public_message = public_message


class InvalidMessageError(RelayError, ValueError):
    """Content or identifiers failed validation; nothing was persisted."""

    public_message = "Message content is required"


class ConversationNotFoundError(RelayError, LookupError):
    """The referenced conversation does not exist."""

    public_message = "Conversation not found"


class StoreError(RelayError):
    """The conversation store failed to read or write."""

    public_message = "Failed to process message"


class GeneratorError(RelayError):
    """The response generator failed, timed out or returned unusable output."""

    public_message = "Failed to generate a reply"
