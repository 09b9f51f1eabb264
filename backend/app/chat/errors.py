"""Error taxonomy for the chat service.

Every failure that can be reported back to a client derives from
:class:`ChatError`. Handlers raise these; ``ChatService.dispatch`` is the
single place that turns them into ``error`` events for the originating
connection. :class:`AuthenticationError` never reaches that point because it
is raised before a session exists.
"""


class ChatError(Exception):
    """Base class for errors reported to a chat client."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationError(ChatError):
    """Missing or invalid credential at connection time."""


class ValidationError(ChatError):
    """Malformed or incomplete intent payload."""


class NotFoundError(ChatError):
    """An intent referenced a messageId the store does not hold."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


class DuplicateKeyError(ChatError):
    """A message with the same messageId already exists."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message already exists: {message_id}")
        self.message_id = message_id


class PersistenceError(ChatError):
    """The message store could not complete an operation."""
