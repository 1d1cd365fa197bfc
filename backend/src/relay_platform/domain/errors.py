"""Exception hierarchy for the delivery orchestrator."""


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class QueueValidationError(OrchestratorError):
    """A message submitted for queueing is malformed."""


class MessageNotFoundError(OrchestratorError):
    """No message_queue row exists for the given id."""

    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id} not found")
        self.message_id = message_id


class UnknownUserError(OrchestratorError):
    """The owning user of a unit does not exist."""

    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class DispatchError(OrchestratorError):
    """A unit could not be delivered; it stays queued for a later tick."""

    def __init__(self, message: str, part_id: str | None = None):
        super().__init__(message)
        self.part_id = part_id


class RenderError(DispatchError):
    """Final text for a part could not be produced."""


class SendError(DispatchError):
    """The SMS provider rejected or failed a send."""
