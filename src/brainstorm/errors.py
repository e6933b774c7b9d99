from __future__ import annotations

"""Exception hierarchy shared by the orchestration services and the API layer."""


class BrainstormError(Exception):
    """Base class for errors surfaced to participants as notifications."""

    status_code: int = 500
    title: str = "Error"


class SessionNotFound(BrainstormError):
    status_code = 404
    title = "Session not found"

    def __init__(self, ref: str) -> None:
        super().__init__(f"This session doesn't exist or the link is invalid: {ref}")
        self.ref = ref


class SessionEnded(BrainstormError):
    status_code = 409
    title = "Session ended"


class NotSessionCreator(BrainstormError):
    status_code = 403
    title = "Not allowed"


class StoreError(BrainstormError):
    status_code = 503
    title = "Storage unavailable"


class CompletionError(BrainstormError):
    """Completion service unreachable, erroring, or returning a malformed reply."""

    status_code = 502
    title = "Agent error"


class PersonaInvocationError(BrainstormError):
    status_code = 502
    title = "Agent error"

    def __init__(self, speaker: str, cause: Exception | None = None) -> None:
        super().__init__(f"Failed to get response from {speaker}")
        self.speaker = speaker
        self.cause = cause


class PrivateChannelError(BrainstormError):
    status_code = 502
    title = "Facilitator unavailable"


class NodeNotFound(BrainstormError):
    status_code = 404
    title = "Not found"


class InvalidInput(BrainstormError):
    status_code = 400
    title = "Invalid input"
