"""
Error taxonomy for ThreadForge.

NotFound / ValidationError / Busy surface synchronously before a turn starts.
ModelFailure / TurnTimeout end a running turn and reach clients as a terminal
``error`` event. TransportError never changes a turn's outcome.
"""
from typing import Optional


class ThreadForgeError(Exception):
    """Base class; ``code`` is stable and ``http_status`` drives the REST mapping."""

    code = "internal_error"
    http_status = 500


class NotFound(ThreadForgeError):
    """Referenced agent/thread/message is absent or not owned by the caller."""

    code = "not_found"
    http_status = 404

    def __init__(self, kind: str, ident: Optional[str] = None) -> None:
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found" + (f": {ident}" if ident else ""))


class ValidationError(ThreadForgeError):
    code = "validation_error"
    http_status = 400

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class DelegationRefused(ValidationError):
    """Raised when a sub-agent tries to spawn further sub-agents."""

    code = "delegation_refused"

    def __init__(self, thread_id: str) -> None:
        self.thread_id = thread_id
        super().__init__("parent_thread_id", "sub-agents cannot delegate further")


class Unauthorized(ThreadForgeError):
    """No authenticated owner where API tokens are configured."""

    code = "unauthorized"
    http_status = 401


class Busy(ThreadForgeError):
    """A turn is already running on the thread. Rejected, never queued."""

    code = "busy"
    http_status = 409

    def __init__(self, thread_id: str) -> None:
        self.thread_id = thread_id
        super().__init__(f"Thread {thread_id} already has a running turn")


class ModelFailure(ThreadForgeError):
    code = "model_failure"
    http_status = 502

    def __init__(self, reason: str, retryable: bool = False, rate_limited: bool = False) -> None:
        self.reason = reason
        self.retryable = retryable
        self.rate_limited = rate_limited
        super().__init__(reason)


class TurnTimeout(ThreadForgeError):
    code = "timeout"
    http_status = 504

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        super().__init__(f"No progress from the model for {seconds:g}s")


class TransportError(ThreadForgeError):
    code = "transport_error"
    http_status = 500


class SessionLeak(ThreadForgeError):
    """A busy flag outlived every possible turn. Fatal invariant violation."""

    code = "session_leak"

    def __init__(self, thread_id: str, idle_seconds: float) -> None:
        self.thread_id = thread_id
        self.idle_seconds = idle_seconds
        super().__init__(f"Busy flag on thread {thread_id} idle for {idle_seconds:.0f}s")
