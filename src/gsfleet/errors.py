import enum


GENERIC_MESSAGE = (
    "There was an unexpected error running the command. "
    "Please reach out to the administrator."
)
SHUTDOWN_MESSAGE = "The service is restarting. Please try again in a moment."


class FleetError(Exception):
    """Base class for errors raised by the fleet controller."""


class UserError(FleetError):
    """Caller-correctable problem. The message is safe to show verbatim."""


class InsufficientCapacityError(FleetError):
    """The cloud provider has no capacity for the requested instance type."""

    def __init__(self, message: str, region: str, instance_type: str | None = None):
        super().__init__(message)
        self.region = region
        self.instance_type = instance_type


class ShutdownInProgress(FleetError):
    def __init__(self, message: str = "Cannot run action, the application is already shutting down."):
        super().__init__(message)


class ReclamationError(FleetError):
    """One or more per-item operations failed during a reclamation or billing cycle."""

    def __init__(self, policy: str, errors: list[BaseException]):
        self.policy = policy
        self.errors = errors
        details = "; ".join(f"{type(e).__name__}: {e}" for e in errors)
        super().__init__(f"{policy}: {len(errors)} operation(s) failed: {details}")


class ErrorKind(enum.Enum):
    USER = "user"
    CAPACITY = "capacity"
    SHUTDOWN = "shutdown"
    UNEXPECTED = "unexpected"


def classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, UserError):
        return ErrorKind.USER
    if isinstance(exc, InsufficientCapacityError):
        return ErrorKind.CAPACITY
    if isinstance(exc, ShutdownInProgress):
        return ErrorKind.SHUTDOWN
    return ErrorKind.UNEXPECTED


def user_message(exc: BaseException) -> str:
    """Text that may be shown to the owner for ``exc``."""
    kind = classify(exc)
    if kind in (ErrorKind.USER, ErrorKind.CAPACITY):
        return str(exc)
    if kind is ErrorKind.SHUTDOWN:
        return SHUTDOWN_MESSAGE
    if kind is ErrorKind.UNEXPECTED:
        return GENERIC_MESSAGE
    raise AssertionError(f"Unhandled error kind: {kind}")
