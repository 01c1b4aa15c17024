from typing import Optional


class HandlerError(Exception):
    """A handler failure that the runtime retries according to its retry policy."""

    code: int = 500

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"message": self.message, "code": self.code}


class TerminalError(HandlerError):
    """A failure that is never retried and is surfaced to the caller with its code."""


class AlreadyExists(TerminalError):
    code = 409


class NotFound(TerminalError):
    code = 404


class InvalidArgument(TerminalError):
    code = 400


class InvalidSchedule(TerminalError):
    code = 422


class NoUpcomingOccurrence(InvalidSchedule):
    code = 404


class DurationOutOfRange(TerminalError):
    code = 422


class InvocationCancelled(TerminalError):
    code = 409


class JournalMismatch(TerminalError):
    """Raised when a replayed invocation issues different steps than were recorded."""

    code = 570


class ScriptError(HandlerError):
    pass


class DispatchError(HandlerError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


TERMINAL_ERRORS = {
    cls.__name__: cls
    for cls in (
        TerminalError,
        AlreadyExists,
        NotFound,
        InvalidArgument,
        InvalidSchedule,
        NoUpcomingOccurrence,
        DurationOutOfRange,
        InvocationCancelled,
        JournalMismatch,
    )
}


def terminal_error_from(
    error_type: Optional[str], message: str, code: Optional[int]
) -> TerminalError:
    """Rebuild a recorded terminal error, keeping its class when it is a known one."""
    cls = TERMINAL_ERRORS.get(error_type or "", TerminalError)
    return cls(message, code=code)
