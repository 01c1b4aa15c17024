"""
Handler contexts: the collaborator interface keyed objects use during an invocation.

State reads and writes are scoped to the object key. Writes are buffered and only
become visible to other invocations when the runtime commits them together with the
invocation's completion.

Every nondeterministic step (`run`, `send_after`, `cancel_invocation`, `call`) is
recorded in the invocation journal under a sequence number. When an attempt is
retried, steps already in the journal return their recorded outcome instead of being
executed again, so a retry never sees a different "now", never schedules a second
delayed call and never repeats an outbound call.
"""
import inspect
import logging
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar

from pydantic import BaseModel

from cronjob.dispatch import OutboundRequest
from cronjob.errors import (
    DispatchError,
    JournalMismatch,
    TerminalError,
    terminal_error_from,
)
from cronjob.models import Invocation, JournalEntry
from cronjob.utils import dump_json, load_json

if TYPE_CHECKING:
    from cronjob.runtime import Runtime

logger = logging.getLogger("Context")

ModelT = TypeVar("ModelT", bound=BaseModel)


def new_invocation_id() -> str:
    return f"inv_{uuid.uuid4().hex}"


class SharedObjectContext:
    """Read-only access to the last committed state of one object key."""

    def __init__(self, runtime: "Runtime", service: str, key: str, state: dict[str, str]):
        self.runtime = runtime
        self.service = service
        self.key = key
        self._state = state

    async def get(self, name: str, model: type[ModelT]) -> Optional[ModelT]:
        raw = self._state.get(name)
        if raw is None:
            return None
        return model.model_validate_json(raw)


class ObjectContext(SharedObjectContext):
    """Exclusive access to one object key for the duration of an invocation."""

    def __init__(
        self,
        runtime: "Runtime",
        invocation: Invocation,
        state: dict[str, str],
        journal: list[JournalEntry],
    ):
        super().__init__(runtime, invocation.service, invocation.key, state)
        self.invocation_id = invocation.id
        self.attempt = invocation.attempts
        self._journal = journal
        self._seq = 0
        self.state_modified = False

    @property
    def last_attempt(self) -> bool:
        """Whether the retry policy gives up if this attempt fails."""
        return self.runtime.retry_policy.exhausted(self.attempt)

    # === State ===

    def set(self, name: str, value: BaseModel):
        self._state[name] = value.model_dump_json(by_alias=True)
        self.state_modified = True

    def clear(self, name: str):
        self._state.pop(name, None)
        self.state_modified = True

    def clear_all(self):
        self._state.clear()
        self.state_modified = True

    @property
    def state(self) -> dict[str, str]:
        return dict(self._state)

    # === Journaled steps ===

    def now(self) -> datetime:
        """Current time from the runtime clock. Only read it inside `run` so it is recorded."""
        return self.runtime.clock()

    def _next_entry(self, kind: str, name: str) -> tuple[int, Optional[JournalEntry]]:
        seq = self._seq
        self._seq += 1
        if seq >= len(self._journal):
            return seq, None
        entry = self._journal[seq]
        if entry.kind != kind or entry.name != name:
            raise JournalMismatch(
                f"Invocation {self.invocation_id} replayed step {seq} as {kind}:{name}, "
                f"journal has {entry.kind}:{entry.name}"
            )
        return seq, entry

    def _record(
        self,
        seq: int,
        kind: str,
        name: str,
        value: Any = None,
        error: Optional[Exception] = None,
        scheduled: Optional[Invocation] = None,
    ) -> JournalEntry:
        entry = JournalEntry(
            invocation_id=self.invocation_id,
            seq=seq,
            kind=kind,
            name=name,
            value=None if error is not None else dump_json(value),
        )
        if error is not None:
            entry.error_type = type(error).__name__
            entry.error_code = getattr(error, "code", None)
            entry.error_message = str(error)
        self.runtime.store.append_journal(entry, scheduled=scheduled)
        self._journal.append(entry)
        return entry

    async def run(self, name: str, action: Callable[[], Any]) -> Any:
        """
        Execute `action` once and record its JSON-compatible result.

        Terminal errors raised by `action` are recorded too and re-raised on replay.
        Any other exception is not recorded, so the step runs again on the next attempt.
        """
        seq, entry = self._next_entry("run", name)
        if entry is not None:
            if entry.error_type is not None:
                raise terminal_error_from(
                    entry.error_type, entry.error_message, entry.error_code
                )
            return load_json(entry.value)
        try:
            value = action()
            if inspect.isawaitable(value):
                value = await value
        except TerminalError as e:
            self._record(seq, "run", name, error=e)
            raise
        self._record(seq, "run", name, value=value)
        return value

    async def send_after(
        self, handler: str, delay: timedelta, argument: Any = None
    ) -> str:
        """
        Schedule a call to `handler` on this same object after `delay`.

        Returns: the invocation ID of the scheduled call.
        """
        seq, entry = self._next_entry("send", handler)
        if entry is not None:
            return load_json(entry.value)["invocationId"]
        invocation = Invocation(
            id=new_invocation_id(),
            service=self.service,
            key=self.key,
            handler=handler,
            argument=None if argument is None else dump_json(argument),
            execute_at=self.runtime.clock() + delay,
        )
        self._record(
            seq,
            "send",
            handler,
            value={
                "invocationId": invocation.id,
                "executeAt": invocation.execute_at.isoformat(),
            },
            scheduled=invocation,
        )
        self.runtime.wake()
        logger.debug(
            f"{self.service}/{self.key}: scheduled {handler} as {invocation.id} "
            f"at {invocation.execute_at.isoformat()}"
        )
        return invocation.id

    async def cancel_invocation(self, invocation_id: str) -> bool:
        """
        Request cancellation of a pending invocation.

        Best effort: an invocation that has already started is not stopped.
        Returns whether the invocation was still pending and is now cancelled.
        """
        seq, entry = self._next_entry("cancel", invocation_id)
        if entry is not None:
            return load_json(entry.value)
        cancelled = self.runtime.store.cancel(invocation_id, self.runtime.clock())
        self._record(seq, "cancel", invocation_id, value=cancelled)
        return cancelled

    async def call(self, request: OutboundRequest) -> Any:
        """
        Perform an outbound call through the runtime transport.

        Both the response and a dispatch failure are recorded; a replayed failure is
        raised again as `DispatchError`.
        """
        seq, entry = self._next_entry("call", request.path)
        if entry is not None:
            if entry.error_type is not None:
                raise DispatchError(entry.error_message)
            return load_json(entry.value)
        try:
            response = await self.runtime.transport.call(request)
        except DispatchError as e:
            self._record(seq, "call", request.path, error=e)
            raise
        self._record(seq, "call", request.path, value=response)
        return response
