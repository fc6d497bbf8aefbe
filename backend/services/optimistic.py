"""
Optimistic mutation coordinator: speculative writes over a local collection.

A provider's patient list should not freeze while Supabase round-trips. The
coordinator applies every add / update / delete to its local collection
immediately, then runs the caller-supplied remote operation and reconciles
once it settles:

  add     → success: temp-id row replaced by the server row
            failure: speculative row dropped
  update  → success: slot overwritten with the server row
            failure: slot restored to the pre-mutation snapshot
                     (unless revert_on_error=False)
  delete  → success: nothing left to do
            failure: original row re-inserted at the FRONT of the list

Bookkeeping lives in a parallel map of PendingMutation records keyed by
str(id). A record exists while the remote call is in flight (pending=True)
and survives a failure (pending=False, error=<message>) until the caller
clears or retries it. Successful calls remove the record.

Known, intentional gaps:
  - Two overlapping mutations on the same id are NOT serialized. Both
    speculative writes and both settlements land on the same slot; the one
    that settles last wins.
  - retry() only re-runs the remote call. It does not re-apply the original
    speculative write, and on success it leaves the record in place.
  - A failed delete puts the row back at index 0, not where it was.

Concurrency model: everything runs on one asyncio event loop. Mutating
methods are plain (non-async) functions so the speculative write is visible
the moment they return; they hand back a Mutation whose task settles the
remote call. Await the Mutation to get the server value or the failure.
"""

import asyncio
import logging
import random
import string
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Generic, Iterable, Mapping, Optional, TypeVar

from pydantic import BaseModel

from services.notifier import LoggingNotifier, Notification, Notifier

log = logging.getLogger("carepanel.optimistic")

T = TypeVar("T")

RemoteOp = Callable[[], Awaitable[Any]]
Listener = Callable[["OptimisticCoordinator"], None]

DEFAULT_ERROR = "An error occurred"

_TEMP_ID_ALPHABET = string.digits + string.ascii_lowercase


class NotFoundError(LookupError):
    """Raised when update/delete targets an id that is not in the collection."""

    def __init__(self, item_id: Any):
        super().__init__(f"Item not found: {item_id}")
        self.item_id = item_id


def generate_temp_id(length: int = 9) -> str:
    """Random base-36 id used for rows the server has not confirmed yet."""
    return "".join(random.choices(_TEMP_ID_ALPHABET, k=length))


@dataclass(frozen=True)
class PendingMutation(Generic[T]):
    id: str
    data: T
    pending: bool
    error: Optional[str] = None


@dataclass
class Mutation(Generic[T]):
    """
    Handle for one in-flight optimistic operation.

    `id` is the key the collection and the pending map use for this row,
    the temp id for adds. Awaiting the handle yields the reconciled value
    (None for deletes) or re-raises whatever the remote operation raised.
    """

    id: str
    kind: str
    task: "asyncio.Task[T]"

    def __await__(self):
        return self.task.__await__()

    def done(self) -> bool:
        return self.task.done()


# ── Entity helpers ────────────────────────────────────────────────────────────

def _key_of(item: Any, id_field: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(id_field)
    return getattr(item, id_field, None)


def _merged(item: Any, changes: Mapping[str, Any]) -> Any:
    """Shallow merge. Supabase rows are dicts; typed callers may pass pydantic models."""
    if isinstance(item, BaseModel):
        return item.model_copy(update=dict(changes))
    if isinstance(item, Mapping):
        return {**item, **changes}
    raise TypeError(f"Unsupported entity type for optimistic merge: {type(item).__name__}")


def _message(exc: BaseException, fallback: str) -> str:
    return str(exc) or fallback


# ── Coordinator ───────────────────────────────────────────────────────────────

class OptimisticCoordinator(Generic[T]):
    def __init__(
        self,
        initial_data: Iterable[T] = (),
        *,
        id_field: str = "id",
        revert_on_error: bool = True,
        on_success: Optional[Callable[[T], None]] = None,
        on_error: Optional[Callable[[str, T], None]] = None,
        notifier: Optional[Notifier] = None,
        id_factory: Callable[[], str] = generate_temp_id,
    ):
        self.id_field = id_field
        self.revert_on_error = revert_on_error
        self.on_success = on_success
        self.on_error = on_error
        self.notifier = notifier if notifier is not None else LoggingNotifier()
        self._id_factory = id_factory
        self._data: list[T] = list(initial_data)
        self._pending: dict[str, PendingMutation[T]] = {}
        self._listeners: list[Listener] = []

    # -------------------------------------------------------------------------
    # Read access
    # -------------------------------------------------------------------------

    @property
    def data(self) -> list[T]:
        return list(self._data)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def records(self) -> dict[str, PendingMutation[T]]:
        return dict(self._pending)

    def get(self, item_id: Any) -> Optional[T]:
        for item in self._data:
            if self._matches(item, item_id):
                return item
        return None

    def is_pending(self, item_id: Any) -> bool:
        record = self._pending.get(str(item_id))
        return bool(record and record.pending)

    def get_error(self, item_id: Any) -> Optional[str]:
        record = self._pending.get(str(item_id))
        return record.error if record else None

    def clear_error(self, item_id: Any) -> None:
        key = str(item_id)
        record = self._pending.get(key)
        if record is None:
            return
        self._pending[key] = replace(record, error=None)
        self._emit()

    # -------------------------------------------------------------------------
    # Change notification
    # -------------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener called after every state change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def optimistic_add(self, new_item: T, remote_op: RemoteOp) -> Mutation[T]:
        loop = asyncio.get_running_loop()
        temp_id = self._id_factory()
        item = _merged(new_item, {self.id_field: temp_id})

        self._data.insert(0, item)
        self._pending[temp_id] = PendingMutation(id=temp_id, data=item, pending=True)
        self._emit()
        log.debug("optimistic: add %s pending", temp_id)

        task = loop.create_task(self._settle_add(temp_id, item, remote_op))
        return Mutation(id=temp_id, kind="add", task=task)

    def optimistic_update(
        self,
        item_id: Any,
        changes: Mapping[str, Any],
        remote_op: RemoteOp,
    ) -> Mutation[T]:
        original = self.get(item_id)
        if original is None:
            raise NotFoundError(item_id)
        loop = asyncio.get_running_loop()

        key = str(item_id)
        speculative = _merged(original, changes)
        self._replace(item_id, speculative)
        self._pending[key] = PendingMutation(id=key, data=speculative, pending=True)
        self._emit()
        log.debug("optimistic: update %s pending", key)

        task = loop.create_task(
            self._settle_update(item_id, original, speculative, remote_op)
        )
        return Mutation(id=key, kind="update", task=task)

    def optimistic_delete(self, item_id: Any, remote_op: RemoteOp) -> Mutation[None]:
        original = self.get(item_id)
        if original is None:
            raise NotFoundError(item_id)
        loop = asyncio.get_running_loop()

        key = str(item_id)
        self._data = [item for item in self._data if not self._matches(item, item_id)]
        self._pending[key] = PendingMutation(id=key, data=original, pending=True)
        self._emit()
        log.debug("optimistic: delete %s pending", key)

        task = loop.create_task(self._settle_delete(item_id, original, remote_op))
        return Mutation(id=key, kind="delete", task=task)

    def retry(self, item_id: Any, remote_op: RemoteOp) -> Optional["asyncio.Task[Any]"]:
        """
        Re-run the remote call for a failed mutation.

        Only acts when a record with an error exists for item_id; otherwise
        returns None. The collection is left as it is: a failed add is not
        re-inserted and a reverted update is not re-applied.
        """
        key = str(item_id)
        record = self._pending.get(key)
        if record is None or not record.error:
            return None
        loop = asyncio.get_running_loop()

        self._pending[key] = replace(record, pending=True, error=None)
        self._emit()
        log.info("optimistic: retrying %s", key)
        return loop.create_task(self._settle_retry(key, record, remote_op))

    # -------------------------------------------------------------------------
    # Settlement
    # -------------------------------------------------------------------------

    async def _settle_add(self, temp_id: str, item: T, remote_op: RemoteOp) -> T:
        try:
            result = await remote_op()
        except Exception as exc:
            self._data = [e for e in self._data if not self._matches(e, temp_id)]
            self._record_failure(temp_id, item, exc)
            message = _message(exc, "Failed to save")
            log.warning("optimistic: add %s failed — %s", temp_id, message)
            self._call_on_error(message, item)
            self._notify("Error", f"Failed to add item: {message}", "destructive")
            raise

        self._data = [result if self._matches(e, temp_id) else e for e in self._data]
        self._pending.pop(temp_id, None)
        self._emit()
        log.debug("optimistic: add %s confirmed as %s", temp_id, _key_of(result, self.id_field))
        self._call_on_success(result)
        return result

    async def _settle_update(
        self,
        item_id: Any,
        original: T,
        speculative: T,
        remote_op: RemoteOp,
    ) -> T:
        key = str(item_id)
        try:
            result = await remote_op()
        except Exception as exc:
            if self.revert_on_error:
                self._replace(item_id, original)
            self._record_failure(key, original, exc)
            message = _message(exc, "Failed to update")
            log.warning("optimistic: update %s failed — %s", key, message)
            self._call_on_error(message, speculative)
            self._notify("Error", f"Failed to update: {message}", "destructive")
            raise

        self._replace(item_id, result)
        self._pending.pop(key, None)
        self._emit()
        self._call_on_success(result)
        return result

    async def _settle_delete(self, item_id: Any, original: T, remote_op: RemoteOp) -> None:
        key = str(item_id)
        try:
            await remote_op()
        except Exception as exc:
            self._data.insert(0, original)
            self._record_failure(key, original, exc)
            message = _message(exc, "Failed to delete")
            log.warning("optimistic: delete %s failed — %s", key, message)
            self._call_on_error(message, original)
            self._notify("Error", f"Failed to delete: {message}", "destructive")
            raise

        self._pending.pop(key, None)
        self._emit()
        self._notify("Deleted", "Item has been removed", "default")

    async def _settle_retry(self, key: str, record: PendingMutation[T], remote_op: RemoteOp) -> Any:
        try:
            return await remote_op()
        except Exception as exc:
            self._pending[key] = replace(
                record, pending=False, error=_message(exc, DEFAULT_ERROR)
            )
            self._emit()
            log.warning("optimistic: retry %s failed — %s", key, exc)
            raise

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _matches(self, item: T, item_id: Any) -> bool:
        return str(_key_of(item, self.id_field)) == str(item_id)

    def _replace(self, item_id: Any, value: T) -> None:
        self._data = [value if self._matches(e, item_id) else e for e in self._data]

    def _record_failure(self, key: str, data: T, exc: BaseException) -> None:
        self._pending[key] = PendingMutation(
            id=key,
            data=data,
            pending=False,
            error=_message(exc, DEFAULT_ERROR),
        )
        self._emit()

    # Callback, listener and notifier failures are logged; they must never
    # change how a mutation was reconciled.

    def _emit(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                log.exception("optimistic: change listener failed")

    def _call_on_success(self, result: T) -> None:
        if self.on_success is None:
            return
        try:
            self.on_success(result)
        except Exception:
            log.exception("optimistic: on_success callback failed")

    def _call_on_error(self, message: str, data: T) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(message, data)
        except Exception:
            log.exception("optimistic: on_error callback failed")

    def _notify(self, title: str, description: str, variant: str) -> None:
        try:
            self.notifier(Notification(title=title, description=description, variant=variant))
        except Exception:
            log.exception("optimistic: notifier failed")
