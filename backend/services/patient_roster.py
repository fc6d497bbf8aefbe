"""
Patient roster: the provider's working patient list, updated optimistically.

Binds an OptimisticCoordinator to a PatientStore. Each roster action builds
the store call it needs, hands it to the coordinator, and remembers it so a
failed action can be replayed with retry(id) without the caller rebuilding
the request.

The roster also owns a ToastQueue so the UI can poll for the toasts the
coordinator raised since the last poll.
"""

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Iterable, Optional

from config import get_settings
from services.notifier import Notifier, NotifierChain, ToastQueue
from services.optimistic import Mutation, OptimisticCoordinator, RemoteOp
from services.patient_store import PatientStore, validate_risk_level

log = logging.getLogger("carepanel.roster")


class PatientRoster:
    def __init__(
        self,
        store: PatientStore,
        initial: Iterable[dict] = (),
        *,
        notifier: Optional[Notifier] = None,
        revert_on_error: Optional[bool] = None,
    ):
        settings = get_settings()
        if revert_on_error is None:
            revert_on_error = settings.optimistic_revert_on_error

        self.store = store
        self.toasts = ToastQueue(maxlen=settings.toast_history)
        chain = NotifierChain(self.toasts, notifier) if notifier is not None else self.toasts
        self.coordinator: OptimisticCoordinator[dict] = OptimisticCoordinator(
            initial,
            revert_on_error=revert_on_error,
            on_success=self._on_success,
            on_error=self._on_error,
            notifier=chain,
        )
        # Last remote operation issued per row id, kept until it succeeds or
        # its error is cleared
        self._replays: dict[str, RemoteOp] = {}

    @classmethod
    async def load(cls, store: PatientStore, **kwargs: Any) -> "PatientRoster":
        rows = await store.fetch_all()
        log.info("roster: loaded %d patients for %s", len(rows), store.organization_id)
        return cls(store, rows, **kwargs)

    # ── Actions ───────────────────────────────────────────────────────────────

    def add_patient(
        self,
        first_name: str,
        last_name: str,
        date_of_birth: str,
        risk_level: str = "low",
    ) -> Mutation[dict]:
        validate_risk_level(risk_level)
        fields = {
            "first_name": first_name,
            "last_name": last_name,
            "date_of_birth": date_of_birth,
            "risk_level": risk_level,
        }
        draft = {
            "id": "",
            **fields,
            "created_at": datetime.now(tz=timezone.utc).isoformat(),
        }
        op = partial(self.store.create, fields)
        return self._track(self.coordinator.optimistic_add(draft, op), op)

    def update_risk(self, patient_id: str, risk_level: str) -> Mutation[dict]:
        validate_risk_level(risk_level)
        changes = {"risk_level": risk_level}
        op = partial(self.store.update, patient_id, changes)
        return self._track(self.coordinator.optimistic_update(patient_id, changes, op), op)

    def remove_patient(self, patient_id: str) -> Mutation[None]:
        op = partial(self.store.delete, patient_id)
        return self._track(self.coordinator.optimistic_delete(patient_id, op), op)

    def retry(self, patient_id: str) -> Optional["asyncio.Task[Any]"]:
        """Replay the last failed store call for patient_id. None if there is nothing to retry."""
        key = str(patient_id)
        op = self._replays.get(key)
        if op is None:
            return None
        task = self.coordinator.retry(key, op)
        if task is not None:
            task.add_done_callback(partial(self._settled, key))
        return task

    def clear_error(self, patient_id: str) -> None:
        # a cleared failure is no longer retryable
        self._replays.pop(str(patient_id), None)
        self.coordinator.clear_error(patient_id)

    # ── Views ─────────────────────────────────────────────────────────────────

    def snapshot(self) -> dict[str, Any]:
        """
        Rows annotated with pending/error flags, plus failures whose row is no
        longer in the list (a failed add) so the UI can still offer a retry.
        """
        c = self.coordinator
        patients = [
            {**row, "pending": c.is_pending(row["id"]), "error": c.get_error(row["id"])}
            for row in c.data
        ]
        visible = {str(row["id"]) for row in c.data}
        failures = [
            {"id": key, "error": record.error, "data": record.data}
            for key, record in c.records.items()
            if record.error and key not in visible
        ]
        return {
            "patients": patients,
            "pending_count": c.pending_count,
            "failures": failures,
        }

    # ── Internals ─────────────────────────────────────────────────────────────

    def _track(self, mutation: Mutation, op: RemoteOp) -> Mutation:
        self._replays[mutation.id] = op
        mutation.task.add_done_callback(partial(self._settled, mutation.id))
        return mutation

    def _settled(self, key: str, task: "asyncio.Task[Any]") -> None:
        # Failures are already recorded on the coordinator; reading the
        # exception here keeps fire-and-forget mutations from being reported
        # as unretrieved.
        if task.cancelled():
            return
        if task.exception() is None:
            self._replays.pop(key, None)

    def _on_success(self, row: dict) -> None:
        log.debug("roster: confirmed patient %s", row.get("id"))

    def _on_error(self, message: str, row: dict) -> None:
        log.warning("roster: patient %s mutation failed: %s", row.get("id"), message)
