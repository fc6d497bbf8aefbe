"""
Patient store: async CRUD over the Supabase patients table for one organization.

These are the remote operations the optimistic roster hands to the
coordinator. supabase-py's client is synchronous, so every query runs in a
worker thread via asyncio.to_thread and the event loop stays free while
PostgREST round-trips.

Every query is filtered by organization_id explicitly. The store is usually
built on the admin client, which bypasses RLS.
"""

import asyncio
import logging
from typing import Any, Mapping, Optional

log = logging.getLogger("carepanel.patients")

RISK_LEVELS = ("low", "medium", "high", "critical")

# Columns the portal is allowed to write; anything else in a draft is dropped.
WRITABLE_FIELDS = (
    "first_name",
    "last_name",
    "date_of_birth",
    "risk_level",
    "risk_score",
    "status",
    "email",
    "phone",
    "mrn",
    "gender",
    "primary_provider_id",
    "next_appointment_date",
)

LIST_COLUMNS = (
    "id, first_name, last_name, date_of_birth, risk_level, risk_score, "
    "status, last_visit_date, next_appointment_date, created_at"
)


class PatientStoreError(RuntimeError):
    """Raised when Supabase accepts a query but returns no row to reconcile with."""


def validate_risk_level(level: str) -> str:
    if level not in RISK_LEVELS:
        raise ValueError(
            f"Invalid risk level '{level}'. Expected one of: {', '.join(RISK_LEVELS)}"
        )
    return level


def _writable(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if k in WRITABLE_FIELDS}


class PatientStore:
    def __init__(self, db: Any, organization_id: str, table: Optional[str] = None):
        from config import get_settings

        self.db = db
        self.organization_id = organization_id
        self.table = table or get_settings().patients_table

    async def fetch_all(self, limit: int = 100) -> list[dict]:
        def _query():
            return (
                self.db.table(self.table)
                .select(LIST_COLUMNS)
                .eq("organization_id", self.organization_id)
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            )

        result = await asyncio.to_thread(_query)
        return result.data or []

    async def create(self, patient: Mapping[str, Any]) -> dict:
        payload = _writable(patient)
        if "risk_level" in payload:
            validate_risk_level(payload["risk_level"])
        payload["organization_id"] = self.organization_id

        def _query():
            return self.db.table(self.table).insert(payload).execute()

        result = await asyncio.to_thread(_query)
        if not result.data:
            raise PatientStoreError("Patient insert returned no row.")
        row = result.data[0]
        log.info("patients: inserted %s", row.get("id"))
        return row

    async def update(self, patient_id: str, changes: Mapping[str, Any]) -> dict:
        payload = _writable(changes)
        if not payload:
            raise ValueError("No writable patient fields in update.")
        if "risk_level" in payload:
            validate_risk_level(payload["risk_level"])

        def _query():
            return (
                self.db.table(self.table)
                .update(payload)
                .eq("organization_id", self.organization_id)
                .eq("id", patient_id)
                .execute()
            )

        result = await asyncio.to_thread(_query)
        if not result.data:
            raise PatientStoreError("Patient not found or access denied.")
        log.info("patients: updated %s (%s)", patient_id, ", ".join(sorted(payload)))
        return result.data[0]

    async def delete(self, patient_id: str) -> None:
        def _query():
            return (
                self.db.table(self.table)
                .delete()
                .eq("organization_id", self.organization_id)
                .eq("id", patient_id)
                .execute()
            )

        result = await asyncio.to_thread(_query)
        if not result.data:
            raise PatientStoreError("Patient not found or access denied.")
        log.info("patients: deleted %s", patient_id)
