"""Job store contract shared by the SQLite and Supabase backends."""
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from regularize.parse.models import JobRecord, JobStatus, RegistrationRecord, utcnow

UNFINISHED_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


def to_storable(value: Any) -> Any:
    """Convert models, enums and datetimes into JSON-compatible values."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storable(v) for v in value]
    return value


class JobStore(ABC):
    """
    Durable record of probe jobs and registrations.

    Every ``update_*`` call is a single-row write: readers never see
    ``progress`` without the ``results`` written with it.
    """

    async def initialize(self) -> None:
        """Create tables or check connectivity."""

    async def close(self) -> None:
        """Release resources."""

    @abstractmethod
    async def test_connection(self) -> bool:
        ...

    # Probe jobs

    async def create_job(self, cnpjs: list[str]) -> str:
        """Insert a pending job for the given canonical CNPJs; returns its id."""
        now = utcnow()
        row = {
            "id": str(uuid.uuid4()),
            "status": JobStatus.PENDING.value,
            "progress": 0,
            "total": len(cnpjs),
            "cnpjs": list(cnpjs),
            "results": [],
            "error_message": None,
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
        }
        await self._insert_job(row)
        return row["id"]

    async def update_job(self, job_id: str, **fields: Any) -> None:
        fields["updated_at"] = utcnow()
        await self._update_job(job_id, to_storable(fields))

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        row = await self._get_job(job_id)
        return JobRecord.model_validate(row) if row else None

    async def list_unfinished_jobs(self) -> list[JobRecord]:
        return [JobRecord.model_validate(row) for row in await self._list_jobs(UNFINISHED_STATUSES)]

    # Registrations

    async def create_registration(self, row: dict[str, Any]) -> str:
        now = utcnow()
        row = dict(row)
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("status", JobStatus.PENDING.value)
        row.setdefault("progresso", 0)
        row["created_at"] = now.isoformat()
        row["updated_at"] = now.isoformat()
        await self._insert_registration(to_storable(row))
        return row["id"]

    async def update_registration(self, registration_id: str, **fields: Any) -> None:
        fields["updated_at"] = utcnow()
        await self._update_registration(registration_id, to_storable(fields))

    async def get_registration(self, registration_id: str) -> Optional[RegistrationRecord]:
        row = await self._get_registration(registration_id)
        return RegistrationRecord.model_validate(row) if row else None

    async def list_unfinished_registrations(self) -> list[RegistrationRecord]:
        rows = await self._list_registrations(UNFINISHED_STATUSES)
        return [RegistrationRecord.model_validate(row) for row in rows]

    async def list_registrations(self, limit: int = 50) -> list[RegistrationRecord]:
        """Most recent registrations first."""
        rows = await self._recent_registrations(limit)
        return [RegistrationRecord.model_validate(row) for row in rows]

    @abstractmethod
    async def refresh_metrics(self) -> None:
        """Recompute the daily metrics row."""

    @abstractmethod
    async def get_metrics(self, day: str | None = None) -> Optional[dict[str, Any]]:
        """Daily metrics row for ``day`` (ISO date, default today)."""

    # Backend primitives

    @abstractmethod
    async def _insert_job(self, row: dict[str, Any]) -> None: ...

    @abstractmethod
    async def _update_job(self, job_id: str, fields: dict[str, Any]) -> None: ...

    @abstractmethod
    async def _get_job(self, job_id: str) -> Optional[dict[str, Any]]: ...

    @abstractmethod
    async def _list_jobs(self, statuses: tuple[str, ...]) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def _insert_registration(self, row: dict[str, Any]) -> None: ...

    @abstractmethod
    async def _update_registration(self, registration_id: str, fields: dict[str, Any]) -> None: ...

    @abstractmethod
    async def _get_registration(self, registration_id: str) -> Optional[dict[str, Any]]: ...

    @abstractmethod
    async def _list_registrations(self, statuses: tuple[str, ...]) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def _recent_registrations(self, limit: int) -> list[dict[str, Any]]: ...
