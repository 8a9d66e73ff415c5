"""Supabase job store (cnpj_jobs, cadastros, metrics) with retries."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from supabase import Client, create_client
from tenacity import retry, retry_if_exception_type, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from regularize.config import config
from regularize.errors import StoreError
from regularize.store.base import JobStore

logger = logging.getLogger(__name__)


class SupabaseJobStore(JobStore):
    """
    Job store backed by Supabase tables.

    The supabase client is synchronous, so every call runs in the default
    thread pool executor.
    """

    def __init__(self, client: Client | None = None):
        if client is None:
            if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_ROLE:
                raise ValueError("Supabase configuration missing")
            client = create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE)
        self.client: Client = client
        self.jobs_table = config.JOBS_TABLE
        self.registrations_table = config.REGISTRATIONS_TABLE
        self.metrics_table = config.METRICS_TABLE

    async def _run(self, description: str, fn: Callable[[], Any]) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except Exception as e:
            logger.error(f"Supabase {description} failed: {e}", exc_info=True)
            raise StoreError(f"Supabase {description} failed: {e}") from e

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((Exception,)),
        reraise=True,
    )
    def _insert_sync(self, table: str, row: dict) -> None:
        self.client.table(table).insert(row).execute()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_not_exception_type(StoreError),
        reraise=True,
    )
    def _update_sync(self, table: str, row_id: str, fields: dict) -> None:
        response = self.client.table(table).update(fields).eq("id", row_id).execute()
        if not response.data:
            raise StoreError(f"No row {row_id} in {table}")

    def _get_sync(self, table: str, row_id: str) -> Optional[dict]:
        response = self.client.table(table).select("*").eq("id", row_id).limit(1).execute()
        return response.data[0] if response.data else None

    def _list_sync(self, table: str, statuses: tuple[str, ...]) -> list[dict]:
        response = (
            self.client.table(table)
            .select("*")
            .in_("status", list(statuses))
            .order("created_at")
            .execute()
        )
        return response.data or []

    def _recent_sync(self, table: str, limit: int) -> list[dict]:
        response = self.client.table(table).select("*").order("created_at", desc=True).limit(limit).execute()
        return response.data or []

    async def test_connection(self) -> bool:
        """Test Supabase connection."""
        try:
            await self._run(
                "connection test",
                lambda: self.client.table(self.jobs_table).select("id", count="exact").limit(1).execute(),
            )
            logger.info("Supabase connection successful")
            return True
        except StoreError:
            return False

    async def _insert_job(self, row: dict[str, Any]) -> None:
        await self._run("job insert", lambda: self._insert_sync(self.jobs_table, row))

    async def _update_job(self, job_id: str, fields: dict[str, Any]) -> None:
        await self._run("job update", lambda: self._update_sync(self.jobs_table, job_id, fields))

    async def _get_job(self, job_id: str) -> Optional[dict[str, Any]]:
        return await self._run("job read", lambda: self._get_sync(self.jobs_table, job_id))

    async def _list_jobs(self, statuses: tuple[str, ...]) -> list[dict[str, Any]]:
        return await self._run("job listing", lambda: self._list_sync(self.jobs_table, statuses))

    async def _insert_registration(self, row: dict[str, Any]) -> None:
        await self._run("registration insert", lambda: self._insert_sync(self.registrations_table, row))

    async def _update_registration(self, registration_id: str, fields: dict[str, Any]) -> None:
        await self._run(
            "registration update",
            lambda: self._update_sync(self.registrations_table, registration_id, fields),
        )

    async def _get_registration(self, registration_id: str) -> Optional[dict[str, Any]]:
        return await self._run(
            "registration read",
            lambda: self._get_sync(self.registrations_table, registration_id),
        )

    async def _list_registrations(self, statuses: tuple[str, ...]) -> list[dict[str, Any]]:
        return await self._run(
            "registration listing",
            lambda: self._list_sync(self.registrations_table, statuses),
        )

    async def _recent_registrations(self, limit: int) -> list[dict[str, Any]]:
        return await self._run(
            "registration listing",
            lambda: self._recent_sync(self.registrations_table, limit),
        )

    async def refresh_metrics(self) -> None:
        """Run the calculate_daily_metrics database function."""
        await self._run("metrics refresh", lambda: self.client.rpc("calculate_daily_metrics").execute())
        logger.info("Daily metrics refreshed")

    async def get_metrics(self, day: str | None = None) -> Optional[dict[str, Any]]:
        day = day or datetime.now(timezone.utc).date().isoformat()
        response = await self._run(
            "metrics read",
            lambda: self.client.table(self.metrics_table).select("*").eq("date", day).limit(1).execute(),
        )
        return response.data[0] if response.data else None
