"""SQLite job store for local runs, dry-runs and tests."""
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import aiosqlite
import orjson

from regularize.config import STATE_DB, config
from regularize.errors import StoreError
from regularize.parse.models import JobStatus
from regularize.store.base import JobStore

logger = logging.getLogger(__name__)

_JSON_COLUMNS = {"cnpjs", "results"}

_REGISTRATION_COLUMNS = (
    "id", "cnpj", "cpf", "nome_mae", "data_nascimento", "email", "celular",
    "senha_hash", "frase_seguranca_hash", "status", "progresso", "etapa_atual",
    "error_message", "comprovante_url", "tempo_inicio", "tempo_fim",
    "tempo_estimado", "created_at", "updated_at",
)


def _encode(row: dict[str, Any]) -> dict[str, Any]:
    return {
        key: orjson.dumps(value).decode() if key in _JSON_COLUMNS else value
        for key, value in row.items()
    }


def _decode(row: aiosqlite.Row | None) -> Optional[dict[str, Any]]:
    if row is None:
        return None
    data = dict(row)
    for key in _JSON_COLUMNS & data.keys():
        data[key] = orjson.loads(data[key]) if data[key] else []
    return data


def _parse_ts(value: str | None) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


class SQLiteJobStore(JobStore):
    """SQLite database holding jobs, registrations and daily metrics."""

    def __init__(self, db_path: Path = STATE_DB):
        self.db_path = Path(db_path)
        self.jobs_table = config.JOBS_TABLE
        self.registrations_table = config.REGISTRATIONS_TABLE
        self.metrics_table = config.METRICS_TABLE

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.jobs_table} (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    progress INTEGER NOT NULL DEFAULT 0,
                    total INTEGER NOT NULL DEFAULT 0,
                    cnpjs TEXT NOT NULL,
                    results TEXT NOT NULL,
                    error_message TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            await db.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.registrations_table} (
                    id TEXT PRIMARY KEY,
                    cnpj TEXT NOT NULL,
                    cpf TEXT NOT NULL,
                    nome_mae TEXT,
                    data_nascimento TEXT,
                    email TEXT NOT NULL,
                    celular TEXT NOT NULL,
                    senha_hash TEXT NOT NULL,
                    frase_seguranca_hash TEXT NOT NULL,
                    status TEXT NOT NULL,
                    progresso INTEGER DEFAULT 0,
                    etapa_atual TEXT,
                    error_message TEXT,
                    comprovante_url TEXT,
                    tempo_inicio TEXT,
                    tempo_fim TEXT,
                    tempo_estimado INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            await db.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.metrics_table} (
                    date TEXT PRIMARY KEY,
                    cadastros_hoje INTEGER,
                    taxa_sucesso REAL,
                    tempo_medio REAL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            await db.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{self.jobs_table}_status ON {self.jobs_table}(status)"
            )
            await db.commit()
        logger.info(f"State database initialized at {self.db_path}")

    async def test_connection(self) -> bool:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("SELECT 1")
            return True
        except aiosqlite.Error as e:
            logger.error(f"SQLite connection test failed: {e}")
            return False

    async def _insert(self, table: str, row: dict[str, Any]) -> None:
        row = _encode(row)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                    tuple(row.values()),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise StoreError(f"Insert into {table} failed: {e}") from e

    async def _update(self, table: str, row_id: str, fields: dict[str, Any]) -> None:
        if not fields:
            return
        fields = _encode(fields)
        assignments = ", ".join(f"{column} = ?" for column in fields)
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    f"UPDATE {table} SET {assignments} WHERE id = ?",
                    (*fields.values(), row_id),
                )
                await db.commit()
                if cursor.rowcount == 0:
                    raise StoreError(f"No row {row_id} in {table}")
        except aiosqlite.Error as e:
            raise StoreError(f"Update of {table}/{row_id} failed: {e}") from e

    async def _get(self, table: str, row_id: str) -> Optional[dict[str, Any]]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,))
                return _decode(await cursor.fetchone())
        except aiosqlite.Error as e:
            raise StoreError(f"Read of {table}/{row_id} failed: {e}") from e

    async def _list(self, table: str, statuses: tuple[str, ...]) -> list[dict[str, Any]]:
        placeholders = ", ".join("?" for _ in statuses)
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    f"SELECT * FROM {table} WHERE status IN ({placeholders}) ORDER BY created_at",
                    statuses,
                )
                return [_decode(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            raise StoreError(f"Listing {table} failed: {e}") from e

    async def _insert_job(self, row: dict[str, Any]) -> None:
        await self._insert(self.jobs_table, row)

    async def _update_job(self, job_id: str, fields: dict[str, Any]) -> None:
        await self._update(self.jobs_table, job_id, fields)

    async def _get_job(self, job_id: str) -> Optional[dict[str, Any]]:
        return await self._get(self.jobs_table, job_id)

    async def _list_jobs(self, statuses: tuple[str, ...]) -> list[dict[str, Any]]:
        return await self._list(self.jobs_table, statuses)

    async def _insert_registration(self, row: dict[str, Any]) -> None:
        row = {key: value for key, value in row.items() if key in _REGISTRATION_COLUMNS}
        await self._insert(self.registrations_table, row)

    async def _update_registration(self, registration_id: str, fields: dict[str, Any]) -> None:
        await self._update(self.registrations_table, registration_id, fields)

    async def _get_registration(self, registration_id: str) -> Optional[dict[str, Any]]:
        return await self._get(self.registrations_table, registration_id)

    async def _list_registrations(self, statuses: tuple[str, ...]) -> list[dict[str, Any]]:
        return await self._list(self.registrations_table, statuses)

    async def _recent_registrations(self, limit: int) -> list[dict[str, Any]]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    f"SELECT * FROM {self.registrations_table} ORDER BY created_at DESC, rowid DESC LIMIT ?",
                    (limit,),
                )
                return [_decode(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            raise StoreError(f"Listing {self.registrations_table} failed: {e}") from e

    async def refresh_metrics(self) -> None:
        """Recompute today's registration metrics (count, success rate, mean duration)."""
        today = datetime.now(timezone.utc).date().isoformat()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    f"""
                    SELECT status, tempo_inicio, tempo_fim FROM {self.registrations_table}
                    WHERE substr(created_at, 1, 10) = ?
                    """,
                    (today,),
                )
                rows = await cursor.fetchall()

                total = len(rows)
                completed = [r for r in rows if r["status"] == JobStatus.COMPLETED.value]
                finished = [r for r in rows if r["status"] in (JobStatus.COMPLETED.value, JobStatus.FAILED.value)]
                durations = []
                for r in completed:
                    start, end = _parse_ts(r["tempo_inicio"]), _parse_ts(r["tempo_fim"])
                    if start and end:
                        durations.append((end - start).total_seconds())

                success_rate = round(len(completed) * 100 / len(finished), 2) if finished else None
                mean_duration = round(sum(durations) / len(durations), 2) if durations else None

                await db.execute(
                    f"""
                    INSERT OR REPLACE INTO {self.metrics_table}
                        (date, cadastros_hoje, taxa_sucesso, tempo_medio, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (today, total, success_rate, mean_duration, datetime.now(timezone.utc).isoformat()),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise StoreError(f"Metrics refresh failed: {e}") from e
        logger.info(f"Metrics refreshed for {today}: {total} registrations")

    async def get_metrics(self, day: str | None = None) -> Optional[dict[str, Any]]:
        day = day or datetime.now(timezone.utc).date().isoformat()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(f"SELECT * FROM {self.metrics_table} WHERE date = ?", (day,))
            row = await cursor.fetchone()
            return dict(row) if row else None
