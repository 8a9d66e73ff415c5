"""Pick the job store backend from configuration."""
import logging
from pathlib import Path

from regularize.config import STATE_DB, config
from regularize.store.base import JobStore
from regularize.store.state import SQLiteJobStore

logger = logging.getLogger(__name__)


async def open_store(dry_run: bool = False, db_path: Path = STATE_DB) -> JobStore:
    """Supabase when configured (and not a dry-run), local SQLite otherwise."""
    if not dry_run and config.SUPABASE_URL and config.SUPABASE_SERVICE_ROLE:
        from regularize.store.supabase_store import SupabaseJobStore

        store: JobStore = SupabaseJobStore()
        if not await store.test_connection():
            logger.warning("Supabase connection test failed, but continuing...")
    else:
        if not dry_run:
            logger.warning("Supabase not configured, using local SQLite store")
        store = SQLiteJobStore(db_path)
    await store.initialize()
    return store
