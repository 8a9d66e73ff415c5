"""Main entry point with CLI."""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

import orjson

from regularize.captcha.solver import CaptchaSolver
from regularize.config import Config, config
from regularize.fetch.client import PortalClient
from regularize.jobs.probe import ProbeRunner
from regularize.logging_conf import setup_logging
from regularize.parse.cnpj import extract_cnpjs, split_valid
from regularize.store.factory import open_store

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Regularize CNPJ automation")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Use the local SQLite store, never Supabase",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help=f"Log level (default: {config.LOG_LEVEL})",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    probe = sub.add_parser("probe", help="Probe CNPJs for an existing Regularize account")
    probe.add_argument(
        "--cnpj",
        action="append",
        default=[],
        help="CNPJ to probe (repeatable, any punctuation)",
    )
    probe.add_argument(
        "--file",
        type=Path,
        default=None,
        help="Text file to read CNPJs from (one per line or free text)",
    )
    probe.add_argument(
        "--item-delay",
        type=float,
        default=None,
        help=f"Seconds between items (default: {config.ITEM_DELAY})",
    )

    status = sub.add_parser("status", help="Show a probe job")
    status.add_argument("--job-id", required=True, help="Job id returned by probe")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    sub.add_parser("refresh-metrics", help="Recompute today's metrics row")

    return parser.parse_args(argv)


def _print_json(data) -> None:
    sys.stdout.write(orjson.dumps(data, option=orjson.OPT_INDENT_2).decode() + "\n")


def collect_cnpjs(args: argparse.Namespace) -> tuple[list[str], list[str]]:
    """Gather identifiers from --cnpj and --file; returns (valid, rejected)."""
    raw = list(args.cnpj)
    if args.file is not None:
        raw.extend(extract_cnpjs(args.file.read_text(encoding="utf-8")))
    return split_valid(raw)


async def run_probe(args: argparse.Namespace) -> int:
    valid, rejected = collect_cnpjs(args)
    for value in rejected:
        logger.warning(f"Ignoring invalid CNPJ {value!r}")
    if not valid:
        logger.error("No valid CNPJ given (use --cnpj or --file)")
        return 1

    store = await open_store(dry_run=args.dry_run)
    solver = CaptchaSolver() if config.CAPTCHA_API_KEY else None
    try:
        job_id = await store.create_job(valid)
        logger.info(f"Job {job_id} created with {len(valid)} CNPJs")
        async with PortalClient() as client:
            runner = ProbeRunner(store, client, solver, item_delay=args.item_delay)
            job = await runner.run(job_id)
        _print_json({"jobId": job_id, "rejected": rejected, **job.model_dump(mode="json")})
    finally:
        if solver is not None:
            await solver.aclose()
        await store.close()
    return 0


async def run_status(args: argparse.Namespace) -> int:
    store = await open_store(dry_run=args.dry_run)
    try:
        job = await store.get_job(args.job_id)
    finally:
        await store.close()
    if job is None:
        logger.error(f"Job {args.job_id} not found")
        return 1
    _print_json(job.model_dump(mode="json"))
    return 0


async def run_refresh_metrics(args: argparse.Namespace) -> int:
    store = await open_store(dry_run=args.dry_run)
    try:
        await store.refresh_metrics()
        _print_json(await store.get_metrics())
    finally:
        await store.close()
    return 0


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        Config.validate(
            require_supabase=False,
            require_captcha=args.command in ("probe", "serve") and not args.dry_run,
        )
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    if args.dry_run:
        logger.info("DRY-RUN mode: Supabase disabled, using local SQLite store")

    if args.command == "serve":
        import uvicorn

        uvicorn.run("regularize.api.main:app", host=args.host, port=args.port)
        return

    commands = {
        "probe": run_probe,
        "status": run_status,
        "refresh-metrics": run_refresh_metrics,
    }
    try:
        code = asyncio.run(commands[args.command](args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
