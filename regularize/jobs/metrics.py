"""Metrics tracking for a running probe job."""
import time
import logging
from collections import defaultdict
from typing import Dict

from regularize.parse.models import ClassificationMethod, OutcomeStatus, ProbeOutcome

logger = logging.getLogger(__name__)


class Metrics:
    """Track outcome counters and calculate ETA for one job."""

    def __init__(self, total: int, job_id: str = ""):
        self.total = total
        self.job_id = job_id
        self.start_time = time.monotonic()
        self.counters: Dict[str, int] = defaultdict(int)

    def increment(self, key: str, amount: int = 1) -> None:
        """Increment a counter."""
        self.counters[key] += amount

    def record(self, outcome: ProbeOutcome) -> None:
        """Count one outcome."""
        self.increment("processed")
        if outcome.status == OutcomeStatus.ERROR:
            self.increment("errors")
            if outcome.method in (ClassificationMethod.CAPTCHA_FAILED, ClassificationMethod.CAPTCHA_TIMEOUT):
                self.increment("captcha_errors")
        elif outcome.classification:
            self.increment("registered")
        else:
            self.increment("available")
        if outcome.method == ClassificationMethod.UNCERTAIN:
            self.increment("uncertain")

    def get_rate(self) -> float:
        """Get current processing rate (items/second)."""
        elapsed = time.monotonic() - self.start_time
        processed = self.counters.get("processed", 0)
        if elapsed > 0:
            return processed / elapsed
        return 0.0

    def get_eta(self) -> float:
        """Get estimated time remaining in seconds."""
        rate = self.get_rate()
        if rate <= 0:
            return 0.0
        remaining = self.total - self.counters.get("processed", 0)
        return max(remaining, 0) / rate

    def format_eta(self) -> str:
        """Format ETA as human-readable string."""
        eta_seconds = self.get_eta()
        if eta_seconds < 60:
            return f"{eta_seconds:.0f}s"
        elif eta_seconds < 3600:
            return f"{eta_seconds / 60:.1f}m"
        else:
            return f"{eta_seconds / 3600:.1f}h"

    def report(self) -> None:
        """Log current metrics."""
        processed = self.counters.get("processed", 0)
        logger.info(
            f"Job {self.job_id}: {processed}/{self.total} "
            f"({processed * 100 // self.total if self.total > 0 else 0}%) | "
            f"ETA: {self.format_eta()} | "
            f"Registered: {self.counters.get('registered', 0)} | "
            f"Available: {self.counters.get('available', 0)} | "
            f"Errors: {self.counters.get('errors', 0)}"
        )

    def get_summary(self) -> Dict:
        """Get summary statistics."""
        return {
            "total": self.total,
            "processed": self.counters.get("processed", 0),
            "registered": self.counters.get("registered", 0),
            "available": self.counters.get("available", 0),
            "uncertain": self.counters.get("uncertain", 0),
            "errors": self.counters.get("errors", 0),
            "captcha_errors": self.counters.get("captcha_errors", 0),
            "captcha_solved": self.counters.get("captcha_solved", 0),
            "captcha_failed": self.counters.get("captcha_failed", 0),
            "retries": self.counters.get("retries", 0),
            "rate": self.get_rate(),
            "elapsed_seconds": time.monotonic() - self.start_time,
        }
