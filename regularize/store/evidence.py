"""Evidence capture: page snapshots per registration step and the proof artifact."""
import gzip
import logging
from pathlib import Path
from typing import Any, Optional

import aiofiles
import orjson

from regularize.config import EVIDENCE_DIR, config
from regularize.parse.models import utcnow
from regularize.parse.redact import redact_json, redact_string

logger = logging.getLogger(__name__)

PROOF_FILENAME = "comprovante.html"


class EvidenceStore:
    """Stores what the portal showed at each step, for audit and as proof of completion."""

    def __init__(self, base_dir: Path = EVIDENCE_DIR, public_url: str | None = None):
        self.base_dir = Path(base_dir)
        self.public_url = public_url if public_url is not None else config.EVIDENCE_PUBLIC_URL

    def _dir_for(self, registration_id: str) -> Path:
        path = self.base_dir / registration_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    async def save_step(
        self,
        registration_id: str,
        step: str,
        html: str | None,
        details: Optional[dict[str, Any]] = None,
    ) -> Path:
        """Save a compressed page snapshot plus a small JSON summary for one step."""
        step_dir = self._dir_for(registration_id)
        snapshot_path = step_dir / f"{step}.html.gz"
        # gzip in memory, write async
        compressed = gzip.compress(redact_string(html or "").encode("utf-8"))
        async with aiofiles.open(snapshot_path, "wb") as f:
            await f.write(compressed)

        summary = redact_json({
            "registration_id": registration_id,
            "step": step,
            "captured_at": utcnow().isoformat(),
            "html_bytes": len((html or "").encode("utf-8")),
            **(details or {}),
        })
        async with aiofiles.open(step_dir / f"{step}.json", "wb") as f:
            await f.write(orjson.dumps(summary, option=orjson.OPT_INDENT_2))
        logger.debug(f"Saved evidence for {registration_id}/{step} to {snapshot_path}")
        return snapshot_path

    def proof_path(self, registration_id: str) -> Path:
        return self.base_dir / registration_id / PROOF_FILENAME

    def proof_url(self, registration_id: str) -> str:
        """Public URL when one is configured, otherwise the API download route."""
        if self.public_url:
            return f"{self.public_url.rstrip('/')}/{registration_id}/{PROOF_FILENAME}"
        return f"/registrations/{registration_id}/comprovante"

    async def save_proof(self, registration_id: str, html: str) -> str:
        """Save the final confirmation page; returns the reference stored in comprovante_url."""
        proof_path = self._dir_for(registration_id) / PROOF_FILENAME
        async with aiofiles.open(proof_path, "w", encoding="utf-8") as f:
            await f.write(redact_string(html))
        logger.info(f"Saved proof of completion for {registration_id} to {proof_path}")
        return self.proof_url(registration_id)
