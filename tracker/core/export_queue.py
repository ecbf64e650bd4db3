"""
Durable export queue — one JSON file per job.

Layout under the queue root:
  pending/   jobs waiting for the sweeper (time-ordered, collision-free names)
  claimed/   jobs a sweeper has taken but not yet acked
  error/     quarantined jobs, kept for manual inspection
  tmp/       partially written jobs; never read

Every state change is a rename inside one filesystem, so it is atomic:
  enqueue    tmp/x      -> pending/x     (after fsync)
  claim      pending/x  -> claimed/x     (loser of a race gets None)
  ack        claimed/x  -> deleted
  quarantine claimed/x  -> error/x
  requeue    claimed/x  -> pending/x     (claims abandoned by a crashed sweeper)

Delivery is at-least-once: a sweeper that dies between append and ack leaves
the claim behind, and requeue_stale() hands it out again.
"""

import os
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel

from tracker.core.config_resolver import EffectiveConfig
from tracker.core.errors import ExportEnqueueFailed
from tracker.core.forwarder import truncate_response

import structlog

logger = structlog.get_logger()

JOB_PREFIX = "gs_"
JOB_SUFFIX = ".json"
EXPORT_RESPONSE_WIDTH = 50


class ExportDestination(BaseModel):
    spreadsheet_id: str
    sheet_name: str
    credentials_json: str


class ExportJob(BaseModel):
    destination: ExportDestination
    data: dict[str, Any]
    timestamp: float
    retry_count: int = 0


def _job_name() -> str:
    # nanosecond prefix keeps lexical order == enqueue order; uuid makes it unique
    return f"{JOB_PREFIX}{time.time_ns():020d}_{uuid.uuid4().hex}{JOB_SUFFIX}"


class JobStore:
    def __init__(self, root: str | os.PathLike):
        self.root = Path(root)
        self.pending_dir = self.root / "pending"
        self.claimed_dir = self.root / "claimed"
        self.error_dir = self.root / "error"
        self.tmp_dir = self.root / "tmp"

    def ensure_dirs(self) -> None:
        for d in (self.pending_dir, self.claimed_dir, self.error_dir, self.tmp_dir):
            d.mkdir(parents=True, exist_ok=True)

    # --- producer side ---

    def enqueue(self, job: ExportJob) -> str:
        name = _job_name()
        tmp_path = self.tmp_dir / name
        try:
            self.ensure_dirs()
            with open(tmp_path, "wb") as f:
                f.write(job.model_dump_json(indent=2).encode("utf-8"))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.pending_dir / name)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise ExportEnqueueFailed(str(e)) from e
        return name

    # --- consumer side ---

    def pending(self, limit: int | None = None) -> list[str]:
        if not self.pending_dir.is_dir():
            return []
        names = sorted(
            entry.name for entry in os.scandir(self.pending_dir)
            if entry.is_file() and entry.name.endswith(JOB_SUFFIX)
        )
        return names[:limit] if limit is not None else names

    def claim(self, name: str) -> Path | None:
        self.ensure_dirs()
        claimed = self.claimed_dir / name
        try:
            os.rename(self.pending_dir / name, claimed)
        except FileNotFoundError:
            return None
        # claim age is measured from now, not from enqueue
        os.utime(claimed)
        return claimed

    def read(self, path: Path) -> ExportJob:
        return ExportJob.model_validate_json(path.read_bytes())

    def ack(self, path: Path) -> None:
        path.unlink(missing_ok=True)

    def quarantine(self, path: Path, reason: str) -> Path:
        self.ensure_dirs()
        target = self.error_dir / path.name
        os.replace(path, target)
        (self.error_dir / f"{path.name}.error").write_text(
            f"{datetime.now(timezone.utc).isoformat()} {reason}\n", encoding="utf-8"
        )
        return target

    def quarantined(self) -> list[str]:
        if not self.error_dir.is_dir():
            return []
        return sorted(p.name for p in self.error_dir.iterdir() if p.name.endswith(JOB_SUFFIX))

    def requeue_stale(self, max_age_seconds: float) -> int:
        if not self.claimed_dir.is_dir():
            return 0
        cutoff = time.time() - max_age_seconds
        requeued = 0
        for entry in os.scandir(self.claimed_dir):
            if not entry.is_file() or entry.stat().st_mtime > cutoff:
                continue
            try:
                os.rename(entry.path, self.pending_dir / entry.name)
            except FileNotFoundError:
                continue
            requeued += 1
            logger.warning("export_job_requeued", job=entry.name)
        return requeued


# ---------------------------------------------------------------------------
# Building jobs from a pipeline event
# ---------------------------------------------------------------------------

def export_row(
    config: EffectiveConfig,
    click_id: str,
    raw_sum: str,
    mapped_sum: str,
    status: int,
    ip: str,
    response_text: str,
    extra_params: Mapping[str, str],
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    row: dict[str, Any] = {
        "date": now.strftime("%Y-%m-%d %H:%M:%S"),
        "partner_name": config.name,
        "clickid": click_id,
        "sum": raw_sum,
        "sum_mapping": mapped_sum,
        "status": status,
        "ip": ip,
        "response": truncate_response(response_text, EXPORT_RESPONSE_WIDTH),
    }
    for key, value in extra_params.items():
        row[key] = value
    return row


def build_export_job(config: EffectiveConfig, row: Mapping[str, Any]) -> ExportJob | None:
    if not config.has_export_target or not row:
        return None
    return ExportJob(
        destination=ExportDestination(
            spreadsheet_id=config.google_spreadsheet_id,
            sheet_name=config.google_sheet_name,
            credentials_json=config.google_service_account_json,
        ),
        data=dict(row),
        timestamp=time.time(),
    )


def enqueue_export(store: JobStore, job: ExportJob, partner_id: str = "") -> str | None:
    """Best-effort enqueue. Failures are logged, never raised."""
    try:
        name = store.enqueue(job)
    except ExportEnqueueFailed as e:
        logger.error("export_enqueue_failed", partner=partner_id, error=str(e))
        return None
    logger.info("export_enqueued", partner=partner_id, job=name)
    return name
