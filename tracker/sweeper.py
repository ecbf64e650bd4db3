"""
Export queue sweeper — delivers queued rows to the spreadsheet sink.

Run from cron, once a minute:

    python -m tracker.sweeper [--queue-dir DIR] [--batch-size N]

Each run:
  1. re-queues claims abandoned by a crashed run
  2. takes up to `batch_size` pending jobs, oldest first
  3. per job: claim → parse → merge header → append row → ack
  4. any failure moves the job to quarantine and the run carries on

Quarantined jobs are never retried automatically.
"""

import argparse
import sys
from dataclasses import dataclass
from typing import Callable

import httpx

from tracker.config import configure_logging, get_settings
from tracker.core.errors import ExportDeliveryFailed
from tracker.core.export_queue import ExportDestination, ExportJob, JobStore
from tracker.core.sheets import GoogleSheetsClient, SheetsClient, align_row, merge_header

import structlog

logger = structlog.get_logger()

ClientFactory = Callable[[ExportDestination], SheetsClient]


@dataclass
class SweepReport:
    pending: int = 0
    delivered: int = 0
    quarantined: int = 0
    skipped: int = 0
    requeued: int = 0


def deliver(job: ExportJob, client: SheetsClient) -> list[str]:
    """Write one job's row. Returns the columns that had to be added to the header."""
    existing = client.read_header()
    header, added = merge_header(existing, job.data.keys())
    if added:
        client.write_header(header)
        logger.info("sheet_header_extended", sheet=job.destination.sheet_name, added=added)
    client.append_row(align_row(header, job.data))
    return added


def sweep(
    store: JobStore,
    client_factory: ClientFactory,
    batch_size: int = 20,
    stale_after_seconds: float | None = None,
) -> SweepReport:
    report = SweepReport()
    if stale_after_seconds is not None:
        report.requeued = store.requeue_stale(stale_after_seconds)

    names = store.pending()
    report.pending = len(names)
    if not names:
        logger.info("sweep_queue_empty")
        return report

    logger.info("sweep_started", pending=len(names), batch=min(batch_size, len(names)))

    for name in names[:batch_size]:
        path = store.claim(name)
        if path is None:
            # another sweeper got there first
            report.skipped += 1
            continue

        try:
            job = store.read(path)
            deliver(job, client_factory(job.destination))
        except Exception as e:
            failure = ExportDeliveryFailed(f"{type(e).__name__}: {e}")
            try:
                store.quarantine(path, str(failure))
            except OSError as move_error:
                # claim vanished under us, e.g. requeued by another sweeper
                report.skipped += 1
                logger.error(
                    "sweep_quarantine_failed",
                    job=name,
                    error=str(failure),
                    move_error=str(move_error),
                )
                continue
            report.quarantined += 1
            logger.error("sweep_job_quarantined", job=name, error=str(failure))
            continue

        store.ack(path)
        report.delivered += 1
        logger.info("sweep_job_delivered", job=name)

    logger.info(
        "sweep_finished",
        delivered=report.delivered,
        quarantined=report.quarantined,
        skipped=report.skipped,
        requeued=report.requeued,
    )
    return report


def main(argv: list[str] | None = None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Deliver queued export jobs to Google Sheets.")
    parser.add_argument("--queue-dir", default=settings.queue_dir)
    parser.add_argument("--batch-size", type=int, default=settings.sweep_batch_size)
    parser.add_argument(
        "--stale-after",
        type=float,
        default=float(settings.sweep_stale_claim_seconds),
        help="Seconds after which an unacked claim is re-queued.",
    )
    args = parser.parse_args(argv)

    configure_logging(settings.debug)
    store = JobStore(args.queue_dir)

    with httpx.Client(timeout=settings.sheets_timeout_seconds) as http:
        sweep(
            store,
            lambda destination: GoogleSheetsClient(destination, http, settings.sheets_api_base),
            batch_size=args.batch_size,
            stale_after_seconds=args.stale_after,
        )

    return 0


if __name__ == "__main__":
    sys.exit(main())
