"""Tests for the file-backed export queue and job building."""

import json
import os
import time
from datetime import datetime, timezone
from unittest.mock import patch

from tracker.core.config_resolver import EffectiveConfig
from tracker.core.export_queue import (
    ExportDestination,
    ExportJob,
    JobStore,
    build_export_job,
    enqueue_export,
    export_row,
)

EXPORT_CONFIG = EffectiveConfig(
    partner_id="acme",
    name="Acme Ads",
    target_domain="track.acme.example",
    google_spreadsheet_id="sheet-123",
    google_sheet_name="Leads",
    google_service_account_json='{"type": "service_account"}',
)


def _job(**data) -> ExportJob:
    return ExportJob(
        destination=ExportDestination(
            spreadsheet_id="sheet-123",
            sheet_name="Leads",
            credentials_json="{}",
        ),
        data=data or {"clickid": "c-1"},
        timestamp=time.time(),
    )


class TestJobStore:
    def test_enqueue_writes_pending_file(self, tmp_path):
        store = JobStore(tmp_path)
        name = store.enqueue(_job(clickid="c-1"))
        assert name.startswith("gs_") and name.endswith(".json")
        assert store.pending() == [name]
        assert os.listdir(store.tmp_dir) == []
        payload = json.loads((store.pending_dir / name).read_text())
        assert payload["data"] == {"clickid": "c-1"}
        assert payload["destination"]["sheet_name"] == "Leads"
        assert payload["retry_count"] == 0

    def test_names_unique_and_time_ordered(self, tmp_path):
        store = JobStore(tmp_path)
        names = [store.enqueue(_job(clickid=f"c-{n}")) for n in range(5)]
        assert len(set(names)) == 5
        assert store.pending() == sorted(names)

    def test_pending_limit(self, tmp_path):
        store = JobStore(tmp_path)
        for n in range(3):
            store.enqueue(_job(clickid=f"c-{n}"))
        assert len(store.pending(limit=2)) == 2

    def test_pending_on_missing_root(self, tmp_path):
        assert JobStore(tmp_path / "nowhere").pending() == []

    def test_claim_moves_file(self, tmp_path):
        store = JobStore(tmp_path)
        name = store.enqueue(_job())
        path = store.claim(name)
        assert path == store.claimed_dir / name
        assert path.exists()
        assert store.pending() == []

    def test_second_claim_loses(self, tmp_path):
        store = JobStore(tmp_path)
        name = store.enqueue(_job())
        assert store.claim(name) is not None
        assert JobStore(tmp_path).claim(name) is None

    def test_ack_removes_claim(self, tmp_path):
        store = JobStore(tmp_path)
        path = store.claim(store.enqueue(_job()))
        store.ack(path)
        assert not path.exists()
        assert os.listdir(store.claimed_dir) == []

    def test_quarantine_keeps_job_and_reason(self, tmp_path):
        store = JobStore(tmp_path)
        name = store.enqueue(_job())
        path = store.claim(name)
        target = store.quarantine(path, "ExportDeliveryFailed: bad credentials")
        assert target.exists()
        assert store.quarantined() == [name]
        assert "bad credentials" in (store.error_dir / f"{name}.error").read_text()
        assert store.pending() == []

    def test_requeue_stale_claims(self, tmp_path):
        store = JobStore(tmp_path)
        name = store.enqueue(_job())
        path = store.claim(name)
        old = time.time() - 3600
        os.utime(path, (old, old))
        assert store.requeue_stale(600) == 1
        assert store.pending() == [name]

    def test_fresh_claims_not_requeued(self, tmp_path):
        store = JobStore(tmp_path)
        store.claim(store.enqueue(_job()))
        assert store.requeue_stale(600) == 0
        assert store.pending() == []


class TestExportRow:
    def test_fixed_columns_then_extras(self):
        row = export_row(
            EXPORT_CONFIG,
            click_id="c-1",
            raw_sum="10",
            mapped_sum="7.5",
            status=200,
            ip="203.0.113.9",
            response_text="<b>OK</b>",
            extra_params={"geo": "US", "sub1": "a"},
            now=datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc),
        )
        assert list(row) == [
            "date", "partner_name", "clickid", "sum", "sum_mapping",
            "status", "ip", "response", "geo", "sub1",
        ]
        assert row["date"] == "2026-03-04 05:06:07"
        assert row["partner_name"] == "Acme Ads"
        assert row["response"] == "OK"
        assert row["status"] == 200

    def test_response_truncated(self):
        row = export_row(EXPORT_CONFIG, "c-1", "", "", 200, "ip", "z" * 300, {})
        assert len(row["response"]) == 50


class TestBuildExportJob:
    def test_built_when_target_complete(self):
        job = build_export_job(EXPORT_CONFIG, {"clickid": "c-1"})
        assert job.destination.spreadsheet_id == "sheet-123"
        assert job.destination.sheet_name == "Leads"
        assert job.data == {"clickid": "c-1"}
        assert job.retry_count == 0

    def test_none_without_target(self):
        cfg = EffectiveConfig(partner_id="acme", name="Acme", target_domain="t.example")
        assert build_export_job(cfg, {"clickid": "c-1"}) is None

    def test_none_for_empty_row(self):
        assert build_export_job(EXPORT_CONFIG, {}) is None


class TestEnqueueExport:
    def test_returns_job_name(self, tmp_path):
        store = JobStore(tmp_path)
        name = enqueue_export(store, _job(), "acme")
        assert store.pending() == [name]

    def test_io_failure_swallowed(self, tmp_path):
        store = JobStore(tmp_path)
        with patch("tracker.core.export_queue.os.fsync", side_effect=OSError("No space left on device")):
            assert enqueue_export(store, _job(), "acme") is None
        assert store.pending() == []
        assert os.listdir(store.tmp_dir) == []
