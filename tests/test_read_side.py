"""
Tests for retention cleanup, system metrics ingestion and the read-side
queries (pod export, geolocation map, per-node location history).
"""

import json
from datetime import datetime, timedelta

import pytest
from unittest.mock import MagicMock

from data_sources.prpc import UpstreamUnavailableError
from models.geolocation import IpGeolocation
from models.pod import Pod, PodMetricsHistory
from models.system_metrics import SystemMetrics
from services.geolocation_export import get_all_nodes_with_geolocation, get_node_locations_with_history
from services.pod_export import (
    export_pods_json,
    get_pod_details,
    get_pod_metrics_history,
    get_pods_with_latest_metrics,
)
from services.pod_registry import PodRegistry
from services.pod_snapshot import PodSnapshotReconciler
from services.retention import cleanup_old_metrics
from services.system_metrics_import import (
    get_system_metrics_history,
    import_system_metrics_to_db,
    normalize_system_stats,
)
from tests.conftest import make_pod

NOW = datetime(2026, 3, 1, 12, 0, 0)


def add_rows(session_factory, *rows):
    session = session_factory()
    try:
        session.add_all(rows)
        session.commit()
    finally:
        session.close()


def geo(ip, status="success", lat=52.52, lon=13.405, city="Berlin"):
    return IpGeolocation(
        ip=ip, status=status, country="Germany", country_code="DE",
        region_name="Berlin", city=city, lat=lat, lon=lon, isp="Hetzner", org="Hetzner",
    )


@pytest.fixture
def reconciler(session_factory):
    return PodSnapshotReconciler(PodRegistry(session_factory))


# ============================================================
# Retention
# ============================================================

class TestRetention:

    def test_deletes_only_rows_older_than_window(self, session_factory):
        add_rows(session_factory, Pod(address="1.2.3.4:9001"))
        add_rows(
            session_factory,
            PodMetricsHistory(pod_id=1, timestamp=NOW, created_at=NOW - timedelta(days=91)),
            PodMetricsHistory(pod_id=1, timestamp=NOW, created_at=NOW - timedelta(days=89)),
            SystemMetrics(timestamp=NOW, created_at=NOW - timedelta(days=120)),
            SystemMetrics(timestamp=NOW, created_at=NOW - timedelta(days=1)),
        )

        deleted = cleanup_old_metrics(retention_days=90, now=NOW, session_factory=session_factory)

        assert deleted == {"system_metrics": 1, "pod_metrics": 1}
        session = session_factory()
        try:
            assert session.query(PodMetricsHistory).count() == 1
            assert session.query(SystemMetrics).count() == 1
            assert session.query(Pod).count() == 1
        finally:
            session.close()

    def test_nothing_to_delete(self, session_factory):
        assert cleanup_old_metrics(now=NOW, session_factory=session_factory) == {"system_metrics": 0, "pod_metrics": 0}


# ============================================================
# System metrics
# ============================================================

STATS = {
    "active_streams": 3,
    "cpu_percent": 7.25,
    "ram_used": 1024,
    "ram_total": 8192,
    "packets_received": 10,
    "packets_sent": 12,
    "uptime": 3600,
    "current_index": 42,
    "file_size": 2048,
    "total_bytes": 4096,
    "total_pages": 8,
    "last_updated": 1766400000,
}


class TestSystemMetrics:

    def test_normalize_uses_last_updated(self):
        data = normalize_system_stats(STATS)
        assert data["timestamp"] == datetime(2025, 12, 22, 10, 40, 0)
        assert data["cpu_percent"] == 7.25
        assert "last_updated" not in data

    def test_import_stores_one_row(self, session_factory):
        saved = import_system_metrics_to_db(fetch_stats=lambda: STATS, session_factory=session_factory)

        assert saved["active_streams"] == 3
        history = get_system_metrics_history(session_factory=session_factory)
        assert len(history) == 1

    def test_import_propagates_upstream_failure(self, session_factory):
        fetch = MagicMock(side_effect=UpstreamUnavailableError("down"))
        with pytest.raises(UpstreamUnavailableError):
            import_system_metrics_to_db(fetch_stats=fetch, session_factory=session_factory)
        assert get_system_metrics_history(session_factory=session_factory) == []

    def test_history_filters_and_orders_newest_first(self, session_factory):
        for hours in (0, 1, 2, 3):
            add_rows(session_factory, SystemMetrics(timestamp=NOW + timedelta(hours=hours), active_streams=hours))

        items = get_system_metrics_history(
            start=NOW + timedelta(hours=1), end=NOW + timedelta(hours=3), limit=2,
            session_factory=session_factory,
        )

        assert [i["active_streams"] for i in items] == [3, 2]


# ============================================================
# Pod export
# ============================================================

class TestPodExport:

    def test_latest_metrics_attached(self, reconciler, session_factory):
        reconciler.reconcile([make_pod("1.2.3.4:9001", uptime=100)])
        reconciler.reconcile([make_pod("1.2.3.4:9001", uptime=160, timestamp=datetime(2025, 12, 22, 10, 41, 0))])

        pods = get_pods_with_latest_metrics(session_factory=session_factory)

        assert len(pods) == 1
        assert pods[0]["latest_metrics"]["uptime"] == 160

    def test_latest_metrics_is_last_written_row_after_clock_reset(self, reconciler, session_factory):
        reconciler.reconcile([make_pod("1.2.3.4:9001", uptime=500, timestamp=datetime(2025, 12, 22, 10, 0, 0))])
        reconciler.reconcile([make_pod("1.2.3.4:9001", uptime=5, timestamp=datetime(2025, 12, 22, 9, 0, 0))])

        pods = get_pods_with_latest_metrics(session_factory=session_factory)

        assert pods[0]["latest_metrics"]["uptime"] == 5

    def test_pod_details_by_address_or_pubkey(self, reconciler, session_factory):
        reconciler.reconcile([make_pod("1.2.3.4:9001", pubkey="OPERATOR")])

        by_address = get_pod_details("1.2.3.4:9001", session_factory=session_factory)
        by_pubkey = get_pod_details("OPERATOR", session_factory=session_factory)

        assert by_address["pod"]["address"] == "1.2.3.4:9001"
        assert by_pubkey["pod"]["address"] == "1.2.3.4:9001"
        assert by_address["metrics_count"] == 1
        assert get_pod_details("unknown", session_factory=session_factory) is None

    def test_export_writes_file(self, reconciler, session_factory, tmp_path):
        reconciler.reconcile([make_pod("1.2.3.4:9001")])
        out = tmp_path / "pods.json"

        export_pods_json(out_path=str(out), session_factory=session_factory)

        data = json.loads(out.read_text(encoding="utf-8"))
        assert data[0]["address"] == "1.2.3.4:9001"


class TestPodMetricsHistory:

    @pytest.fixture
    def history_pod(self, reconciler):
        for minutes in range(4):
            reconciler.reconcile([make_pod(
                "1.2.3.4:9001", pubkey="OPERATOR", uptime=100 + minutes,
                timestamp=NOW + timedelta(minutes=minutes),
            )])

    def test_by_pubkey_newest_first(self, history_pod, session_factory):
        rows = get_pod_metrics_history(pubkey="OPERATOR", session_factory=session_factory)

        assert [r["uptime"] for r in rows] == [103, 102, 101, 100]
        assert rows[0]["address"] == "1.2.3.4:9001"

    def test_by_address_with_range_and_limit(self, history_pod, session_factory):
        rows = get_pod_metrics_history(
            address="1.2.3.4:9001",
            start=NOW + timedelta(minutes=1),
            end=NOW + timedelta(minutes=3),
            limit=2,
            session_factory=session_factory,
        )

        assert [r["uptime"] for r in rows] == [103, 102]

    def test_unknown_pod_is_empty(self, history_pod, session_factory):
        assert get_pod_metrics_history(pubkey="nobody", session_factory=session_factory) == []

    def test_requires_pubkey_or_address(self, session_factory):
        with pytest.raises(ValueError):
            get_pod_metrics_history(session_factory=session_factory)


# ============================================================
# Geolocation read side
# ============================================================

class TestGeolocationMap:

    def test_groups_pods_by_ip(self, reconciler, session_factory):
        reconciler.reconcile([
            make_pod("1.2.3.4:9001", pubkey="A"),
            make_pod("1.2.3.4:9002", pubkey="B"),
            make_pod("5.6.7.8:9001", pubkey="C"),
            make_pod("9.9.9.9:9001", pubkey="D"),
        ])
        add_rows(session_factory, geo("1.2.3.4"), geo("5.6.7.8", city="Paris"), geo("9.9.9.9", status="fail", lat=None, lon=None))

        result = get_all_nodes_with_geolocation(session_factory=session_factory)

        assert result["total_nodes"] == 3
        assert result["total_locations"] == 2
        by_ip = {loc["ip"]: loc for loc in result["locations"]}
        assert by_ip["1.2.3.4"]["node_count"] == 2
        assert sorted(by_ip["1.2.3.4"]["pubkeys"]) == ["A", "B"]
        assert by_ip["5.6.7.8"]["city"] == "Paris"

    def test_node_history_merges_addresses_on_same_ip(self, reconciler, session_factory):
        t0 = datetime(2025, 12, 22, 10, 0, 0)
        reconciler.reconcile([
            make_pod("1.2.3.4:9001", pubkey="OPERATOR", timestamp=t0),
            make_pod("1.2.3.4:9002", pubkey="OPERATOR", timestamp=t0 + timedelta(minutes=5)),
        ])
        reconciler.reconcile([
            make_pod("1.2.3.4:9001", pubkey="OPERATOR", uptime=200, timestamp=t0 + timedelta(hours=1)),
            make_pod("1.2.3.4:9002", pubkey="OPERATOR", timestamp=t0 + timedelta(minutes=5)),
        ])
        add_rows(session_factory, geo("1.2.3.4"))

        locations = get_node_locations_with_history("OPERATOR", session_factory=session_factory)

        assert len(locations) == 1
        assert locations[0]["snapshot_count"] == 3
        assert locations[0]["first_seen"] == t0.isoformat()
        assert locations[0]["last_seen"] == (t0 + timedelta(hours=1)).isoformat()

    def test_node_history_by_address_and_unknown_node(self, reconciler, session_factory):
        reconciler.reconcile([make_pod("5.6.7.8:9001", pubkey=None)])
        add_rows(session_factory, geo("5.6.7.8"))

        assert len(get_node_locations_with_history("5.6.7.8:9001", session_factory=session_factory)) == 1
        assert get_node_locations_with_history("nobody", session_factory=session_factory) == []
