"""
Tests for the pRPC client: endpoint failover and pod normalization.
"""

import pytest
import requests
from datetime import datetime
from unittest.mock import MagicMock, patch

from data_sources.prpc import (
    UpstreamUnavailableError,
    call_with_failover,
    get_pods_with_stats,
    get_stats,
    normalize_pod,
    send_rpc_request,
)

ENDPOINTS = ["http://10.0.0.1:6000", "http://10.0.0.2:6000", "http://10.0.0.3:6000"]


def rpc_response(payload, status=200):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return resp


RAW_POD = {
    "address": "173.212.207.32:9001",
    "pubkey": "9Xq...abc",
    "rpc_port": 6000,
    "version": "0.8.0",
    "is_public": True,
    "storage_used": "123456",
    "storage_committed": 1000000000,
    "storage_usage_percent": 12.3456,
    "uptime": 86400,
    "last_seen_timestamp": 1766400000,
}


class TestSendRpcRequest:

    @patch("data_sources.prpc.requests.post")
    def test_posts_jsonrpc_payload_to_rpc_path(self, mock_post):
        mock_post.return_value = rpc_response({"jsonrpc": "2.0", "result": {}, "id": 1})

        send_rpc_request("http://10.0.0.1:6000/", "get-stats", timeout=5)

        args, kwargs = mock_post.call_args
        assert args[0] == "http://10.0.0.1:6000/rpc"
        assert kwargs["json"] == {"jsonrpc": "2.0", "method": "get-stats", "params": [], "id": 1}
        assert kwargs["timeout"] == 5

    @patch("data_sources.prpc.requests.post")
    def test_returns_none_on_transport_error(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("refused")
        assert send_rpc_request("http://10.0.0.1:6000", "get-stats") is None

    @patch("data_sources.prpc.requests.post")
    def test_returns_none_on_http_error(self, mock_post):
        mock_post.return_value = rpc_response(None, status=502)
        assert send_rpc_request("http://10.0.0.1:6000", "get-stats") is None


class TestFailover:

    @patch("data_sources.prpc.requests.post")
    def test_falls_through_to_first_healthy_endpoint(self, mock_post):
        mock_post.side_effect = [
            requests.Timeout("timed out"),
            rpc_response({"jsonrpc": "2.0", "error": {"code": -32601, "message": "nope"}, "id": 1}),
            rpc_response({"jsonrpc": "2.0", "result": {"cpu_percent": 3.5}, "id": 1}),
        ]

        result = call_with_failover("get-stats", ENDPOINTS)

        assert result == {"cpu_percent": 3.5}
        assert mock_post.call_count == 3

    @patch("data_sources.prpc.requests.post")
    def test_stops_at_first_success(self, mock_post):
        mock_post.return_value = rpc_response({"jsonrpc": "2.0", "result": {"pods": []}, "id": 1})

        call_with_failover("get-pods-with-stats", ENDPOINTS)

        assert mock_post.call_count == 1

    @patch("data_sources.prpc.requests.post")
    def test_raises_when_all_endpoints_fail(self, mock_post):
        mock_post.side_effect = [
            requests.ConnectionError("refused"),
            rpc_response({"jsonrpc": "2.0", "id": 1}),
            rpc_response(None, status=500),
        ]

        with pytest.raises(UpstreamUnavailableError):
            call_with_failover("get-stats", ENDPOINTS)

    def test_raises_with_no_endpoints(self):
        with pytest.raises(UpstreamUnavailableError):
            call_with_failover("get-stats", [])


class TestNormalizePod:

    def test_converts_types_and_timestamp(self):
        pod = normalize_pod(RAW_POD)

        assert pod["address"] == "173.212.207.32:9001"
        assert pod["storage_used"] == 123456
        assert pod["storage_usage_percent"] == 12.3456
        assert pod["timestamp"] == datetime(2025, 12, 22, 10, 40, 0)
        assert pod["timestamp"].tzinfo is None

    def test_missing_metrics_stay_none(self):
        pod = normalize_pod({"address": "1.2.3.4:9001", "pubkey": "", "version": "0.7.3"})

        assert pod["pubkey"] is None
        assert pod["is_public"] is None
        for field in ("storage_used", "storage_committed", "storage_usage_percent", "uptime", "timestamp"):
            assert pod[field] is None

    def test_zero_is_kept_distinct_from_missing(self):
        pod = normalize_pod({**RAW_POD, "storage_used": 0, "uptime": 0})
        assert pod["storage_used"] == 0
        assert pod["uptime"] == 0

    def test_entry_without_address_is_dropped(self):
        assert normalize_pod({**RAW_POD, "address": "  "}) is None


class TestFetchers:

    @patch("data_sources.prpc.call_with_failover")
    def test_get_pods_with_stats_drops_duplicates_and_blank_addresses(self, mock_call):
        mock_call.return_value = {
            "pods": [
                RAW_POD,
                {**RAW_POD, "version": "0.9.0"},
                {**RAW_POD, "address": None},
                {**RAW_POD, "address": "5.6.7.8:9001"},
            ],
            "total_count": 4,
        }

        pods = get_pods_with_stats(ENDPOINTS)

        assert [p["address"] for p in pods] == ["173.212.207.32:9001", "5.6.7.8:9001"]
        assert pods[0]["version"] == "0.8.0"
        mock_call.assert_called_once_with("get-pods-with-stats", ENDPOINTS)

    @patch("data_sources.prpc.call_with_failover")
    def test_get_pods_with_stats_handles_missing_list(self, mock_call):
        mock_call.return_value = {"total_count": 0}
        assert get_pods_with_stats(ENDPOINTS) == []

    @patch("data_sources.prpc.call_with_failover")
    def test_get_stats_returns_result(self, mock_call):
        mock_call.return_value = {"active_streams": 2}
        assert get_stats(ENDPOINTS) == {"active_streams": 2}
        mock_call.assert_called_once_with("get-stats", ENDPOINTS)
