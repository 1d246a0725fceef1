import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from config import PRPC_ENDPOINTS, RPC_TIMEOUT


class UpstreamUnavailableError(Exception):
    """Raised when no pRPC endpoint returned a usable answer"""


def send_rpc_request(endpoint: str, method: str, timeout: float = RPC_TIMEOUT) -> Optional[Dict[str, Any]]:
    """
    POST a JSON-RPC 2.0 request to `<endpoint>/rpc`. Logs and returns None on any failure.
    """
    url = f"{endpoint.rstrip('/')}/rpc"
    payload = {"jsonrpc": "2.0", "method": method, "params": [], "id": 1}
    try:
        resp = requests.post(url, json=payload, timeout=timeout)
        resp.raise_for_status()
        return resp.json()
    except (requests.RequestException, ValueError) as e:
        logging.warning(f"Request to {url} ({method}) failed: {e}")
        return None


def call_with_failover(method: str, endpoints: Optional[List[str]] = None, timeout: float = RPC_TIMEOUT) -> Dict[str, Any]:
    """
    Try each endpoint in order and return the `result` of the first valid answer.
    Raises UpstreamUnavailableError if every endpoint fails.
    """
    endpoints = endpoints if endpoints is not None else PRPC_ENDPOINTS
    for endpoint in endpoints:
        data = send_rpc_request(endpoint, method, timeout=timeout)
        if not data:
            continue
        if data.get('error'):
            logging.warning(f"{endpoint} returned an RPC error for {method}: {data['error']}")
            continue
        result = data.get('result')
        if isinstance(result, dict):
            logging.info(f"{method} answered by {endpoint}")
            return result
        logging.warning(f"{endpoint} returned no result for {method}")
    raise UpstreamUnavailableError(f"All {len(endpoints)} pRPC endpoints failed for {method}")


def _to_int(value):
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_float(value):
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_pod(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Normalize one pod from get-pods-with-stats for the snapshot reconciler.
    Returns None for entries without an address.
    """
    address = (raw.get('address') or '').strip()
    if not address:
        return None

    last_seen = _to_int(raw.get('last_seen_timestamp'))
    timestamp = None
    if last_seen is not None:
        # Naive UTC, like every other DateTime column
        timestamp = datetime.fromtimestamp(last_seen, tz=timezone.utc).replace(tzinfo=None)

    is_public = raw.get('is_public')
    return {
        'address': address,
        'pubkey': raw.get('pubkey') or None,
        'rpc_port': _to_int(raw.get('rpc_port')),
        'version': raw.get('version'),
        'is_public': bool(is_public) if is_public is not None else None,
        'storage_used': _to_int(raw.get('storage_used')),
        'storage_committed': _to_int(raw.get('storage_committed')),
        'storage_usage_percent': _to_float(raw.get('storage_usage_percent')),
        'uptime': _to_int(raw.get('uptime')),
        'last_seen_timestamp': last_seen,
        'timestamp': timestamp,
    }


def get_pods_with_stats(endpoints: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    """
    Current pod population with metrics. Duplicate addresses keep the first entry.
    """
    result = call_with_failover("get-pods-with-stats", endpoints)
    pods = []
    seen = set()
    for raw in result.get('pods') or []:
        pod = normalize_pod(raw)
        if pod is None:
            logging.warning("Skipping pod without address")
            continue
        if pod['address'] in seen:
            logging.warning(f"Duplicate pod address in report: {pod['address']}")
            continue
        seen.add(pod['address'])
        pods.append(pod)
    logging.info(f"Received {len(pods)} pods (reported total_count={result.get('total_count')})")
    return pods


def get_stats(endpoints: Optional[List[str]] = None) -> Dict[str, Any]:
    """Network-wide system stats (get-stats)"""
    return call_with_failover("get-stats", endpoints)
