"""
Pod snapshot import.

Workflow:
1. Fetch the live pod population from pRPC
2. Delete registry pods that are no longer reported (the registry mirrors the live set)
3. For every live pod save metadata and/or a metrics row only if something changed
4. Geolocate the IPs of the pods saved in this cycle
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from data_sources.prpc import get_pods_with_stats
from services.ip_geolocation import IpGeolocationService, ip_geolocation_service
from services.pod_registry import PodRegistry

logger = logging.getLogger(__name__)

METADATA_FIELDS = ('pubkey', 'version', 'is_public')
METRIC_FIELDS = ('storage_used', 'storage_committed', 'storage_usage_percent', 'uptime')


def has_metadata_changed(existing, pod: Dict[str, Any]) -> bool:
    """True for unseen pods or when pubkey, version or is_public differs (None is its own value)"""
    if existing is None:
        return True
    return any(getattr(existing, field) != pod.get(field) for field in METADATA_FIELDS)


def has_metrics(pod: Dict[str, Any]) -> bool:
    """Whether the report carries any metrics at all"""
    return pod.get('last_seen_timestamp') is not None or any(pod.get(f) is not None for f in METRIC_FIELDS)


def has_metrics_changed(latest, pod: Dict[str, Any]) -> bool:
    """True when there is no previous snapshot or any metric differs by exact equality"""
    if not has_metrics(pod):
        return False
    if latest is None:
        return True
    for field in METRIC_FIELDS:
        old, new = getattr(latest, field), pod.get(field)
        if old is None or new is None:
            if old is not new:
                return True
        elif old != new:
            return True
    return False


class PodSnapshotReconciler:
    """Applies one live pod report to the registry with the minimal set of writes"""

    def __init__(self, registry: Optional[PodRegistry] = None):
        self.registry = registry or PodRegistry()

    def reconcile(self, live_pods: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Diff `live_pods` against the registry and write the changes.

        Registry load and deletion errors propagate. Errors while saving a
        single pod are collected in `errors` and the remaining pods are still
        processed.
        """
        result = {
            "saved_count": 0,
            "skipped_count": 0,
            "deleted_count": 0,
            "saved_addresses": [],
            "errors": [],
        }

        live_addresses = {pod['address'] for pod in live_pods}
        stored_addresses = self.registry.find_all_addresses()
        stale_addresses = stored_addresses - live_addresses
        if stale_addresses:
            logger.info(f"Deleting {len(stale_addresses)} pods no longer reported")
            result["deleted_count"] = self.registry.delete_pods(sorted(stale_addresses))

        for pod in live_pods:
            address = pod['address']
            try:
                existing, latest = self.registry.find_pod(address)
                metadata_changed = has_metadata_changed(existing, pod)
                metrics_changed = has_metrics_changed(latest, pod)

                if not metadata_changed and not metrics_changed:
                    result["skipped_count"] += 1
                    continue

                pod_id = existing.id if existing is not None else None
                if metadata_changed:
                    pod_id = self.registry.upsert_pod(pod)
                if metrics_changed:
                    self.registry.insert_metric_snapshot(pod_id, pod)

                result["saved_count"] += 1
                result["saved_addresses"].append(address)
                logger.debug(f"Saved pod {address} (metadata={metadata_changed}, metrics={metrics_changed})")
            except Exception as e:
                logger.error(f"Failed to save pod {address}: {e}")
                result["errors"].append({"address": address, "error": str(e)})

        logger.info(
            f"Pod snapshot reconciled: saved={result['saved_count']}, skipped={result['skipped_count']}, "
            f"deleted={result['deleted_count']}, errors={len(result['errors'])}"
        )
        return result


def run_pod_snapshot(
    fetch_pods=get_pods_with_stats,
    reconciler: Optional[PodSnapshotReconciler] = None,
    geolocator: Optional[IpGeolocationService] = None,
) -> Dict[str, Any]:
    """
    Run one full snapshot cycle: fetch, reconcile, geolocate.

    Raises UpstreamUnavailableError if pods could not be fetched, and store
    errors from the registry load or deletion pass.
    """
    reconciler = reconciler or PodSnapshotReconciler()
    geolocator = geolocator or ip_geolocation_service
    started_at = datetime.utcnow()

    live_pods = fetch_pods()
    logger.info(f"Reconciling {len(live_pods)} live pods")
    result = reconciler.reconcile(live_pods)

    geolocation = {"new_ips_count": 0, "stored_count": 0, "batches_processed": 0}
    if result["saved_addresses"]:
        geolocation = asyncio.run(geolocator.process_new_ips(result["saved_addresses"]))

    return {
        "started_at": started_at.isoformat(),
        "completed_at": datetime.utcnow().isoformat(),
        "total_pods": len(live_pods),
        "saved_count": result["saved_count"],
        "skipped_count": result["skipped_count"],
        "deleted_count": result["deleted_count"],
        "errors": result["errors"],
        "geolocation": geolocation,
    }
