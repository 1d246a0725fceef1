"""
Pod registry store.

Persistence for the `pods` table and the `pod_metrics_history` time series.
Every method opens its own session so a failure on one pod never leaves a
half-written transaction behind for the next one.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Set, Tuple

from sqlalchemy import desc

from models.pod import Pod, PodMetricsHistory
from services.db import SessionLocal

logger = logging.getLogger(__name__)


class PodRegistry:
    """Read/write access to registered pods and their metric snapshots"""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def find_all_addresses(self) -> Set[str]:
        """Addresses of every pod currently in the registry"""
        session = self.session_factory()
        try:
            return {address for (address,) in session.query(Pod.address).all()}
        finally:
            session.close()

    def find_pod(self, address: str) -> Tuple[Optional[Pod], Optional[PodMetricsHistory]]:
        """
        Return the pod stored under `address` and its most recently written
        metrics snapshot. Reported timestamps can go backwards (pod restart,
        clock reset), so the last row is picked by insertion order.
        """
        session = self.session_factory()
        try:
            pod = session.query(Pod).filter(Pod.address == address).first()
            if pod is None:
                return None, None
            latest = (
                session.query(PodMetricsHistory)
                .filter(PodMetricsHistory.pod_id == pod.id)
                .order_by(desc(PodMetricsHistory.id))
                .first()
            )
            return pod, latest
        finally:
            session.close()

    def upsert_pod(self, pod_data: Dict[str, Any]) -> int:
        """Insert the pod if its address is unseen, otherwise update its mutable fields. Returns the row id."""
        session = self.session_factory()
        try:
            pod = session.query(Pod).filter(Pod.address == pod_data['address']).first()
            if pod is None:
                pod = Pod(address=pod_data['address'])
                session.add(pod)
                logger.debug(f"Creating pod {pod_data['address']}")
            else:
                pod.updated_at = datetime.utcnow()
            pod.pubkey = pod_data.get('pubkey')
            pod.rpc_port = pod_data.get('rpc_port')
            pod.version = pod_data.get('version')
            pod.is_public = pod_data.get('is_public')
            session.commit()
            return pod.id
        except Exception as e:
            session.rollback()
            logger.error(f"Error upserting pod {pod_data.get('address')}: {e}")
            raise
        finally:
            session.close()

    def delete_pods(self, addresses: Iterable[str]) -> int:
        """
        Delete pods and their metric history in a single transaction.
        Either every listed pod is removed or none is.
        """
        addresses = list(addresses)
        if not addresses:
            return 0
        session = self.session_factory()
        try:
            pod_ids = session.query(Pod.id).filter(Pod.address.in_(addresses))
            session.query(PodMetricsHistory).filter(
                PodMetricsHistory.pod_id.in_(pod_ids.scalar_subquery())
            ).delete(synchronize_session=False)
            deleted = session.query(Pod).filter(Pod.address.in_(addresses)).delete(synchronize_session=False)
            session.commit()
            return deleted
        except Exception as e:
            session.rollback()
            logger.error(f"Error deleting {len(addresses)} stale pods: {e}")
            raise
        finally:
            session.close()

    def insert_metric_snapshot(self, pod_id: int, pod_data: Dict[str, Any]) -> None:
        """Append one metrics row for the pod, stamped with the time the pod reported"""
        session = self.session_factory()
        try:
            snapshot = PodMetricsHistory(
                pod_id=pod_id,
                timestamp=pod_data.get('timestamp') or datetime.utcnow(),
                storage_used=pod_data.get('storage_used'),
                storage_committed=pod_data.get('storage_committed'),
                storage_usage_percent=pod_data.get('storage_usage_percent'),
                uptime=pod_data.get('uptime'),
                last_seen_timestamp=pod_data.get('last_seen_timestamp'),
            )
            session.add(snapshot)
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Error saving metrics for pod id={pod_id}: {e}")
            raise
        finally:
            session.close()
