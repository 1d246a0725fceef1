import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from config import RETENTION_DAYS
from models.pod import PodMetricsHistory
from models.system_metrics import SystemMetrics
from services.db import SessionLocal

logger = logging.getLogger(__name__)


def cleanup_old_metrics(
    retention_days: int = RETENTION_DAYS,
    now: Optional[datetime] = None,
    session_factory=SessionLocal,
) -> Dict[str, int]:
    """
    Delete time-series rows ingested more than `retention_days` ago.
    Returns deleted row counts per table.
    """
    cutoff = (now or datetime.utcnow()) - timedelta(days=retention_days)
    logger.info(f"Starting data cleanup ({retention_days}-day retention, cutoff {cutoff.isoformat()})...")

    session = session_factory()
    try:
        system_deleted = session.query(SystemMetrics).filter(
            SystemMetrics.created_at < cutoff
        ).delete(synchronize_session=False)
        pod_deleted = session.query(PodMetricsHistory).filter(
            PodMetricsHistory.created_at < cutoff
        ).delete(synchronize_session=False)
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Error during data cleanup: {e}")
        raise
    finally:
        session.close()

    logger.info(f"Deleted {system_deleted} old system metrics")
    logger.info(f"Deleted {pod_deleted} old pod metrics")
    return {"system_metrics": system_deleted, "pod_metrics": pod_deleted}
