import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from data_sources.prpc import get_stats
from models.system_metrics import SystemMetrics
from services.db import SessionLocal

logger = logging.getLogger(__name__)

SYSTEM_METRIC_FIELDS = [
    'active_streams',
    'cpu_percent',
    'ram_used',
    'ram_total',
    'packets_received',
    'packets_sent',
    'uptime',
    'current_index',
    'file_size',
    'total_bytes',
    'total_pages',
]


def normalize_system_stats(stats: Dict[str, Any]) -> Dict[str, Any]:
    """Map a get-stats result to system_metrics columns. Timestamp comes from last_updated."""
    last_updated = stats.get('last_updated')
    if last_updated is not None:
        timestamp = datetime.fromtimestamp(int(last_updated), tz=timezone.utc).replace(tzinfo=None)
    else:
        timestamp = datetime.utcnow()
    data = {field: stats.get(field) for field in SYSTEM_METRIC_FIELDS}
    data['timestamp'] = timestamp
    return data


def save_system_metrics(stats: Dict[str, Any], session_factory=SessionLocal) -> Dict[str, Any]:
    """Store one system_metrics row and return it as a dict"""
    session = session_factory()
    try:
        row = SystemMetrics(**normalize_system_stats(stats))
        session.add(row)
        session.commit()
        logger.info(f"Saved system metrics snapshot for {row.timestamp.isoformat()}")
        return row.to_dict()
    except Exception as e:
        session.rollback()
        logger.error(f"Failed to save system metrics: {e}")
        raise
    finally:
        session.close()


def import_system_metrics_to_db(fetch_stats=get_stats, session_factory=SessionLocal) -> Dict[str, Any]:
    """Fetch get-stats from pRPC and store it. Raises UpstreamUnavailableError if no endpoint answers."""
    stats = fetch_stats()
    return save_system_metrics(stats, session_factory=session_factory)


def get_system_metrics_history(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 1000,
    session_factory=SessionLocal,
):
    """System metrics rows between start and end, newest first"""
    session = session_factory()
    try:
        query = session.query(SystemMetrics)
        if start is not None:
            query = query.filter(SystemMetrics.timestamp >= start)
        if end is not None:
            query = query.filter(SystemMetrics.timestamp <= end)
        rows = query.order_by(SystemMetrics.timestamp.desc()).limit(limit).all()
        return [r.to_dict() for r in rows]
    finally:
        session.close()
