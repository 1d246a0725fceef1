import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import desc

from models.pod import Pod, PodMetricsHistory
from services.db import SessionLocal


def _latest_metrics(session, pod_id: int) -> Optional[PodMetricsHistory]:
    return (
        session.query(PodMetricsHistory)
        .filter(PodMetricsHistory.pod_id == pod_id)
        .order_by(desc(PodMetricsHistory.id))
        .first()
    )


def get_pods_with_latest_metrics(session_factory=SessionLocal) -> List[Dict[str, Any]]:
    """All registered pods, each with its most recent metrics snapshot (or None)"""
    session = session_factory()
    try:
        result = []
        for pod in session.query(Pod).order_by(Pod.address).all():
            item = pod.to_dict()
            latest = _latest_metrics(session, pod.id)
            item['latest_metrics'] = latest.to_dict() if latest else None
            result.append(item)
        return result
    finally:
        session.close()


def get_pod_details(identifier: str, limit: int = 100, session_factory=SessionLocal) -> Optional[Dict[str, Any]]:
    """
    Pod by address or pubkey with its most recent `limit` snapshots, newest first.
    Returns None if no pod matches.
    """
    session = session_factory()
    try:
        pod = session.query(Pod).filter(Pod.address == identifier).first()
        if pod is None:
            pod = session.query(Pod).filter(Pod.pubkey == identifier).order_by(Pod.id).first()
        if pod is None:
            return None
        history = (
            session.query(PodMetricsHistory)
            .filter(PodMetricsHistory.pod_id == pod.id)
            .order_by(desc(PodMetricsHistory.timestamp))
            .limit(limit)
            .all()
        )
        return {
            "pod": pod.to_dict(),
            "metrics_history": [m.to_dict() for m in history],
            "metrics_count": len(history),
        }
    finally:
        session.close()


def get_pod_metrics_history(
    pubkey: Optional[str] = None,
    address: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 1000,
    session_factory=SessionLocal,
) -> List[Dict[str, Any]]:
    """
    Metric snapshots of one pod between start and end (reported timestamps,
    inclusive), newest first. The pod is looked up by pubkey when given,
    otherwise by address; an unknown pod yields an empty list.
    """
    if not pubkey and not address:
        raise ValueError("Either 'pubkey' or 'address' is required")

    session = session_factory()
    try:
        query = session.query(Pod)
        if pubkey:
            pod = query.filter(Pod.pubkey == pubkey).order_by(Pod.id).first()
        else:
            pod = query.filter(Pod.address == address).first()
        if pod is None:
            return []

        history = session.query(PodMetricsHistory).filter(PodMetricsHistory.pod_id == pod.id)
        if start is not None:
            history = history.filter(PodMetricsHistory.timestamp >= start)
        if end is not None:
            history = history.filter(PodMetricsHistory.timestamp <= end)
        rows = (
            history.order_by(desc(PodMetricsHistory.timestamp), desc(PodMetricsHistory.id))
            .limit(limit)
            .all()
        )
        return [
            {**m.to_dict(), "pubkey": pod.pubkey, "address": pod.address}
            for m in rows
        ]
    finally:
        session.close()


def export_pods_json(out_path=None, session_factory=SessionLocal):
    """
    Export all pods with their latest metrics as JSON string or to a file.
    Args:
        out_path (str|None): Path to the output JSON file. If None, returns JSON string.
    Returns:
        str: JSON string of all pods.
    """
    try:
        result = get_pods_with_latest_metrics(session_factory=session_factory)
        js = json.dumps(result, ensure_ascii=False, indent=2)
        if out_path:
            with open(out_path, "w", encoding="utf-8") as f:
                f.write(js)
            logging.info(f"Exported {len(result)} pods to {out_path}")
        return js
    except Exception as e:
        logging.error(f"Failed to export pods: {e}")
        raise
