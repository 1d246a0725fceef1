import logging
from typing import Any, Dict, Iterable, List, Set

from sqlalchemy import insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from models.geolocation import IpGeolocation
from services.db import SessionLocal

logger = logging.getLogger(__name__)


def _insert_skip_duplicates(dialect_name: str):
    """INSERT statement for ip_geolocation that ignores rows whose ip already exists"""
    table = IpGeolocation.__table__
    if dialect_name == "postgresql":
        return pg_insert(table).on_conflict_do_nothing(index_elements=["ip"])
    if dialect_name == "sqlite":
        return sqlite_insert(table).on_conflict_do_nothing(index_elements=["ip"])
    if dialect_name in ("mysql", "mariadb"):
        return insert(table).prefix_with("IGNORE")
    raise ValueError(f"Skip-on-conflict insert is not supported for dialect '{dialect_name}'")


class GeolocationStore:
    """Write-once storage of IP geolocation records"""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def find_existing_ips(self, ips: Iterable[str]) -> Set[str]:
        ips = list(ips)
        if not ips:
            return set()
        session = self.session_factory()
        try:
            rows = session.query(IpGeolocation.ip).filter(IpGeolocation.ip.in_(ips)).all()
            return {ip for (ip,) in rows}
        finally:
            session.close()

    def insert_geolocation_records(self, records: List[Dict[str, Any]]) -> int:
        """
        Insert records, silently skipping IPs that are already stored.
        Returns the number of rows actually inserted (len(records) when the
        driver does not report a row count). Raises on any other database error.
        """
        if not records:
            return 0
        session = self.session_factory()
        try:
            stmt = _insert_skip_duplicates(session.get_bind().dialect.name)
            result = session.execute(stmt, records)
            session.commit()
            inserted = result.rowcount
            if inserted is None or inserted < 0:
                return len(records)
            if inserted < len(records):
                logger.info(f"Skipped {len(records) - inserted} geolocation records already stored")
            return inserted
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to store {len(records)} geolocation records: {e}")
            raise
        finally:
            session.close()

    def get_geolocation_batch(self, ips: Iterable[str]) -> Dict[str, IpGeolocation]:
        """Stored records for the given IPs, keyed by IP"""
        ips = list(ips)
        if not ips:
            return {}
        session = self.session_factory()
        try:
            return {r.ip: r for r in session.query(IpGeolocation).filter(IpGeolocation.ip.in_(ips)).all()}
        finally:
            session.close()
