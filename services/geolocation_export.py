"""
Read side of the geolocation data: map locations for the whole registry and
per-node location history.
"""
import logging
from typing import Any, Dict, List, Optional

from models.pod import Pod, PodMetricsHistory
from services.db import SessionLocal
from services.geolocation_store import GeolocationStore
from services.ip_geolocation import IpGeolocationService

logger = logging.getLogger(__name__)

_extract_ip = IpGeolocationService.extract_ip
_is_valid_ip = IpGeolocationService.is_valid_ip


def _location_fields(geo) -> Dict[str, Any]:
    return {
        "lat": geo.lat,
        "lon": geo.lon,
        "city": geo.city,
        "region": geo.region_name,
        "country": geo.country,
        "country_code": geo.country_code,
        "isp": geo.isp,
        "org": geo.org,
    }


def _is_mappable(geo) -> bool:
    return geo is not None and geo.status == "success" and geo.lat is not None and geo.lon is not None


def get_node_locations_with_history(identifier: str, session_factory=SessionLocal) -> List[Dict[str, Any]]:
    """
    Locations a node has been seen at, from its snapshot history.

    `identifier` is a pubkey (all pods sharing it) or, if no pod has that
    pubkey, an address. Addresses on the same IP are merged: earliest
    first_seen, latest last_seen, summed snapshot_count.
    """
    session = session_factory()
    try:
        pods = session.query(Pod.id, Pod.address).filter(Pod.pubkey == identifier).all()
        if not pods:
            pods = session.query(Pod.id, Pod.address).filter(Pod.address == identifier).all()
        if not pods:
            return []

        rows = (
            session.query(PodMetricsHistory.pod_id, PodMetricsHistory.timestamp)
            .filter(PodMetricsHistory.pod_id.in_([p.id for p in pods]))
            .order_by(PodMetricsHistory.timestamp.asc())
            .all()
        )
    finally:
        session.close()

    address_by_pod = {p.id: p.address for p in pods}
    address_data: Dict[str, Dict[str, Any]] = {}
    for pod_id, timestamp in rows:
        address = address_by_pod[pod_id]
        entry = address_data.get(address)
        if entry is None:
            address_data[address] = {"first_seen": timestamp, "last_seen": timestamp, "snapshot_count": 1}
            continue
        entry["first_seen"] = min(entry["first_seen"], timestamp)
        entry["last_seen"] = max(entry["last_seen"], timestamp)
        entry["snapshot_count"] += 1

    ips = {}
    for address in address_data:
        ip = _extract_ip(address)
        if ip and _is_valid_ip(ip):
            ips[address] = ip
    geo_map = GeolocationStore(session_factory).get_geolocation_batch(set(ips.values()))

    locations: Dict[str, Dict[str, Any]] = {}
    for address, entry in address_data.items():
        ip = ips.get(address)
        geo = geo_map.get(ip) if ip else None
        if not _is_mappable(geo):
            continue
        location = locations.get(ip)
        if location is None:
            locations[ip] = {"ip": ip, **_location_fields(geo), **entry}
            continue
        location["first_seen"] = min(location["first_seen"], entry["first_seen"])
        location["last_seen"] = max(location["last_seen"], entry["last_seen"])
        location["snapshot_count"] += entry["snapshot_count"]

    return [
        {**loc, "first_seen": loc["first_seen"].isoformat(), "last_seen": loc["last_seen"].isoformat()}
        for loc in locations.values()
    ]


def get_all_nodes_with_geolocation(session_factory=SessionLocal) -> Dict[str, Any]:
    """Registered pods grouped by geolocated IP, for the global map"""
    session = session_factory()
    try:
        pods = session.query(Pod.address, Pod.pubkey, Pod.created_at, Pod.updated_at).all()
    finally:
        session.close()

    ip_by_address = {}
    for pod in pods:
        ip = _extract_ip(pod.address)
        if ip and _is_valid_ip(ip):
            ip_by_address[pod.address] = ip
    geo_map = GeolocationStore(session_factory).get_geolocation_batch(set(ip_by_address.values()))

    locations: Dict[str, Dict[str, Any]] = {}
    located_nodes = 0
    for pod in pods:
        ip = ip_by_address.get(pod.address)
        geo: Optional[Any] = geo_map.get(ip) if ip else None
        if not _is_mappable(geo):
            continue
        located_nodes += 1
        location = locations.setdefault(ip, {
            "ip": ip,
            **_location_fields(geo),
            "node_count": 0,
            "pubkeys": [],
            "first_seen": pod.created_at,
            "last_seen": pod.updated_at,
        })
        location["node_count"] += 1
        if pod.pubkey and pod.pubkey not in location["pubkeys"]:
            location["pubkeys"].append(pod.pubkey)
        location["first_seen"] = min(location["first_seen"], pod.created_at)
        location["last_seen"] = max(location["last_seen"], pod.updated_at)

    logger.info(f"Geolocated {located_nodes}/{len(pods)} pods at {len(locations)} locations")
    return {
        "locations": [
            {**loc, "first_seen": loc["first_seen"].isoformat(), "last_seen": loc["last_seen"].isoformat()}
            for loc in locations.values()
        ],
        "total_nodes": located_nodes,
        "total_locations": len(locations),
    }
