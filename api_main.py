import logging
import uvicorn
from datetime import datetime, timezone
from typing import Optional, List
from fastapi import FastAPI, Query, Header, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import SNAPSHOT_SECRET, API_HOST, API_PORT
from data_sources.prpc import UpstreamUnavailableError
from services.pod_snapshot import run_pod_snapshot
from services.system_metrics_import import import_system_metrics_to_db, get_system_metrics_history
from services.retention import cleanup_old_metrics
from services.pod_export import get_pods_with_latest_metrics, get_pod_details, get_pod_metrics_history
from services.geolocation_export import get_all_nodes_with_geolocation, get_node_locations_with_history

logger = logging.getLogger(__name__)

app = FastAPI(
    title="pNode Explorer API",
    description="""
    API for collecting and exploring pNode network snapshots.

    SNAPSHOT ENDPOINTS (require Authorization: Bearer <SNAPSHOT_SECRET>):
    - POST /api/pods/snapshot: fetch live pods, reconcile the registry, geolocate new IPs
    - POST /api/system/stats/snapshot: store one network-wide system stats sample
    - POST /api/cleanup: delete time-series rows older than the retention window

    READ ENDPOINTS:
    - GET /api/pods: registered pods with their latest metrics
    - GET /api/pods/history: one pod's metric snapshots, filtered by pubkey/address and time range
    - GET /api/pods/{address}: one pod (by address or pubkey) with metrics history
    - GET /api/system/stats/history: stored system stats samples
    - GET /api/geolocation: pods grouped by geolocated IP for the map
    - GET /api/node/{id}/geolocation: locations a node was seen at
    """,
    version="1.0.0"
)

# --- Pydantic Schemas ---
class GeolocationSummary(BaseModel):
    new_ips_count: int
    stored_count: int
    batches_processed: int

class PodError(BaseModel):
    address: str
    error: str

class PodSnapshotOut(BaseModel):
    started_at: str
    completed_at: str
    total_pods: int
    saved_count: int
    skipped_count: int
    deleted_count: int
    errors: List[PodError]
    geolocation: GeolocationSummary

class CleanupOut(BaseModel):
    success: bool
    deleted: dict
    message: str

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

def require_snapshot_secret(authorization: Optional[str] = Header(None)):
    """Bearer-token guard for the write endpoints"""
    if not SNAPSHOT_SECRET:
        raise HTTPException(status_code=500, detail="SNAPSHOT_SECRET not configured")
    if authorization != f"Bearer {SNAPSHOT_SECRET}":
        raise HTTPException(status_code=401, detail="Unauthorized")

@app.get("/", response_model=dict, tags=["Health"])
def health_check():
    """
    Health check endpoint.

    Response:
      - status (str): "ok" if the API is running.
    """
    return {"status": "ok"}

# --- Snapshot Endpoints ---
@app.post("/api/pods/snapshot", response_model=PodSnapshotOut, tags=["Snapshots"], dependencies=[Depends(require_snapshot_secret)])
def pods_snapshot():
    """
    Run one pod snapshot cycle.

    Fetches the live pod list, deletes pods that are no longer reported,
    saves changed metadata and metrics, then geolocates IPs of saved pods.
    Per-pod failures are listed in `errors`; geolocation failures only zero
    the geolocation counts.

    Returns 503 if no pRPC endpoint answered and 500 if the registry could
    not be loaded or cleaned.
    """
    try:
        return run_pod_snapshot()
    except UpstreamUnavailableError as e:
        logger.error(f"Pod snapshot aborted: {e}")
        return JSONResponse(status_code=503, content={"error": "Failed to fetch pods data", "msg": str(e)})
    except Exception as e:
        logger.error(f"Pod snapshot failed: {e}")
        return JSONResponse(status_code=500, content={"error": "SERVER FAILED", "msg": str(e)})

@app.post("/api/system/stats/snapshot", response_model=dict, tags=["Snapshots"], dependencies=[Depends(require_snapshot_secret)])
def system_stats_snapshot():
    """
    Fetch get-stats from pRPC and store one system_metrics row.
    """
    try:
        return {"saved": import_system_metrics_to_db()}
    except UpstreamUnavailableError as e:
        logger.error(f"System stats snapshot aborted: {e}")
        return JSONResponse(status_code=503, content={"error": "Failed to fetch system stats data", "msg": str(e)})
    except Exception as e:
        logger.error(f"System stats snapshot failed: {e}")
        return JSONResponse(status_code=500, content={"error": "SERVER FAILED", "msg": str(e)})

@app.post("/api/cleanup", response_model=CleanupOut, tags=["Snapshots"], dependencies=[Depends(require_snapshot_secret)])
def cleanup():
    """
    Delete pod and system metrics rows older than the retention window (90 days by default).
    """
    try:
        deleted = cleanup_old_metrics()
    except Exception as e:
        logger.error(f"Cleanup failed: {e}")
        return JSONResponse(status_code=500, content={"error": "Failed to cleanup old data"})
    return {
        "success": True,
        "deleted": deleted,
        "message": "Successfully cleaned up old data",
    }

# --- Read Endpoints ---
@app.get("/api/pods", response_model=dict, tags=["Pods"])
def get_pods():
    """
    Returns all registered pods with their latest metrics snapshot.

    FIELDS: id, pubkey, address, rpc_port, version, is_public, created_at, updated_at, latest_metrics
    """
    pods = get_pods_with_latest_metrics()
    return {"total": len(pods), "items": pods}

def _parse_date_param(value: Optional[str], name: str) -> Optional[datetime]:
    """ISO 8601 query value -> naive UTC datetime, 400 if unparsable"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid '{name}' date format")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed

@app.get("/api/pods/history", response_model=dict, tags=["Pods"])
def pod_metrics_history(
    pubkey: Optional[str] = Query(None, description="Pod public key"),
    address: Optional[str] = Query(None, description="Pod address (host:port)"),
    start: Optional[str] = Query(None, alias="from", description="From reported timestamp (ISO 8601)"),
    end: Optional[str] = Query(None, alias="to", description="To reported timestamp (ISO 8601)"),
    limit: int = Query(1000, ge=1, le=10000)
):
    """
    Returns one pod's metric snapshots, newest first. Either `pubkey` or `address` is required.
    """
    if not pubkey and not address:
        raise HTTPException(status_code=400, detail="Either 'pubkey' or 'address' parameter is required")
    date_from = _parse_date_param(start, "from")
    date_to = _parse_date_param(end, "to")

    try:
        metrics = get_pod_metrics_history(pubkey=pubkey, address=address, start=date_from, end=date_to, limit=limit)
    except Exception as e:
        logger.error(f"Error fetching pod metrics history: {e}")
        return JSONResponse(status_code=500, content={"error": "Failed to fetch pod metrics history"})
    return {"success": True, "count": len(metrics), "data": metrics}

@app.get("/api/pods/{address}", response_model=dict, tags=["Pods"])
def get_pod(address: str, limit: int = Query(100, ge=1, le=1000, description="Number of recent metric snapshots")):
    """
    Returns one pod looked up by address or pubkey, with its most recent metric snapshots.
    """
    details = get_pod_details(address, limit=limit)
    if details is None:
        raise HTTPException(status_code=404, detail="Pod not found in database")
    return details

@app.get("/api/system/stats/history", response_model=dict, tags=["System"])
def system_stats_history(
    start: Optional[datetime] = Query(None, description="From timestamp (ISO 8601)"),
    end: Optional[datetime] = Query(None, description="To timestamp (ISO 8601)"),
    limit: int = Query(1000, ge=1, le=10000)
):
    """
    Returns stored system stats samples, newest first.
    """
    items = get_system_metrics_history(start=start, end=end, limit=limit)
    return {"total": len(items), "items": items}

@app.get("/api/geolocation", response_model=dict, tags=["Geolocation"])
def geolocation():
    """
    Returns registered pods grouped by geolocated IP (only successful lookups with coordinates).

    FIELDS per location: ip, lat, lon, city, region, country, country_code, isp, org,
    node_count, pubkeys, first_seen, last_seen
    """
    try:
        return get_all_nodes_with_geolocation()
    except Exception as e:
        logger.error(f"Failed to get all geolocations: {e}")
        return JSONResponse(status_code=500, content={"error": "Failed to fetch geolocation data", "message": str(e)})

@app.get("/api/node/{node_id}/geolocation", response_model=dict, tags=["Geolocation"])
def node_geolocation(node_id: str):
    """
    Returns the locations a node (pubkey or address) has been seen at, with first/last seen and snapshot counts.
    """
    try:
        locations = get_node_locations_with_history(node_id)
    except Exception as e:
        logger.error(f"Failed to get node geolocation: {e}")
        return JSONResponse(status_code=500, content={"error": "Failed to fetch node geolocation data", "message": str(e)})
    return {"pubkey": node_id, "locations": locations, "total": len(locations)}


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    uvicorn.run(app, host=API_HOST, port=API_PORT)
