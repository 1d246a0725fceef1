import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

DB_URL = os.getenv("DB_URL", "sqlite:///pnode_explorer.db")

# pRPC endpoints (prioritized based on testing)
DEFAULT_PRPC_ENDPOINTS = [
    "http://173.212.207.32:6000",
    "http://45.84.138.15:6000",
    "http://173.249.54.191:6000",
    "http://173.249.59.66:6000",
    "http://173.249.3.118:6000",
    "http://161.97.185.116:6000",
    "http://152.53.236.91:6000",
    "http://192.190.136.37:6000",
    "http://45.151.122.71:6000",
    "http://45.151.122.60:6000",
    "http://152.53.155.15:6000",
    "http://84.21.171.129:6000",
    "http://216.234.134.5:6000",
    "http://173.212.203.145:6000",
    "http://152.53.142.52:6000",
]
PRPC_ENDPOINTS = [e.strip() for e in os.getenv("PRPC_ENDPOINTS", "").split(",") if e.strip()] or DEFAULT_PRPC_ENDPOINTS
RPC_TIMEOUT = float(os.getenv("RPC_TIMEOUT", "10"))  # seconds

# Shared secret for the snapshot trigger endpoints (Authorization: Bearer <secret>)
SNAPSHOT_SECRET = os.getenv("SNAPSHOT_SECRET", "")

# ip-api.com batch endpoint (free tier: 100 IPs per request, ~45 requests/min)
IP_API_BATCH_URL = os.getenv("IP_API_BATCH_URL", "http://ip-api.com/batch")
IP_API_TIMEOUT = float(os.getenv("IP_API_TIMEOUT", "10"))  # seconds
GEO_MAX_IPS_PER_BATCH = int(os.getenv("GEO_MAX_IPS_PER_BATCH", "100"))
GEO_MAX_REQUESTS_PER_MINUTE = int(os.getenv("GEO_MAX_REQUESTS_PER_MINUTE", "45"))

# Time-series retention
RETENTION_DAYS = int(os.getenv("RETENTION_DAYS", "90"))

# API server
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))
