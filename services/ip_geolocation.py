"""
IP geolocation enrichment.

Resolves the IPs behind pod addresses through the ip-api.com batch endpoint
and stores one record per IP. The free tier accepts 100 IPs per request and
roughly 45 requests per minute, so batches are sent one at a time behind a
sliding-window rate limiter plus a fixed pause between batches.

Geolocation is a side channel of the snapshot cycle: process_new_ips() never
raises, it logs and reports zero counts instead.
"""
import asyncio
import logging
import math
import re
import time
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from config import IP_API_BATCH_URL, IP_API_TIMEOUT, GEO_MAX_IPS_PER_BATCH, GEO_MAX_REQUESTS_PER_MINUTE
from services.geolocation_store import GeolocationStore

logger = logging.getLogger(__name__)

IPV4_PATTERN = re.compile(r'^(\d{1,3}\.){3}\d{1,3}$')
IPV6_PATTERN = re.compile(r'^([0-9a-fA-F]{0,4}:){2,7}[0-9a-fA-F]{0,4}$')

RATE_LIMIT_WINDOW_SECONDS = 60.0
RATE_LIMIT_BUFFER_SECONDS = 0.1

# Location fields copied from a successful ip-api answer: (response key, column)
LOCATION_FIELDS = [
    ('country', 'country'),
    ('countryCode', 'country_code'),
    ('region', 'region'),
    ('regionName', 'region_name'),
    ('city', 'city'),
    ('zip', 'zip'),
    ('lat', 'lat'),
    ('lon', 'lon'),
    ('timezone', 'timezone'),
    ('isp', 'isp'),
    ('org', 'org'),
    ('as', 'as_info'),
]


class SlidingWindowRateLimiter:
    """
    Allows at most `max_requests` sends within any trailing `window_seconds`.

    Not safe for concurrent callers: acquire() and record() must be called by
    one sequential loop.
    """

    def __init__(
        self,
        max_requests: int = GEO_MAX_REQUESTS_PER_MINUTE,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        buffer_seconds: float = RATE_LIMIT_BUFFER_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.buffer_seconds = buffer_seconds
        self.clock = clock
        self.sleep = sleep
        self.request_timestamps: List[float] = []

    def _prune(self) -> None:
        window_start = self.clock() - self.window_seconds
        self.request_timestamps = [ts for ts in self.request_timestamps if ts > window_start]

    async def acquire(self) -> float:
        """Wait until one more request fits into the window. Returns the seconds waited."""
        self._prune()
        if len(self.request_timestamps) < self.max_requests:
            return 0.0

        oldest = min(self.request_timestamps)
        wait_time = oldest + self.window_seconds - self.clock() + self.buffer_seconds
        if wait_time <= 0:
            self._prune()
            return 0.0

        logger.info(f"Rate limit reached ({len(self.request_timestamps)} requests in window), waiting {wait_time:.2f}s")
        await self.sleep(wait_time)
        self._prune()
        return wait_time

    def record(self) -> None:
        self.request_timestamps.append(self.clock())


class IpGeolocationService:
    """Extracts, deduplicates, fetches and stores geolocation for pod IPs"""

    def __init__(
        self,
        store: Optional[GeolocationStore] = None,
        batch_url: str = IP_API_BATCH_URL,
        max_ips_per_batch: int = GEO_MAX_IPS_PER_BATCH,
        max_requests_per_minute: int = GEO_MAX_REQUESTS_PER_MINUTE,
        timeout: float = IP_API_TIMEOUT,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.store = store or GeolocationStore()
        self.batch_url = batch_url
        self.max_ips_per_batch = max_ips_per_batch
        self.timeout = timeout
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(max_requests=max_requests_per_minute)
        self.sleep = sleep
        # ~1334ms for 45 requests/minute
        self.min_delay_between_requests = math.ceil(60000 / max_requests_per_minute) / 1000

    # --- Extraction ---

    @staticmethod
    def extract_ip(address: str) -> Optional[str]:
        """
        Host part of a pod address.
        "1.2.3.4:9001" -> "1.2.3.4", "[2001:db8::1]:9001" -> "2001:db8::1", "1.2.3.4" -> None
        """
        if not address or ':' not in address:
            return None
        if address.startswith('['):
            host, sep, _ = address[1:].partition(']')
            return host if sep and host else None
        return address.split(':', 1)[0] or None

    @staticmethod
    def is_valid_ip(ip: str) -> bool:
        """Structural IPv4/IPv6 check, not full RFC validation"""
        return bool(IPV4_PATTERN.match(ip) or IPV6_PATTERN.match(ip))

    def extract_unique_ips(self, addresses: List[str]) -> List[str]:
        """Valid unique IPs in the order they first appear"""
        unique_ips = []
        seen = set()
        for address in addresses:
            ip = self.extract_ip(address)
            if ip is None or ip in seen:
                continue
            seen.add(ip)
            if self.is_valid_ip(ip):
                unique_ips.append(ip)
        return unique_ips

    def get_new_ips(self, ips: List[str]) -> List[str]:
        """IPs that have no stored geolocation record yet"""
        if not ips:
            return []
        existing = self.store.find_existing_ips(ips)
        new_ips = [ip for ip in ips if ip not in existing]
        logger.info(f"Checked for new IPs: total={len(ips)}, existing={len(existing)}, new={len(new_ips)}")
        return new_ips

    @staticmethod
    def chunk(items: List[str], size: int) -> List[List[str]]:
        return [items[i:i + size] for i in range(0, len(items), size)]

    # --- Fetching ---

    def create_http_session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))

    async def fetch_single_batch(self, session: aiohttp.ClientSession, ips: List[str]) -> List[Dict[str, Any]]:
        """
        POST one batch of IPs. Any failure (429, other HTTP errors, transport
        errors, timeouts, unparsable body) yields an empty list.
        """
        await self.rate_limiter.acquire()
        self.rate_limiter.record()

        try:
            async with session.post(self.batch_url, json=ips) as response:
                if response.status == 429:
                    logger.warning(f"ip-api rate limit exceeded, skipping batch of {len(ips)} IPs")
                    return []
                if response.status < 200 or response.status >= 300:
                    logger.error(f"ip-api request failed: status={response.status}, batch of {len(ips)} IPs")
                    return []
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Failed to fetch geolocation batch: {e}")
            return []

        if not isinstance(data, list):
            logger.error(f"Unexpected ip-api response type: {type(data).__name__}")
            return []
        return [item for item in data if isinstance(item, dict) and item.get('query')]

    # --- Persistence ---

    @staticmethod
    def to_record(item: Dict[str, Any]) -> Dict[str, Any]:
        """Map one ip-api result to an ip_geolocation row. Failed lookups keep only ip and status."""
        status = item.get('status') or 'fail'
        record = {'ip': item['query'], 'status': status}
        for api_key, column in LOCATION_FIELDS:
            record[column] = item.get(api_key) if status == 'success' else None
        return record

    def store_geolocation(self, results: List[Dict[str, Any]]) -> int:
        """
        Persist fetched results whose IP is not stored yet. Returns the number
        of records written; database errors propagate.
        """
        if not results:
            return 0

        existing = self.store.find_existing_ips([item['query'] for item in results])
        records = []
        queued = set()
        for item in results:
            ip = item['query']
            if ip in existing or ip in queued:
                continue
            queued.add(ip)
            records.append(self.to_record(item))

        if not records:
            return 0
        return self.store.insert_geolocation_records(records)

    # --- Pipeline ---

    async def process_new_ips(self, addresses: List[str]) -> Dict[str, int]:
        """
        Geolocate every IP behind `addresses` that is not stored yet.

        Returns new_ips_count, stored_count and batches_processed (batches
        that stored at least one record). Never raises.
        """
        empty_result = {"new_ips_count": 0, "stored_count": 0, "batches_processed": 0}
        try:
            unique_ips = self.extract_unique_ips(addresses)
            if not unique_ips:
                logger.info("No valid IPs found in addresses")
                return empty_result

            logger.info(f"Checking for new IPs: addresses={len(addresses)}, unique_ips={len(unique_ips)}")
            new_ips = self.get_new_ips(unique_ips)
            if not new_ips:
                logger.info("No new IPs to process - all IPs already have geolocation data")
                return empty_result

            chunks = self.chunk(new_ips, self.max_ips_per_batch)
            logger.info(f"Processing {len(new_ips)} new IPs in {len(chunks)} batches")

            stored_count = 0
            batches_processed = 0
            async with self.create_http_session() as session:
                for i, chunk in enumerate(chunks):
                    logger.info(f"Processing batch {i + 1}/{len(chunks)} ({len(chunk)} IPs)")
                    results = await self.fetch_single_batch(session, chunk)
                    if results:
                        stored = self.store_geolocation(results)
                        stored_count += stored
                        if stored > 0:
                            batches_processed += 1
                        logger.info(f"Batch {i + 1} completed: fetched={len(results)}, stored={stored}")

                    if i < len(chunks) - 1:
                        await self.sleep(self.min_delay_between_requests)

            logger.info(
                f"Finished processing new IPs: new={len(new_ips)}, stored={stored_count}, batches={batches_processed}"
            )
            return {
                "new_ips_count": len(new_ips),
                "stored_count": stored_count,
                "batches_processed": batches_processed,
            }
        except Exception as e:
            logger.warning(f"Geolocation processing failed, skipping: {e}")
            return empty_result


# Shared instance so consecutive cycles in one process share the rate-limit window
ip_geolocation_service = IpGeolocationService()
