"""
Buffered log of outbound carrier API calls, flushed to the "apiusage"
collection in batches.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, TypeVar

import database
from database import utcnow
from schemas import ApiUsage

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_QUOTE = "RATE_QUOTE"
CREATE_LABEL = "CREATE_LABEL"
TRACK_SHIPMENT = "TRACK_SHIPMENT"
VALIDATE_ADDRESS = "VALIDATE_ADDRESS"
AUTH = "AUTH"
OTHER = "OTHER"


class ApiUsageTracker:
    _instance: Optional["ApiUsageTracker"] = None

    def __init__(self, buffer_limit: int = 100):
        self.buffer_limit = buffer_limit
        self.buffer: List[Dict[str, Any]] = []

    @classmethod
    def get_instance(cls) -> "ApiUsageTracker":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def track_usage(
        self,
        provider: str,
        endpoint: str,
        event_type: str,
        success: bool,
        latency_ms: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.buffer.append(ApiUsage(
            provider=provider,
            endpoint=endpoint,
            event_type=event_type,
            success=success,
            latency_ms=latency_ms,
            timestamp=utcnow(),
            metadata=metadata,
        ).model_dump())
        if len(self.buffer) >= self.buffer_limit:
            self.flush()

    def track_timing(
        self,
        provider: str,
        endpoint: str,
        event_type: str,
        fn: Callable[[], T],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> T:
        """Run `fn` and record how long it took and whether it raised."""
        started = time.monotonic()
        success = False
        try:
            result = fn()
            success = True
            return result
        finally:
            latency_ms = int((time.monotonic() - started) * 1000)
            self.track_usage(provider, endpoint, event_type, success, latency_ms, metadata)

    def flush(self) -> int:
        if not self.buffer:
            return 0
        records, self.buffer = self.buffer, []
        try:
            if database.db is None:
                raise RuntimeError("Database not available")
            database.db["apiusage"].insert_many(records)
        except Exception as e:
            logger.error("Failed to flush API usage records: %s", e)
            # keep the newest records for the next attempt
            self.buffer = (records + self.buffer)[-self.buffer_limit:]
            return 0
        return len(records)


def get_tracker() -> ApiUsageTracker:
    return ApiUsageTracker.get_instance()
