from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional

from fastapi import FastAPI, Request

logger = logging.getLogger(__name__)


@dataclass
class RequestMetric:
    endpoint: str
    response_time_ms: float
    timestamp: float
    cache_hit: bool = False
    error: bool = False


class PerformanceMonitor:
    """Keeps the last ``max_metrics`` request timings in a ring buffer."""

    def __init__(self, max_metrics: int = 1000, slow_threshold_ms: float = 1000.0, slow_endpoint_ms: float = 500.0):
        self.slow_threshold_ms = slow_threshold_ms
        self.slow_endpoint_ms = slow_endpoint_ms
        self._metrics: deque = deque(maxlen=max_metrics)

    def record_request(
        self,
        endpoint: str,
        response_time_ms: float,
        cache_hit: bool = False,
        error: bool = False,
        timestamp: Optional[float] = None,
    ) -> None:
        self._metrics.append(
            RequestMetric(
                endpoint=endpoint,
                response_time_ms=response_time_ms,
                timestamp=time.time() if timestamp is None else timestamp,
                cache_hit=cache_hit,
                error=error,
            )
        )
        if response_time_ms > self.slow_threshold_ms:
            logger.warning("Slow request: %s took %.0fms", endpoint, response_time_ms)

    def __len__(self) -> int:
        return len(self._metrics)

    def get_stats(self, now: Optional[float] = None) -> Dict:
        now = time.time() if now is None else now
        metrics = list(self._metrics)
        last_5m = [m for m in metrics if now - m.timestamp < 300]
        last_1m = [m for m in metrics if now - m.timestamp < 60]

        if not last_5m:
            return {
                "total_requests": len(metrics),
                "requests_last_5_min": 0,
                "requests_last_1_min": 0,
                "avg_response_time_ms": 0.0,
                "cache_hit_rate": 0.0,
                "error_rate": 0.0,
                "slow_requests": 0,
            }

        count = len(last_5m)
        return {
            "total_requests": len(metrics),
            "requests_last_5_min": count,
            "requests_last_1_min": len(last_1m),
            "avg_response_time_ms": round(sum(m.response_time_ms for m in last_5m) / count, 2),
            "cache_hit_rate": round(sum(1 for m in last_5m if m.cache_hit) / count * 100, 2),
            "error_rate": round(sum(1 for m in last_5m if m.error) / count * 100, 2),
            "slow_requests": sum(1 for m in last_5m if m.response_time_ms > self.slow_threshold_ms),
        }

    def get_slow_endpoints(self, now: Optional[float] = None, limit: int = 10) -> List[Dict]:
        now = time.time() if now is None else now
        grouped: Dict[str, List[float]] = {}
        for m in self._metrics:
            if now - m.timestamp < 300:
                grouped.setdefault(m.endpoint, []).append(m.response_time_ms)

        slow = []
        for endpoint, times in grouped.items():
            avg = sum(times) / len(times)
            if avg > self.slow_endpoint_ms:
                slow.append({"endpoint": endpoint, "avg_response_time_ms": round(avg, 2), "count": len(times)})

        slow.sort(key=lambda e: e["avg_response_time_ms"], reverse=True)
        return slow[:limit]

    def clear(self) -> None:
        self._metrics.clear()


def install_performance_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def _record_timing(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        monitor: Optional[PerformanceMonitor] = getattr(request.app.state, "monitor", None)
        if monitor is not None:
            monitor.record_request(
                f"{request.method} {request.url.path}",
                elapsed_ms,
                cache_hit=response.headers.get("X-Cache-Status") == "HIT",
                error=response.status_code >= 400,
            )
        response.headers["X-Response-Time"] = f"{elapsed_ms:.1f}ms"
        return response
