"""In-process service metrics: request latency and errors, oracle outcomes, committed turns.

Counters live for the life of the process; `/metrics/app` reports them together
with the alert names whose thresholds are currently crossed.
"""
from __future__ import annotations

import time
from collections import Counter, deque
from threading import Lock

from starlette.requests import Request
from starlette.responses import Response

LATENCY_WINDOW = 500
ALERT_ERROR_RATE = 0.10
ALERT_LATENCY_P95_MS = 2000
ALERT_ORACLE_FAILURE_RATE = 0.25

_UNMETERED_PATHS = ("/health", "/metrics")


def _percentile(sorted_values: list[float], fraction: float) -> float:
    return sorted_values[int((len(sorted_values) - 1) * fraction)]


class MetricsRegistry:
    def __init__(self):
        self._lock = Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self.requests = 0
            self.request_errors = 0
            self.latencies_ms: deque[float] = deque(maxlen=LATENCY_WINDOW)
            self.oracle_calls = 0
            self.oracle_failures: Counter[str] = Counter()
            self.turns_committed = 0

    def request(self, duration_sec: float, is_error: bool) -> None:
        with self._lock:
            self.requests += 1
            self.request_errors += int(is_error)
            self.latencies_ms.append(duration_sec * 1000)

    def oracle_call(self, error_code: str | None) -> None:
        with self._lock:
            self.oracle_calls += 1
            if error_code:
                self.oracle_failures[error_code] += 1

    def turn_committed(self) -> None:
        with self._lock:
            self.turns_committed += 1

    def snapshot(self) -> dict:
        with self._lock:
            requests, errors = self.requests, self.request_errors
            latencies = sorted(self.latencies_ms)
            calls, failures = self.oracle_calls, dict(self.oracle_failures)
            turns = self.turns_committed

        error_rate = errors / requests if requests else 0.0
        p50 = round(_percentile(latencies, 0.50), 2) if latencies else None
        p95 = round(_percentile(latencies, 0.95), 2) if latencies else None
        oracle_failure_rate = sum(failures.values()) / calls if calls else 0.0

        alerts: list[str] = []
        if requests and error_rate >= ALERT_ERROR_RATE:
            alerts.append("high_error_rate")
        if p95 is not None and p95 >= ALERT_LATENCY_P95_MS:
            alerts.append("high_latency_p95")
        if calls and oracle_failure_rate >= ALERT_ORACLE_FAILURE_RATE:
            alerts.append("high_oracle_failure_rate")

        return {
            "request_count": requests,
            "error_count": errors,
            "error_rate": round(error_rate, 4),
            "latency_ms_p50": p50,
            "latency_ms_p95": p95,
            "oracle_calls": calls,
            "oracle_failures": failures,
            "oracle_failure_rate": round(oracle_failure_rate, 4),
            "turns_committed": turns,
            "alerts": alerts,
        }


registry = MetricsRegistry()


def record_request(duration_sec: float, is_error: bool) -> None:
    registry.request(duration_sec, is_error)


def record_oracle_call(error_code: str | None = None) -> None:
    registry.oracle_call(error_code)


def record_turn_committed() -> None:
    registry.turn_committed()


def get_metrics() -> dict:
    return registry.snapshot()


def reset_metrics() -> None:
    registry.reset()


async def metrics_middleware(request: Request, call_next) -> Response:
    if request.url.path.startswith(_UNMETERED_PATHS):
        return await call_next(request)
    started = time.perf_counter()
    response = await call_next(request)
    record_request(time.perf_counter() - started, response.status_code >= 400)
    return response
