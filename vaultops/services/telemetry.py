from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class JobSample:
    ts: float
    job_type: str
    status: str
    duration_ms: float


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_job_samples: Deque[JobSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_job(*, job_type: str, status: str, duration_ms: float) -> None:
    # Track background job outcomes for ops dashboards.
    _job_samples.append(
        JobSample(ts=time.time(), job_type=job_type, status=status, duration_ms=duration_ms)
    )
    increment_counter(f"jobs_finished_total.{job_type}.{status}")


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def p95_job_duration(window_s: int, *, job_type: str | None = None) -> float | None:
    cutoff = time.time() - window_s
    durations = sorted(
        sample.duration_ms
        for sample in _job_samples
        if sample.ts >= cutoff and (job_type is None or sample.job_type == job_type)
    )
    if not durations:
        return None
    idx = max(0, math.ceil(0.95 * len(durations)) - 1)
    return durations[idx]


def request_error_rate(window_s: int) -> float | None:
    # Share of 5xx responses over the window.
    cutoff = time.time() - window_s
    samples = [sample for sample in _request_samples if sample.ts >= cutoff]
    if not samples:
        return None
    failures = sum(1 for sample in samples if sample.status_code >= 500)
    return failures / len(samples)


def reset_telemetry() -> None:
    # Tests reset in-process state between runs.
    _request_samples.clear()
    _job_samples.clear()
    _counters.clear()
