# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Optional metrics collection for observability.

This module provides simple in-memory metrics collection:
- Request counters (total, success, error by status code)
- Latency tracking (min, max, avg, count by operation)
- Response parse outcomes by failure phase
- Provider error counts by unified error code
- Thread-safe atomic operations using locks
"""

import time
from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Optional


@dataclass
class LatencyStats:
    """Statistics for a latency series in milliseconds."""
    count: int = 0
    total: float = 0.0
    min: float = float('inf')
    max: float = 0.0

    @property
    def avg(self) -> float:
        """Calculate average value."""
        return self.total / self.count if self.count > 0 else 0.0

    def record(self, value: float) -> None:
        """Record a new sample.

        Args:
            value: Duration in milliseconds
        """
        self.count += 1
        self.total += value
        self.min = min(self.min, value)
        self.max = max(self.max, value)

    def to_dict(self) -> Dict[str, float]:
        """Convert to dictionary for serialization."""
        return {
            "count": self.count,
            "avg_ms": round(self.avg, 2),
            "min_ms": round(self.min, 2) if self.min != float('inf') else 0.0,
            "max_ms": round(self.max, 2)
        }


class MetricsCollector:
    """In-memory metrics collector with thread-safe operations.

    Collects:
    - HTTP request counts by status code
    - Operation latencies (prompt build, provider call, parse)
    - Error counts by type
    - Parse outcomes (success, or failure phase)
    - Provider errors by provider and unified error code
    """

    def __init__(self):
        """Initialize metrics collector."""
        self._lock = Lock()
        self._request_counts: Dict[int, int] = defaultdict(int)
        self._error_counts: Dict[str, int] = defaultdict(int)
        self._latencies: Dict[str, LatencyStats] = defaultdict(LatencyStats)
        self._parse_success = 0
        self._parse_failures: Dict[str, int] = defaultdict(int)
        self._auto_fixed = 0
        self._provider_errors: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._start_time = time.time()

    def record_request(self, status_code: int) -> None:
        """Record an HTTP request.

        Args:
            status_code: HTTP status code
        """
        with self._lock:
            self._request_counts[status_code] += 1

    def record_error(self, error_type: str) -> None:
        """Record an error by type.

        Args:
            error_type: Error type/category
        """
        with self._lock:
            self._error_counts[error_type] += 1

    def record_latency(self, operation: str, duration_ms: float) -> None:
        """Record operation latency.

        Args:
            operation: Operation name (e.g., "request", "provider_call", "parse")
            duration_ms: Duration in milliseconds
        """
        with self._lock:
            self._latencies[operation].record(duration_ms)

    def record_parse(self, success: bool, phase: Optional[str] = None, auto_fixed: bool = False) -> None:
        """Record the outcome of a response parse.

        Args:
            success: Whether the parse produced valid game data
            phase: Failure phase (extraction, parsing, validation) when unsuccessful
            auto_fixed: Whether JSON repair was needed for a successful parse
        """
        with self._lock:
            if success:
                self._parse_success += 1
                if auto_fixed:
                    self._auto_fixed += 1
            else:
                self._parse_failures[phase or "unknown"] += 1

    def record_provider_error(self, provider: str, error_code: str) -> None:
        """Record a classified provider error.

        Args:
            provider: Provider name
            error_code: Unified error code name
        """
        with self._lock:
            self._provider_errors[provider][error_code] += 1

    def get_metrics(self) -> Dict:
        """Get all collected metrics.

        Returns:
            Dictionary with all metrics
        """
        with self._lock:
            total_requests = sum(self._request_counts.values())
            success_requests = sum(
                count for status, count in self._request_counts.items()
                if 200 <= status < 400
            )
            error_requests = total_requests - success_requests

            uptime_seconds = time.time() - self._start_time

            failed_parses = sum(self._parse_failures.values())
            total_parses = self._parse_success + failed_parses
            conformance_rate = (
                self._parse_success / total_parses if total_parses > 0 else 0.0
            )

            return {
                "uptime_seconds": round(uptime_seconds, 2),
                "requests": {
                    "total": total_requests,
                    "success": success_requests,
                    "errors": error_requests,
                    "by_status_code": dict(self._request_counts)
                },
                "errors": {
                    "by_type": dict(self._error_counts)
                },
                "latencies": {
                    operation: stats.to_dict()
                    for operation, stats in self._latencies.items()
                },
                "schema_conformance": {
                    "total_parses": total_parses,
                    "successful_parses": self._parse_success,
                    "failed_parses": failed_parses,
                    "auto_fixed_parses": self._auto_fixed,
                    "failures_by_phase": dict(self._parse_failures),
                    "conformance_rate": round(conformance_rate, 4)
                },
                "provider_errors": {
                    provider: dict(codes)
                    for provider, codes in self._provider_errors.items()
                }
            }

    def reset(self) -> None:
        """Reset all metrics. Useful for testing."""
        with self._lock:
            self._request_counts.clear()
            self._error_counts.clear()
            self._latencies.clear()
            self._parse_success = 0
            self._parse_failures.clear()
            self._auto_fixed = 0
            self._provider_errors.clear()
            self._start_time = time.time()


# Global metrics collector instance (singleton)
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> Optional[MetricsCollector]:
    """Get the global metrics collector instance.

    Returns:
        MetricsCollector instance if metrics are enabled, None otherwise
    """
    return _metrics_collector


def init_metrics_collector() -> MetricsCollector:
    """Initialize the global metrics collector.

    Returns:
        Initialized MetricsCollector instance
    """
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def disable_metrics_collector() -> None:
    """Disable metrics collection by clearing the global instance."""
    global _metrics_collector
    _metrics_collector = None


class MetricsTimer:
    """Context manager for timing operations and recording metrics.

    Usage:
        with MetricsTimer("provider_call"):
            # do work
            pass
    """

    def __init__(self, operation: str):
        """Initialize metrics timer.

        Args:
            operation: Operation name for metrics
        """
        self.operation = operation
        self.start_time = 0.0
        self.collector = get_metrics_collector()

    def __enter__(self):
        """Start the timer."""
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """End the timer and record metrics."""
        if self.collector:
            duration_ms = (time.perf_counter() - self.start_time) * 1000
            self.collector.record_latency(self.operation, duration_ms)
