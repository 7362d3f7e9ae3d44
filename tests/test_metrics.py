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
"""Tests for metrics collection."""

import time

from storyforge.metrics import (
    MetricsCollector,
    LatencyStats,
    init_metrics_collector,
    disable_metrics_collector,
    get_metrics_collector,
    MetricsTimer
)


def test_latency_stats():
    """Test LatencyStats calculations."""
    stats = LatencyStats()

    stats.record(100.0)
    stats.record(200.0)
    stats.record(150.0)

    assert stats.count == 3
    assert stats.total == 450.0
    assert stats.min == 100.0
    assert stats.max == 200.0
    assert stats.avg == 150.0

    data = stats.to_dict()
    assert data['count'] == 3
    assert data['avg_ms'] == 150.0
    assert data['min_ms'] == 100.0
    assert data['max_ms'] == 200.0


def test_latency_stats_empty():
    """Test that an empty series serializes to zeros."""
    assert LatencyStats().to_dict() == {'count': 0, 'avg_ms': 0.0, 'min_ms': 0.0, 'max_ms': 0.0}


def test_metrics_collector_requests():
    """Test request metrics recording."""
    collector = MetricsCollector()

    collector.record_request(200)
    collector.record_request(200)
    collector.record_request(404)
    collector.record_request(502)

    requests = collector.get_metrics()['requests']
    assert requests['total'] == 4
    assert requests['success'] == 2
    assert requests['errors'] == 2
    assert requests['by_status_code'] == {200: 2, 404: 1, 502: 1}


def test_metrics_collector_errors():
    """Test error metrics recording."""
    collector = MetricsCollector()

    collector.record_error("provider_network")
    collector.record_error("provider_network")
    collector.record_error("provider_ai_service")

    assert collector.get_metrics()['errors']['by_type'] == {
        "provider_network": 2,
        "provider_ai_service": 1
    }


def test_metrics_collector_schema_conformance():
    """Test parse outcome recording."""
    collector = MetricsCollector()

    collector.record_parse(success=True)
    collector.record_parse(success=True, auto_fixed=True)
    collector.record_parse(success=True, auto_fixed=True)
    collector.record_parse(success=False, phase="validation")
    collector.record_parse(success=False)

    conformance = collector.get_metrics()['schema_conformance']
    assert conformance['total_parses'] == 5
    assert conformance['successful_parses'] == 3
    assert conformance['failed_parses'] == 2
    assert conformance['auto_fixed_parses'] == 2
    assert conformance['failures_by_phase'] == {"validation": 1, "unknown": 1}
    assert conformance['conformance_rate'] == 0.6


def test_metrics_collector_conformance_without_parses():
    """Test that conformance rate is zero before any parse."""
    conformance = MetricsCollector().get_metrics()['schema_conformance']

    assert conformance['total_parses'] == 0
    assert conformance['conformance_rate'] == 0.0


def test_metrics_collector_provider_errors():
    """Test provider error counters grouped by provider."""
    collector = MetricsCollector()

    collector.record_provider_error("deepseek", "DEEPSEEK_CACHE_ERROR")
    collector.record_provider_error("deepseek", "DEEPSEEK_CACHE_ERROR")
    collector.record_provider_error("gemini", "GEMINI_SAFETY_FILTERED")

    assert collector.get_metrics()['provider_errors'] == {
        "deepseek": {"DEEPSEEK_CACHE_ERROR": 2},
        "gemini": {"GEMINI_SAFETY_FILTERED": 1}
    }


def test_metrics_collector_reset():
    """Test metrics reset."""
    collector = MetricsCollector()

    collector.record_request(200)
    collector.record_error("provider_unknown")
    collector.record_latency("provider_call", 12.0)
    collector.record_parse(success=False, phase="parsing")
    collector.record_provider_error("siliconflow", "SILICONFLOW_BATCH_ERROR")

    collector.reset()

    metrics = collector.get_metrics()
    assert metrics['requests']['total'] == 0
    assert metrics['errors']['by_type'] == {}
    assert metrics['latencies'] == {}
    assert metrics['schema_conformance']['total_parses'] == 0
    assert metrics['provider_errors'] == {}


def test_metrics_timer():
    """Test MetricsTimer context manager."""
    collector = init_metrics_collector()
    collector.reset()

    try:
        with MetricsTimer("response_parse"):
            time.sleep(0.01)

        latency = collector.get_metrics()['latencies']['response_parse']
        assert latency['count'] == 1
        assert latency['avg_ms'] >= 10.0
    finally:
        disable_metrics_collector()


def test_metrics_timer_without_collector():
    """Test that MetricsTimer is a no-op when metrics are disabled."""
    disable_metrics_collector()

    with MetricsTimer("response_parse") as timer:
        pass

    assert timer.collector is None


def test_init_and_disable_metrics_collector():
    """Test the global collector lifecycle."""
    disable_metrics_collector()
    assert get_metrics_collector() is None

    collector = init_metrics_collector()
    assert get_metrics_collector() is collector
    assert init_metrics_collector() is collector

    disable_metrics_collector()
    assert get_metrics_collector() is None
