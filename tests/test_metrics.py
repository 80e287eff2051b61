"""
Tests for metrics collection functionality
"""

import unittest
from datetime import datetime, timedelta

from email_ops.utils.metrics import ServiceMetrics


class TestServiceMetrics(unittest.TestCase):
    """Test cases for ServiceMetrics"""

    def setUp(self):
        self.metrics = ServiceMetrics()

    def test_initialization(self):
        """Test that metrics are initialized correctly"""
        self.assertEqual(self.metrics.emails_sent, 0)
        self.assertEqual(self.metrics.send_failures, 0)
        self.assertEqual(self.metrics.emails_fetched, 0)
        self.assertEqual(len(self.metrics.errors_count), 0)
        self.assertEqual(len(self.metrics.operation_time_ms), 0)
        self.assertIsInstance(self.metrics.start_time, datetime)

    def test_counters(self):
        self.metrics.record_sent()
        self.metrics.record_sent(3)
        self.metrics.record_send_failure(2)
        self.metrics.record_fetched(10)

        self.assertEqual(self.metrics.emails_sent, 4)
        self.assertEqual(self.metrics.send_failures, 2)
        self.assertEqual(self.metrics.emails_fetched, 10)

    def test_record_error(self):
        """Errors are counted per error code"""
        self.metrics.record_error("AUTH_FAILED")
        self.metrics.record_error("AUTH_FAILED")
        self.metrics.record_error("NOT_FOUND")

        self.assertEqual(self.metrics.errors_count["AUTH_FAILED"], 2)
        self.assertEqual(self.metrics.errors_count["NOT_FOUND"], 1)

    def test_operation_time_window_is_bounded(self):
        for i in range(1500):
            self.metrics.record_operation_time(float(i))

        self.assertEqual(len(self.metrics.operation_time_ms), 1000)
        self.assertEqual(self.metrics.operation_time_ms[0], 500.0)

    def test_summary_statistics(self):
        for value in (10.0, 20.0, 30.0, 40.0):
            self.metrics.record_operation_time(value)

        stats = self.metrics.get_summary()["operation_time_stats"]

        self.assertEqual(stats["avg_ms"], 25.0)
        self.assertEqual(stats["min_ms"], 10.0)
        self.assertEqual(stats["max_ms"], 40.0)
        self.assertEqual(stats["p50_ms"], 30.0)
        self.assertEqual(stats["p95_ms"], 40.0)

    def test_summary_without_samples(self):
        summary = self.metrics.get_summary()
        self.assertEqual(summary["operation_time_stats"], {})
        self.assertEqual(summary["sample_count"], 0)
        self.assertEqual(summary["errors"], {})

    def test_uptime(self):
        self.metrics.start_time = datetime.now() - timedelta(seconds=90)
        self.assertGreaterEqual(self.metrics.get_summary()["uptime_seconds"], 90)

    def test_reset(self):
        self.metrics.record_sent()
        self.metrics.record_error("PROTOCOL_ERROR")
        self.metrics.record_operation_time(5.0)
        old_start = self.metrics.start_time - timedelta(seconds=1)
        self.metrics.start_time = old_start

        self.metrics.reset()

        self.assertEqual(self.metrics.emails_sent, 0)
        self.assertEqual(len(self.metrics.errors_count), 0)
        self.assertEqual(len(self.metrics.operation_time_ms), 0)
        self.assertGreater(self.metrics.start_time, old_start)
