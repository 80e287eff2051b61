"""
Metrics Collection Module
Tracks delivery and mailbox read counters for the email service
"""

from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Deque


@dataclass
class ServiceMetrics:
    """
    Operational counters for one EmailService instance.

    Operation timings are kept in a bounded window of the last 1000 calls.
    """

    # Messages accepted by the SMTP server
    emails_sent: int = 0

    # Per-message delivery failures (single sends and bulk items)
    send_failures: int = 0

    # Messages decoded from the mailbox
    emails_fetched: int = 0

    # Error code -> number of failed operations
    errors_count: Counter = field(default_factory=Counter)

    # Wall time of each facade operation in milliseconds
    operation_time_ms: Deque[float] = field(default_factory=lambda: deque(maxlen=1000))

    start_time: datetime = field(default_factory=datetime.now)

    def record_sent(self, count: int = 1):
        """Record messages accepted for delivery"""
        self.emails_sent += count

    def record_send_failure(self, count: int = 1):
        self.send_failures += count

    def record_fetched(self, count: int):
        """Record messages read back from the mailbox"""
        self.emails_fetched += count

    def record_error(self, error_code: str):
        """
        Record that an operation failed.

        Args:
            error_code: Stable error code (e.g. "AUTH_FAILED", "NOT_FOUND")
        """
        self.errors_count[error_code] += 1

    def record_operation_time(self, time_ms: float):
        self.operation_time_ms.append(time_ms)

    def get_summary(self) -> Dict:
        """
        Get a summary of all metrics.

        Returns:
            Dictionary suitable for logging or export
        """
        stats = {}
        if self.operation_time_ms:
            sorted_times = sorted(self.operation_time_ms)
            n = len(sorted_times)
            stats = {
                "avg_ms": sum(sorted_times) / n,
                "min_ms": sorted_times[0],
                "max_ms": sorted_times[-1],
                "p50_ms": sorted_times[n // 2],
                "p95_ms": sorted_times[int(n * 0.95)] if n > 1 else sorted_times[0],
            }

        return {
            "uptime_seconds": (datetime.now() - self.start_time).total_seconds(),
            "emails_sent": self.emails_sent,
            "send_failures": self.send_failures,
            "emails_fetched": self.emails_fetched,
            "operation_time_stats": stats,
            "errors": dict(self.errors_count),
            "sample_count": len(self.operation_time_ms),
        }

    def reset(self):
        """Reset all metrics and start a new collection window"""
        self.emails_sent = 0
        self.send_failures = 0
        self.emails_fetched = 0
        self.errors_count.clear()
        self.operation_time_ms.clear()
        self.start_time = datetime.now()
