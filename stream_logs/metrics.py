"""Thread-safe shipping metrics and a periodic reporter."""

import collections
import logging
import threading
import time

logger = logging.getLogger(__name__)

TRIGGERS = ("size", "timer", "shutdown")

# Number of most recent delivery latencies behind the avg/p95 figures.
LATENCY_WINDOW = 1000


class ShipperMetrics:
    """Counters for ingestion, sealing, and delivery. Safe to share between threads."""

    def __init__(self, latency_window: int = LATENCY_WINDOW) -> None:
        self._lock = threading.Lock()
        self._bytes_ingested: int = 0
        self._sealed: dict = {trigger: 0 for trigger in TRIGGERS}
        self._discarded_empty: int = 0
        self._upload_attempts: int = 0
        self._retries: int = 0
        self._delivered: int = 0
        self._failed: int = 0
        self._bytes_uploaded: int = 0
        self._latencies: collections.deque = collections.deque(maxlen=latency_window)
        self._start_time = time.monotonic()

    def record_ingested(self, nbytes: int) -> None:
        with self._lock:
            self._bytes_ingested += nbytes

    def record_sealed(self, trigger: str) -> None:
        """Record a seal caused by *trigger* ("size", "timer" or "shutdown")."""
        with self._lock:
            self._sealed[trigger] = self._sealed.get(trigger, 0) + 1

    def record_discarded(self) -> None:
        with self._lock:
            self._discarded_empty += 1

    def record_attempt(self, retry: bool = False) -> None:
        with self._lock:
            self._upload_attempts += 1
            if retry:
                self._retries += 1

    def record_delivered(self, bytes_uploaded: int, latency_ms: float) -> None:
        """Record a segment that reached the object store.

        Args:
            bytes_uploaded: Size of the uploaded object (compressed if gzip is on).
            latency_ms: Time from the start of delivery to success, retries included.
        """
        with self._lock:
            self._delivered += 1
            self._bytes_uploaded += bytes_uploaded
            self._latencies.append(latency_ms)

    def record_failed(self) -> None:
        with self._lock:
            self._failed += 1

    @property
    def bytes_ingested(self) -> int:
        with self._lock:
            return self._bytes_ingested

    def snapshot(self) -> dict:
        """Return a point-in-time copy of all counters."""
        with self._lock:
            latencies = list(self._latencies)
            return {
                "bytes_ingested": self._bytes_ingested,
                "segments_sealed": sum(self._sealed.values()),
                "seal_triggers": dict(self._sealed),
                "empty_segments_discarded": self._discarded_empty,
                "upload_attempts": self._upload_attempts,
                "retries": self._retries,
                "segments_delivered": self._delivered,
                "segments_failed": self._failed,
                "bytes_uploaded": self._bytes_uploaded,
                "avg_delivery_ms": sum(latencies) / len(latencies) if latencies else 0.0,
                "p95_delivery_ms": self._percentile(latencies, 95),
                "uptime_seconds": time.monotonic() - self._start_time,
            }

    @staticmethod
    def _percentile(data: list, pct: float) -> float:
        """Interpolated percentile of *data*, or 0.0 when empty."""
        if not data:
            return 0.0

        sorted_data = sorted(data)
        n = len(sorted_data)
        if n == 1:
            return float(sorted_data[0])

        idx = (pct / 100) * (n - 1)
        lower = int(idx)
        upper = lower + 1
        if upper >= n:
            return float(sorted_data[-1])
        fraction = idx - lower
        return float(sorted_data[lower] + fraction * (sorted_data[upper] - sorted_data[lower]))


class MetricsReporter:
    """Background thread that periodically logs a metrics summary."""

    def __init__(self, metrics: ShipperMetrics, interval: float, shutdown_event: threading.Event):
        self._metrics = metrics
        self._interval = interval
        self._shutdown = shutdown_event
        self._thread: threading.Thread | None = None

    def start(self):
        self._thread = threading.Thread(target=self._report_loop, name="metrics-reporter", daemon=True)
        self._thread.start()

    def stop(self):
        if self._thread:
            self._thread.join(timeout=5)

    def report(self):
        snap = self._metrics.snapshot()
        logger.info(
            "[metrics] ingested=%dB sealed=%d delivered=%d failed=%d retries=%d "
            "uploaded=%dB avg_delivery=%.1fms p95_delivery=%.1fms",
            snap["bytes_ingested"],
            snap["segments_sealed"],
            snap["segments_delivered"],
            snap["segments_failed"],
            snap["retries"],
            snap["bytes_uploaded"],
            snap["avg_delivery_ms"],
            snap["p95_delivery_ms"],
        )

    def _report_loop(self):
        while not self._shutdown.is_set():
            self._shutdown.wait(self._interval)
            if self._shutdown.is_set():
                break
            self.report()
