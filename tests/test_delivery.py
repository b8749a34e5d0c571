"""Tests for the delivery pipeline: key rendering, compression, retry, and cleanup."""

import gzip
import os
import re
import threading
from datetime import datetime, timezone

import pytest

from stream_logs.delivery import GZIP_SUFFIX, DeliveryPipeline, compress_file
from stream_logs.errors import (
    DeliveryError,
    PermanentDeliveryError,
    TemplateError,
    TerminalDeliveryError,
)
from stream_logs.metrics import ShipperMetrics
from stream_logs.template import PathTemplate


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _pipeline(sink, template="logs/{year}/{month}/{day}/{hour}{minute}{second}-{unique}.log", **kwargs):
    kwargs.setdefault("sleep", lambda s: None)
    kwargs.setdefault("workers", 2)
    return DeliveryPipeline(sink, PathTemplate.compile(template), **kwargs)


# ---------------------------------------------------------------------------
# Successful delivery
# ---------------------------------------------------------------------------

class TestDeliver:
    def test_uploads_bytes_and_removes_file(self, recording_sink, make_sealed):
        sealed = make_sealed(b"line 1\nline 2\n")
        pipeline = _pipeline(recording_sink)

        result = pipeline.deliver(sealed)

        assert result.attempts == 1
        assert recording_sink.objects[result.key] == b"line 1\nline 2\n"
        assert not os.path.exists(sealed.backing_path)
        pipeline.close()

    def test_key_rendered_from_seal_time(self, recording_sink, make_sealed):
        when = datetime(2021, 12, 31, 23, 59, 58, tzinfo=timezone.utc)
        pipeline = _pipeline(recording_sink)
        result = pipeline.deliver(make_sealed(b"x", sealed_at=when))
        assert re.fullmatch(r"logs/2021/12/31/235958-[A-Z2-7]{24}\.log", result.key)
        pipeline.close()

    def test_same_second_segments_get_distinct_keys(self, recording_sink, make_sealed):
        pipeline = _pipeline(recording_sink)
        keys = {pipeline.deliver(make_sealed(b"x")).key for _ in range(20)}
        assert len(keys) == 20
        pipeline.close()

    def test_no_content_encoding_without_gzip(self, recording_sink, make_sealed):
        pipeline = _pipeline(recording_sink)
        pipeline.deliver(make_sealed(b"plain"))
        assert recording_sink.calls[0][2] is None
        pipeline.close()

    def test_metrics_recorded(self, recording_sink, make_sealed):
        metrics = ShipperMetrics()
        pipeline = _pipeline(recording_sink, metrics=metrics)
        pipeline.deliver(make_sealed(b"12345"))
        snap = metrics.snapshot()
        assert snap["segments_delivered"] == 1
        assert snap["bytes_uploaded"] == 5
        assert snap["upload_attempts"] == 1
        assert snap["retries"] == 0
        pipeline.close()


# ---------------------------------------------------------------------------
# Compression
# ---------------------------------------------------------------------------

class TestCompression:
    def test_compress_file_keeps_original(self, tmp_path):
        src = tmp_path / "batch.log"
        src.write_bytes(b"hello world\n" * 100)
        gz_path = compress_file(str(src))
        assert gz_path == str(src) + GZIP_SUFFIX
        assert src.exists()
        with gzip.open(gz_path, "rb") as f:
            assert f.read() == b"hello world\n" * 100

    def test_gzip_delivery(self, recording_sink, make_sealed):
        payload = b"compress me\n" * 200
        sealed = make_sealed(payload)
        pipeline = _pipeline(recording_sink, compress=True)

        result = pipeline.deliver(sealed)

        key, path, encoding, raw = recording_sink.calls[0]
        assert encoding == "gzip"
        assert path.endswith(GZIP_SUFFIX)
        assert gzip.decompress(raw) == payload
        assert result.bytes_uploaded == len(raw)
        assert not os.path.exists(sealed.backing_path)
        assert not os.path.exists(sealed.backing_path + GZIP_SUFFIX)
        pipeline.close()

    def test_gzip_retries_reuse_compressed_file(self, sink_factory, make_sealed):
        sink = sink_factory(fail_first=2)
        pipeline = _pipeline(sink, compress=True)
        pipeline.deliver(make_sealed(b"abc"))
        paths = {call[1] for call in sink.calls}
        assert len(paths) == 1
        pipeline.close()


# ---------------------------------------------------------------------------
# Retry and terminal failure
# ---------------------------------------------------------------------------

class TestRetry:
    def test_transient_failures_then_success(self, sink_factory, make_sealed):
        sink = sink_factory(fail_first=3)
        sleeps = []
        metrics = ShipperMetrics()
        pipeline = _pipeline(sink, max_attempts=5, sleep=sleeps.append, metrics=metrics)

        result = pipeline.deliver(make_sealed(b"retry me"))

        assert result.attempts == 4
        assert len(sleeps) == 3
        assert len({call[0] for call in sink.calls}) == 1  # same key every attempt
        assert sink.objects[result.key] == b"retry me"
        assert metrics.snapshot()["retries"] == 3
        pipeline.close()

    def test_exhausted_retries_retain_batch(self, sink_factory, make_sealed):
        sink = sink_factory(always_fail=True)
        metrics = ShipperMetrics()
        sealed = make_sealed(b"keep me")
        pipeline = _pipeline(sink, max_attempts=3, metrics=metrics)

        with pytest.raises(TerminalDeliveryError) as exc_info:
            pipeline.deliver(sealed)

        assert exc_info.value.attempts == 3
        assert exc_info.value.path == sealed.backing_path
        assert exc_info.value.key == sink.calls[0][0]
        assert len(sink.calls) == 3
        assert sealed.read_bytes() == b"keep me"
        assert metrics.snapshot()["segments_failed"] == 1
        pipeline.close()

    def test_permanent_error_not_retried(self, sink_factory, make_sealed):
        sink = sink_factory(always_fail=True, error=PermanentDeliveryError)
        sealed = make_sealed(b"denied")
        pipeline = _pipeline(sink, max_attempts=5)

        with pytest.raises(TerminalDeliveryError) as exc_info:
            pipeline.deliver(sealed)

        assert exc_info.value.attempts == 1
        assert isinstance(exc_info.value.cause, PermanentDeliveryError)
        assert os.path.exists(sealed.backing_path)
        pipeline.close()

    def test_failed_gzip_delivery_removes_compressed_copy(self, sink_factory, make_sealed):
        sink = sink_factory(always_fail=True)
        sealed = make_sealed(b"abc")
        pipeline = _pipeline(sink, compress=True, max_attempts=2)
        with pytest.raises(TerminalDeliveryError):
            pipeline.deliver(sealed)
        assert os.path.exists(sealed.backing_path)
        assert not os.path.exists(sealed.backing_path + GZIP_SUFFIX)
        pipeline.close()

    def test_backoff_grows_and_is_capped(self, recording_sink):
        pipeline = _pipeline(recording_sink, base_delay=1.0, max_delay=8.0)
        for attempt, expected in [(0, 1.0), (1, 2.0), (2, 4.0), (3, 8.0), (10, 8.0)]:
            delay = pipeline._backoff_delay(attempt)
            assert expected * 0.8 <= delay <= expected * 1.2
        pipeline.close()


# ---------------------------------------------------------------------------
# Host identity
# ---------------------------------------------------------------------------

class TestHostIdentity:
    def test_host_id_template_requires_resolver(self, recording_sink):
        with pytest.raises(TemplateError):
            _pipeline(recording_sink, template="{host_id}/{unique}")

    def test_resolver_not_called_without_host_id(self, recording_sink, stub_resolver, make_sealed):
        pipeline = _pipeline(recording_sink, resolver=stub_resolver)
        pipeline.deliver(make_sealed())
        assert stub_resolver.calls == 0
        pipeline.close()

    def test_host_id_rendered_into_key(self, recording_sink, stub_resolver, make_sealed):
        pipeline = _pipeline(recording_sink, template="{host_id}/{year}/{unique}", resolver=stub_resolver)
        result = pipeline.deliver(make_sealed())
        assert result.key.startswith("i-0abc123/2024/")
        pipeline.close()

    def test_resolver_failure_retains_batch(self, recording_sink, make_sealed):
        class FailingResolver:
            def resolve(self):
                raise RuntimeError("no identity")

        sealed = make_sealed(b"orphan")
        pipeline = _pipeline(recording_sink, template="{host_id}/{unique}", resolver=FailingResolver())
        with pytest.raises(TerminalDeliveryError):
            pipeline.deliver(sealed)
        assert recording_sink.calls == []
        assert os.path.exists(sealed.backing_path)
        pipeline.close()


# ---------------------------------------------------------------------------
# Asynchronous submission
# ---------------------------------------------------------------------------

class TestSubmit:
    def test_submit_and_close_waits(self, recording_sink, make_sealed):
        pipeline = _pipeline(recording_sink, workers=3)
        segments = [make_sealed(f"batch {i}\n".encode()) for i in range(10)]
        futures = [pipeline.submit(s) for s in segments]
        pipeline.close(wait=True)

        assert all(f.done() for f in futures)
        assert pipeline.in_flight == 0
        assert recording_sink.delivered_in_order() == b"".join(f"batch {i}\n".encode() for i in range(10))

    def test_submit_after_close_rejected(self, recording_sink, make_sealed):
        pipeline = _pipeline(recording_sink)
        pipeline.close()
        with pytest.raises(DeliveryError):
            pipeline.submit(make_sealed())

    def test_in_flight_counts_pending(self, make_sealed):
        release = threading.Event()

        class BlockingSink:
            def put(self, key, path, content_encoding=None):
                release.wait(5)

        pipeline = _pipeline(BlockingSink(), workers=1)
        pipeline.submit(make_sealed())
        pipeline.submit(make_sealed())
        assert pipeline.in_flight == 2
        release.set()
        pipeline.close(wait=True)
        assert pipeline.in_flight == 0

    def test_terminal_failure_does_not_break_pool(self, sink_factory, make_sealed):
        sink = sink_factory(fail_first=1)
        pipeline = _pipeline(sink, max_attempts=1)
        first = pipeline.submit(make_sealed(b"a"))
        second = pipeline.submit(make_sealed(b"b"))
        pipeline.close(wait=True)
        assert isinstance(first.exception(), TerminalDeliveryError) or isinstance(
            second.exception(), TerminalDeliveryError
        )
        assert len(sink.objects) == 1
