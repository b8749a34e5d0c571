import gzip
import os
import threading
from datetime import datetime, timezone

import pytest

from stream_logs.errors import TransientDeliveryError
from stream_logs.host_identity import HostIdentity, IdentityOrigin
from stream_logs.segment import SealedSegment


class RecordingSink:
    """In-memory object sink that can be told to fail.

    fail_first: number of leading put() calls that raise *error*.
    always_fail: every call raises *error*.
    """

    def __init__(self, fail_first: int = 0, always_fail: bool = False, error=TransientDeliveryError):
        self.fail_first = fail_first
        self.always_fail = always_fail
        self.error = error
        self.calls: list[tuple[str, str, str | None, bytes]] = []
        self.objects: dict[str, bytes] = {}
        self.delivered: list[tuple[str, str, bytes]] = []
        self._lock = threading.Lock()

    def put(self, key, path, content_encoding=None):
        with open(path, "rb") as f:
            data = f.read()
        with self._lock:
            self.calls.append((key, path, content_encoding, data))
            attempt = len(self.calls)
        if self.always_fail or attempt <= self.fail_first:
            raise self.error(f"simulated failure #{attempt}")

        if content_encoding == "gzip":
            data = gzip.decompress(data)
        with self._lock:
            self.objects[key] = data
            self.delivered.append((os.path.basename(path), key, data))

    def delivered_in_order(self) -> bytes:
        """Concatenate delivered objects ordered by staging file (i.e. segment sequence)."""
        with self._lock:
            ordered = sorted(self.delivered)
        return b"".join(data for _, _, data in ordered)


class StubResolver:
    def __init__(self, value="i-0abc123"):
        self.calls = 0
        self._identity = HostIdentity(IdentityOrigin.EC2_INSTANCE_ID, value)

    def resolve(self):
        self.calls += 1
        return self._identity


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def sink_factory():
    return RecordingSink


@pytest.fixture
def stub_resolver():
    return StubResolver()


@pytest.fixture
def make_sealed(tmp_path):
    """Factory writing *data* to a staging file and returning the sealed segment."""
    counter = {"seq": 0}

    def _make(data: bytes = b"hello\n", sealed_at=None) -> SealedSegment:
        counter["seq"] += 1
        path = tmp_path / f"stream-logs-{counter['seq']:06d}-test.log"
        path.write_bytes(data)
        when = sealed_at or datetime(2024, 3, 5, 12, 30, 45, tzinfo=timezone.utc)
        return SealedSegment(
            backing_path=str(path),
            bytes_written=len(data),
            sequence_id=counter["seq"],
            opened_wall=when,
            sealed_at=when,
        )

    return _make
