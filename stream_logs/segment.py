"""On-disk batch segments.

A Segment is one pending batch of raw input bytes backed by a staging file.
Sealing closes the file and yields a SealedSegment, an immutable value that
is handed to the delivery pipeline and owned by it from then on.
"""

import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime

from stream_logs.errors import SegmentSealedError

logger = logging.getLogger(__name__)

STAGING_PREFIX = "stream-logs-"
STAGING_SUFFIX = ".log"


@dataclass(frozen=True)
class SealedSegment:
    backing_path: str
    bytes_written: int
    sequence_id: int
    opened_wall: datetime
    sealed_at: datetime

    def read_bytes(self) -> bytes:
        with open(self.backing_path, "rb") as f:
            return f.read()

    def remove(self):
        """Delete the backing file, ignoring one that is already gone."""
        try:
            os.remove(self.backing_path)
        except FileNotFoundError:
            pass


class Segment:
    """A writable staging file that tracks how many bytes it holds and when it opened."""

    def __init__(self, staging_dir: str | None, sequence_id: int, opened_at: float, opened_wall: datetime):
        fd, path = tempfile.mkstemp(
            prefix=f"{STAGING_PREFIX}{sequence_id:06d}-",
            suffix=STAGING_SUFFIX,
            dir=staging_dir,
        )
        self._file = os.fdopen(fd, "wb")
        self._sealed = False
        self._lock = threading.Lock()
        self.backing_path = path
        self.sequence_id = sequence_id
        self.opened_at = opened_at
        self.opened_wall = opened_wall
        self.bytes_written = 0
        logger.debug("Opened segment #%d at %s", sequence_id, path)

    @property
    def sealed(self) -> bool:
        return self._sealed

    def write(self, data: bytes) -> int:
        """Append *data* to the staging file. Returns the new byte total."""
        with self._lock:
            if self._sealed:
                raise SegmentSealedError(f"Segment #{self.sequence_id} is sealed")
            self._file.write(data)
            self.bytes_written += len(data)
            return self.bytes_written

    def seal(self, sealed_at: datetime) -> SealedSegment:
        """Close the staging file and return the immutable sealed form."""
        with self._lock:
            if self._sealed:
                raise SegmentSealedError(f"Segment #{self.sequence_id} is already sealed")
            self._sealed = True
            self._file.flush()
            os.fsync(self._file.fileno())
            self._file.close()

        logger.debug("Sealed segment #%d (%d bytes)", self.sequence_id, self.bytes_written)
        return SealedSegment(
            backing_path=self.backing_path,
            bytes_written=self.bytes_written,
            sequence_id=self.sequence_id,
            opened_wall=self.opened_wall,
            sealed_at=sealed_at,
        )

    def discard(self):
        """Close and delete an unsealed segment (used for empty segments)."""
        with self._lock:
            if self._sealed:
                raise SegmentSealedError(f"Segment #{self.sequence_id} is already sealed")
            self._sealed = True
            self._file.close()
        os.remove(self.backing_path)
        logger.debug("Discarded empty segment #%d", self.sequence_id)
