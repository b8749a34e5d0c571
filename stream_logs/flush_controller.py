"""Flush controller — owns the active segment and seals it on size or age."""

import logging
import threading
import time
from datetime import datetime, timezone

from stream_logs.errors import ControllerClosedError
from stream_logs.segment import SealedSegment, Segment

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FlushController:
    """Accumulates input into on-disk segments and seals them when either the
    size threshold is reached (checked on every append) or the active segment
    has been open for the duration threshold (checked on every tick).

    A single lock guards the active segment, so a size-triggered seal racing a
    timer-triggered seal can never seal the same segment twice. The on_seal
    callback is always invoked OUTSIDE the lock so a slow consumer never
    blocks the producer.

    Empty segments that age out are discarded rather than delivered.
    """

    def __init__(
        self,
        staging_dir: str | None,
        size_threshold: int,
        duration_threshold: float,
        on_seal,
        clock=time.monotonic,
        wall_clock=_utc_now,
        metrics=None,
    ):
        self._staging_dir = staging_dir
        self._size_threshold = size_threshold
        self._duration_threshold = duration_threshold
        self._on_seal = on_seal
        self._clock = clock
        self._wall_clock = wall_clock
        self._metrics = metrics

        self._lock = threading.Lock()
        # Signalled whenever a hand-off to on_seal finishes.
        self._handoff_done = threading.Condition(self._lock)
        self._handoffs_in_progress = 0
        self._active: Segment | None = None
        self._sequence = 0
        self._closed = False

    # Public API

    def append(self, data: bytes):
        """Write *data* to the active segment, sealing it if it reached the size threshold.

        Raises:
            ControllerClosedError: shutdown() has already been called.
        """
        sealed = None
        try:
            with self._lock:
                if self._closed:
                    raise ControllerClosedError("Flush controller is shut down; input rejected")
                if not data:
                    return

                segment = self._active or self._open_locked()
                total = segment.write(data)
                if self._metrics:
                    self._metrics.record_ingested(len(data))

                if total >= self._size_threshold:
                    sealed = self._seal_locked("size")
                    self._handoffs_in_progress += 1
                    # Open the next segment now so the next append never waits on this one.
                    self._open_locked()
        finally:
            if sealed is not None:
                self._hand_off(sealed)

    def tick(self) -> SealedSegment | None:
        """Seal the active segment if it is older than the duration threshold.

        Returns the sealed segment (already handed to on_seal), or None.
        """
        with self._lock:
            segment = self._active
            if segment is None or self._closed:
                return None
            if self._clock() - segment.opened_at < self._duration_threshold:
                return None

            if segment.bytes_written == 0:
                self._discard_locked()
                return None
            sealed = self._seal_locked("timer")
            self._handoffs_in_progress += 1

        self._hand_off(sealed)
        return sealed

    def shutdown(self, timeout: float | None = None) -> SealedSegment | None:
        """Stop accepting input and seal whatever is buffered, regardless of thresholds.

        Blocks until every segment already sealed by append() or tick() has
        been handed to on_seal (at most *timeout* seconds), so a consumer
        closed after this call has seen all of them. Must not be called from
        on_seal.

        The returned segment is NOT passed to on_seal; the caller delivers it.
        Later calls return None.
        """
        with self._lock:
            if self._closed:
                return None
            self._closed = True

            if not self._handoff_done.wait_for(lambda: self._handoffs_in_progress == 0, timeout):
                logger.warning(
                    "Timed out waiting for %d sealed segment(s) to reach the delivery pipeline",
                    self._handoffs_in_progress,
                )

            segment = self._active
            if segment is None:
                return None
            if segment.bytes_written == 0:
                self._discard_locked()
                return None
            return self._seal_locked("shutdown")

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def sequence(self) -> int:
        """Sequence id of the most recently opened segment (0 if none yet)."""
        with self._lock:
            return self._sequence

    @property
    def active_bytes(self) -> int:
        """Bytes buffered in the active segment (0 when there is none)."""
        with self._lock:
            return self._active.bytes_written if self._active else 0

    # Internal helpers: *_locked methods must be called with self._lock held.

    def _open_locked(self) -> Segment:
        self._sequence += 1
        self._active = Segment(
            self._staging_dir,
            self._sequence,
            opened_at=self._clock(),
            opened_wall=self._wall_clock(),
        )
        return self._active

    def _seal_locked(self, trigger: str) -> SealedSegment:
        segment = self._active
        self._active = None
        sealed = segment.seal(self._wall_clock())
        if self._metrics:
            self._metrics.record_sealed(trigger)
        logger.info(
            "Sealed segment #%d (%d bytes, trigger=%s): %s",
            sealed.sequence_id, sealed.bytes_written, trigger, sealed.backing_path,
        )
        return sealed

    def _discard_locked(self):
        segment = self._active
        self._active = None
        segment.discard()
        if self._metrics:
            self._metrics.record_discarded()

    def _hand_off(self, sealed: SealedSegment):
        """Invoke on_seal so that a failing callback never breaks the producer."""
        try:
            self._on_seal(sealed)
        except Exception:
            logger.exception(
                "on_seal callback failed for segment #%d; batch left at %s",
                sealed.sequence_id, sealed.backing_path,
            )
        finally:
            with self._lock:
                self._handoffs_in_progress -= 1
                self._handoff_done.notify_all()
