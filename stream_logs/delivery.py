"""Delivery pipeline — compresses sealed segments, renders their keys, and uploads with retry."""

import gzip
import logging
import os
import random
import shutil
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from stream_logs.errors import (
    DeliveryError,
    PermanentDeliveryError,
    TemplateError,
    TerminalDeliveryError,
    TransientDeliveryError,
)
from stream_logs.segment import SealedSegment
from stream_logs.template import PathTemplate, generate_unique_token

logger = logging.getLogger(__name__)

GZIP_SUFFIX = ".gz"


@dataclass
class UploadTask:
    source: SealedSegment
    rendered_key: str
    compressed: bool
    upload_path: str
    upload_size: int
    attempt_count: int = 0


@dataclass(frozen=True)
class DeliveryResult:
    key: str
    sequence_id: int
    attempts: int
    bytes_uploaded: int


def compress_file(path: str) -> str:
    """Gzip *path* into a sibling ``.gz`` file, leaving the original in place. Returns the .gz path."""
    gz_path = path + GZIP_SUFFIX
    with open(path, "rb") as f_in, gzip.open(gz_path, "wb") as f_out:
        shutil.copyfileobj(f_in, f_out)
    return gz_path


def _remove_quietly(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


class DeliveryPipeline:
    """Uploads sealed segments to an object sink.

    Each segment gets its key rendered exactly once; every retry reuses that
    key. Segments are deleted only after a successful upload. When retries are
    exhausted (or the store rejects the upload outright) the raw batch stays
    on disk and a TerminalDeliveryError is reported.

    submit() runs deliveries on a thread pool so ingestion never waits on
    compression or network I/O.
    """

    def __init__(
        self,
        sink,
        template: PathTemplate,
        resolver=None,
        compress: bool = False,
        max_attempts: int = 5,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        workers: int = 4,
        metrics=None,
        sleep=time.sleep,
    ):
        if template.needs_host_id and resolver is None:
            raise TemplateError("Template references {host_id} but no host identity resolver was given")

        self._sink = sink
        self._template = template
        self._resolver = resolver
        self._compress = compress
        self._max_attempts = max(1, max_attempts)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._metrics = metrics
        self._sleep = sleep

        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="delivery")
        self._lock = threading.Lock()
        self._pending = 0
        self._closed = False

    @property
    def in_flight(self) -> int:
        """Number of submitted deliveries that have not finished yet."""
        with self._lock:
            return self._pending

    @property
    def compress(self) -> bool:
        return self._compress

    # ------------------------------------------------------------------
    # Asynchronous API
    # ------------------------------------------------------------------

    def submit(self, sealed: SealedSegment) -> Future:
        """Schedule delivery of *sealed* and return immediately."""
        with self._lock:
            if self._closed:
                raise DeliveryError(
                    f"Delivery pipeline is closed; segment #{sealed.sequence_id} left at {sealed.backing_path}"
                )
            self._pending += 1
            future = self._executor.submit(self.deliver, sealed)
        future.add_done_callback(lambda f: self._on_done(sealed, f))
        return future

    def close(self, wait: bool = True):
        """Stop accepting segments and (by default) wait for all in-flight deliveries."""
        with self._lock:
            self._closed = True
            pending = self._pending
        if pending:
            logger.info("Waiting for %d in-flight deliveries", pending)
        self._executor.shutdown(wait=wait)

    def _on_done(self, sealed: SealedSegment, future: Future):
        with self._lock:
            self._pending -= 1

        exc = future.exception()
        if exc is None or isinstance(exc, TerminalDeliveryError):
            # Terminal failures were already reported by deliver().
            return
        if self._metrics:
            self._metrics.record_failed()
        logger.error(
            "Delivery of segment #%d failed unexpectedly; batch left at %s",
            sealed.sequence_id, sealed.backing_path, exc_info=exc,
        )

    # ------------------------------------------------------------------
    # Synchronous delivery
    # ------------------------------------------------------------------

    def prepare(self, sealed: SealedSegment) -> UploadTask:
        """Render the destination key and, if enabled, compress the segment."""
        identity = self._resolver.resolve() if self._template.needs_host_id else None
        key = self._template.render(sealed.sealed_at, identity, generate_unique_token())

        upload_path = sealed.backing_path
        if self._compress:
            upload_path = compress_file(sealed.backing_path)

        return UploadTask(
            source=sealed,
            rendered_key=key,
            compressed=self._compress,
            upload_path=upload_path,
            upload_size=os.path.getsize(upload_path),
        )

    def deliver(self, sealed: SealedSegment) -> DeliveryResult:
        """Upload one sealed segment, retrying transient failures.

        Raises:
            TerminalDeliveryError: retries exhausted or a permanent rejection;
                the segment's backing file is retained.
        """
        start = time.monotonic()
        try:
            task = self.prepare(sealed)
        except Exception as e:
            if self._compress:
                _remove_quietly(sealed.backing_path + GZIP_SUFFIX)
            self._report_terminal(sealed, key="", attempts=0, cause=e)
            raise TerminalDeliveryError("", 0, sealed.backing_path, e) from e

        content_encoding = "gzip" if task.compressed else None
        last_error: Exception | None = None

        while task.attempt_count < self._max_attempts:
            task.attempt_count += 1
            if self._metrics:
                self._metrics.record_attempt(retry=task.attempt_count > 1)

            try:
                self._sink.put(task.rendered_key, task.upload_path, content_encoding)
            except PermanentDeliveryError as e:
                last_error = e
                break
            except (TransientDeliveryError, OSError) as e:
                last_error = e
                if task.attempt_count >= self._max_attempts:
                    break
                delay = self._backoff_delay(task.attempt_count - 1)
                logger.warning(
                    "Upload of segment #%d to %s failed (attempt %d/%d): %s; retrying in %.2fs",
                    sealed.sequence_id, task.rendered_key, task.attempt_count,
                    self._max_attempts, e, delay,
                )
                self._sleep(delay)
                continue

            elapsed_ms = (time.monotonic() - start) * 1000
            self._cleanup(task)
            if self._metrics:
                self._metrics.record_delivered(task.upload_size, elapsed_ms)
            logger.info(
                "Delivered segment #%d (%d bytes) to %s after %d attempt(s)",
                sealed.sequence_id, task.upload_size, task.rendered_key, task.attempt_count,
            )
            return DeliveryResult(
                key=task.rendered_key,
                sequence_id=sealed.sequence_id,
                attempts=task.attempt_count,
                bytes_uploaded=task.upload_size,
            )

        if task.compressed:
            _remove_quietly(task.upload_path)
        self._report_terminal(sealed, task.rendered_key, task.attempt_count, last_error)
        raise TerminalDeliveryError(task.rendered_key, task.attempt_count, sealed.backing_path, last_error)

    def _cleanup(self, task: UploadTask):
        if task.compressed:
            _remove_quietly(task.upload_path)
        task.source.remove()

    def _report_terminal(self, sealed: SealedSegment, key: str, attempts: int, cause):
        if self._metrics:
            self._metrics.record_failed()
        logger.error(
            "Giving up on segment #%d (key=%s) after %d attempt(s): %s; batch retained at %s",
            sealed.sequence_id, key or "<unrendered>", attempts, cause, sealed.backing_path,
        )

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with jitter.

        The base delay doubles each attempt, is capped at max_delay, then
        multiplied by a random factor between 0.8 and 1.2.
        """
        base = self._base_delay * (2 ** attempt)
        capped = min(base, self._max_delay)
        return capped * random.uniform(0.8, 1.2)
