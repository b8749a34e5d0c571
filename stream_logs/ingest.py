"""Ingest loop — reads the input stream, drives the flush controller, and shuts down cleanly."""

import logging
import threading

from stream_logs.errors import ControllerClosedError, StreamLogsError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536


class IngestLoop:
    """Feeds an input byte stream into a FlushController.

    Three threads cooperate:
    - a reader thread that appends each chunk read from the input
    - a timer thread that calls controller.tick() every tick_interval seconds
    - the caller of run(), which waits for end-of-input or shutdown_event and
      then seals the final segment and waits for every delivery to finish
    """

    def __init__(
        self,
        reader,
        controller,
        pipeline,
        shutdown_event: threading.Event,
        tick_interval: float = 1.0,
        chunk_size: int = READ_CHUNK_SIZE,
        poll_interval: float = 0.1,
    ):
        self._reader = reader
        self._read = getattr(reader, "read1", None) or reader.read
        self._controller = controller
        self._pipeline = pipeline
        self._shutdown = shutdown_event
        self._tick_interval = tick_interval
        self._chunk_size = chunk_size
        self._poll_interval = poll_interval

        self._input_done = threading.Event()
        self._timer_stop = threading.Event()
        self._fatal_error: BaseException | None = None

    @property
    def input_done(self) -> bool:
        return self._input_done.is_set()

    def run(self):
        """Block until the input ends or shutdown is requested, then flush everything.

        Raises the error that stopped ingestion if it was not a plain read
        failure (e.g. the staging disk is full).
        """
        reader_thread = threading.Thread(target=self._read_loop, name="ingest-reader", daemon=True)
        timer_thread = threading.Thread(target=self._tick_loop, name="flush-timer", daemon=True)
        reader_thread.start()
        timer_thread.start()

        while not self._input_done.wait(timeout=self._poll_interval):
            if self._shutdown.is_set():
                logger.info("Termination requested; sealing buffered input")
                break
        else:
            logger.info("Input stream closed; sealing buffered input")

        final = self._controller.shutdown()
        self._timer_stop.set()
        timer_thread.join(timeout=5)

        if final is not None:
            self._pipeline.submit(final)
        self._pipeline.close(wait=True)

        if self._input_done.is_set():
            reader_thread.join(timeout=5)
        # Otherwise the reader may still be blocked in read(); it is a daemon thread.

        if self._fatal_error is not None:
            raise self._fatal_error
        logger.info("Ingest loop finished")

    def _read_loop(self):
        try:
            while True:
                try:
                    chunk = self._read(self._chunk_size)
                except OSError as e:
                    logger.error("Input read failed: %s; flushing what was buffered", e)
                    break
                if not chunk:
                    logger.debug("No data returned; assuming input stream has closed")
                    break

                try:
                    self._controller.append(chunk)
                except ControllerClosedError:
                    logger.warning("Dropping %d bytes read after shutdown began", len(chunk))
                    break
        except Exception as e:
            logger.exception("Ingestion stopped by an unrecoverable error")
            self._fatal_error = e
        finally:
            self._input_done.set()

    def _tick_loop(self):
        while not self._timer_stop.wait(self._tick_interval):
            try:
                self._controller.tick()
            except (OSError, StreamLogsError):
                logger.exception("Duration-triggered seal failed")
