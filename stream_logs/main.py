#!/usr/bin/env python3
"""stream-logs-to-s3 — entry point."""

import logging
import os
import signal
import stat
import sys
import threading

from botocore.exceptions import BotoCoreError, ClientError

from stream_logs.config import build_cli_parser, load_config, parse_log_level
from stream_logs.dashboard import create_dashboard_app, run_dashboard
from stream_logs.delivery import DeliveryPipeline
from stream_logs.errors import ConfigError, HostIdentityError, StreamLogsError
from stream_logs.flush_controller import FlushController
from stream_logs.host_identity import HostIdentityResolver
from stream_logs.ingest import IngestLoop
from stream_logs.metrics import MetricsReporter, ShipperMetrics
from stream_logs.sink import S3Sink, build_s3_client, resolve_bucket_region
from stream_logs.template import PathTemplate

logger = logging.getLogger(__name__)

EXIT_USAGE = 2
EXIT_FAILURE = 1


def check_input_path(path: str):
    """Check that *path* is likely readable without opening it (opening a FIFO blocks).

    Raises:
        OSError: unreadable, a directory, or a socket.
    """
    if not os.access(path, os.R_OK):
        raise PermissionError(f"{path} is not readable")
    mode = os.stat(path).st_mode
    if stat.S_ISDIR(mode):
        raise IsADirectoryError(f"{path} is a directory")
    if stat.S_ISSOCK(mode):
        raise OSError(f"{path} is a socket")


def _usage_error(message: str) -> int:
    print(message, file=sys.stderr)
    print(file=sys.stderr)
    build_cli_parser().print_usage(sys.stderr)
    return EXIT_USAGE


def main(argv: list[str] | None = None) -> int:
    try:
        initial_level = parse_log_level(os.environ.get("LOG_LEVEL", "INFO"))
    except ConfigError:
        # load_config reports the bad value below.
        initial_level = "INFO"
    logging.basicConfig(
        level=initial_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        config = load_config(argv)
        template = PathTemplate.compile(config.template)
    except ConfigError as e:
        return _usage_error(str(e))
    logging.getLogger().setLevel(config.log_level)

    if config.input_path:
        try:
            check_input_path(config.input_path)
        except OSError as e:
            logger.error("Unable to open %s: %s", config.input_path, e)
            return EXIT_FAILURE

    # Every object is tagged with the host id; only a template that needs it
    # makes a missing identity fatal.
    resolver = HostIdentityResolver()
    try:
        host_id = resolver.resolve().value
    except HostIdentityError as e:
        if template.needs_host_id:
            logger.error("%s", e)
            return EXIT_FAILURE
        logger.warning("%s; uploads will not carry a HostId tag", e)
        host_id = None

    try:
        region = resolve_bucket_region(build_s3_client(), config.bucket)
    except (ClientError, BotoCoreError) as e:
        logger.error("Unable to determine the location of S3 bucket %s: %s", config.bucket, e)
        return EXIT_FAILURE
    logger.debug("Bucket %s is in %s", config.bucket, region)

    shutdown_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    metrics = ShipperMetrics()
    sink = S3Sink(build_s3_client(region), config.bucket, host_id=host_id)
    pipeline = DeliveryPipeline(
        sink,
        template,
        resolver=resolver,
        compress=config.compress,
        max_attempts=config.max_attempts,
        workers=config.upload_workers,
        metrics=metrics,
    )
    controller = FlushController(
        config.staging_dir,
        size_threshold=config.max_size,
        duration_threshold=config.max_duration,
        on_seal=pipeline.submit,
        metrics=metrics,
    )

    reporter = None
    if config.metrics_interval > 0:
        reporter = MetricsReporter(metrics, config.metrics_interval, shutdown_event)
        reporter.start()

    if config.dashboard_port:
        app = create_dashboard_app(metrics, pipeline, controller)
        threading.Thread(
            target=run_dashboard, args=(app, config.dashboard_port), name="dashboard", daemon=True,
        ).start()
        logger.info("Status endpoint on port %d", config.dashboard_port)

    logger.info(
        "Streaming %s to %s (max_size=%d bytes, max_duration=%.1fs, gzip=%s)",
        config.input_path or "stdin", config.destination,
        config.max_size, config.max_duration, config.compress,
    )

    try:
        if config.input_path:
            with open(config.input_path, "rb") as reader:
                IngestLoop(reader, controller, pipeline, shutdown_event, config.tick_interval).run()
        else:
            IngestLoop(sys.stdin.buffer, controller, pipeline, shutdown_event, config.tick_interval).run()
    except OSError as e:
        logger.error("Fatal I/O error: %s", e)
        return EXIT_FAILURE
    except StreamLogsError as e:
        logger.error("Ingestion stopped: %s", e)
        return EXIT_FAILURE
    finally:
        shutdown_event.set()
        if reporter:
            reporter.stop()
            reporter.report()

    logger.info("Final stats: %s", metrics.snapshot())
    return 0


if __name__ == "__main__":
    sys.exit(main())
