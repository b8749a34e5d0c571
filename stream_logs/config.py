"""Configuration loading from CLI args, env vars, and an optional YAML file."""

import argparse
import logging
import os
import re
from dataclasses import dataclass

import yaml

from stream_logs.errors import ConfigError, InvalidS3URLError

logger = logging.getLogger(__name__)

S3_PROTO_PREFIX = "s3://"

# 1 hour
DEFAULT_DURATION = 3600.0

# 1 MiB
DEFAULT_SIZE = 1 << 20

# Largest object a single PUT may create (5 GiB).
S3_MAXIMUM_SIZE = 5 << 30

_DURATION_UNITS = {
    "ms": 0.001, "msec": 0.001, "millis": 0.001, "millisecond": 0.001, "milliseconds": 0.001,
    "": 1.0, "s": 1.0, "sec": 1.0, "secs": 1.0, "second": 1.0, "seconds": 1.0,
    "m": 60.0, "min": 60.0, "mins": 60.0, "minute": 60.0, "minutes": 60.0,
    "h": 3600.0, "hr": 3600.0, "hrs": 3600.0, "hour": 3600.0, "hours": 3600.0,
    "d": 86400.0, "day": 86400.0, "days": 86400.0,
    "w": 604800.0, "week": 604800.0, "weeks": 604800.0,
}

_SIZE_UNITS = {
    "": 1, "b": 1,
    "k": 10**3, "kb": 10**3, "ki": 1 << 10, "kib": 1 << 10,
    "m": 10**6, "mb": 10**6, "mi": 1 << 20, "mib": 1 << 20,
    "g": 10**9, "gb": 10**9, "gi": 1 << 30, "gib": 1 << 30,
    "t": 10**12, "tb": 10**12, "ti": 1 << 40, "tib": 1 << 40,
}

_DURATION_TOKEN = re.compile(r"(\d+(?:\.\d+)?)\s*([a-zA-Z]*)")
_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


def parse_duration(value) -> float:
    """Parse a humantime-style duration ("1h", "1hour 12min 5s", "250ms") into seconds.

    Bare numbers are seconds.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
    else:
        text = str(value).strip()
        if not text:
            raise ConfigError("Duration cannot be empty")

        seconds = 0.0
        pos = 0
        for match in _DURATION_TOKEN.finditer(text):
            if text[pos:match.start()].strip():
                raise ConfigError(f"Unable to parse {value!r} as a valid duration")
            unit = match.group(2).lower()
            if unit not in _DURATION_UNITS:
                raise ConfigError(f"Unknown duration unit {match.group(2)!r} in {value!r}")
            seconds += float(match.group(1)) * _DURATION_UNITS[unit]
            pos = match.end()

        if pos == 0 or text[pos:].strip():
            raise ConfigError(f"Unable to parse {value!r} as a valid duration")

    if seconds <= 0:
        raise ConfigError(f"Duration must be positive: {value!r}")
    return seconds


def parse_size(value) -> int:
    """Parse a byte size ("123KiB", "1MB", "5 GiB") into a number of bytes.

    Bare numbers are bytes.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        size = value
    else:
        match = _SIZE_PATTERN.match(str(value))
        if not match:
            raise ConfigError(f"Unable to parse {value!r} as a valid size")
        unit = match.group(2).lower()
        if unit not in _SIZE_UNITS:
            raise ConfigError(f"Unknown size unit {match.group(2)!r} in {value!r}")
        size = int(float(match.group(1)) * _SIZE_UNITS[unit])

    if size <= 0:
        raise ConfigError(f"Size must be positive: {value!r}")
    if size > S3_MAXIMUM_SIZE:
        raise ConfigError(f"Maximum size cannot be greater than {S3_MAXIMUM_SIZE} bytes")
    return size


def parse_log_level(value) -> str:
    """Normalize a logging level name ("debug" -> "DEBUG"); unknown names raise ConfigError."""
    level = str(value).strip().upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ConfigError(f"Unknown log level {value!r}")
    return level


def parse_s3_url(url: str) -> tuple[str, str]:
    """Split ``s3://bucket/path`` into (bucket, path). Both parts must be non-empty."""
    if not url.startswith(S3_PROTO_PREFIX):
        raise InvalidS3URLError("URL must begin with 's3://'", url)

    bucket, _, path = url[len(S3_PROTO_PREFIX):].partition("/")
    if not bucket:
        raise InvalidS3URLError("bucket/path cannot be empty", url)
    if not path:
        raise InvalidS3URLError("path cannot be empty", url)
    return bucket, path


@dataclass(frozen=True)
class Config:
    bucket: str = ""
    template: str = ""
    max_size: int = DEFAULT_SIZE
    max_duration: float = DEFAULT_DURATION
    staging_dir: str | None = None
    input_path: str | None = None
    compress: bool = False
    max_attempts: int = 5
    upload_workers: int = 4
    tick_interval: float = 1.0
    metrics_interval: float = 0.0
    dashboard_port: int = 0
    log_level: str = "INFO"

    @property
    def destination(self) -> str:
        return f"{S3_PROTO_PREFIX}{self.bucket}/{self.template}"


def load_yaml_config(path: str | None) -> dict:
    """Load settings from a YAML file. Returns an empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    logger.info("Loaded YAML config from %s", path)
    return data


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stream-logs-to-s3",
        description=(
            "Buffer text logs and write them to S3. The path template can include "
            "{host_id}, {year}, {month}, {day}, {hour}, {minute}, {second} and {unique}; "
            "timestamps are UTC. Use {{ and }} for literal braces."
        ),
    )
    parser.add_argument("destination", nargs="?", default=None,
                        help="s3://bucket/prefix/path-template")
    parser.add_argument("-d", "--duration", default=None,
                        help="Maximum duration to buffer before flushing, e.g. '1hour 12min 5s' (default 1h)")
    parser.add_argument("-s", "--size", default=None,
                        help="Maximum size to buffer before flushing, e.g. '123KiB' (default 1MiB)")
    parser.add_argument("-t", "--tempdir", default=None,
                        help="Staging directory for buffered batches (default $TMPDIR or /tmp)")
    parser.add_argument("-i", "--input", default=None,
                        help="Read from this file (usually a FIFO) instead of stdin")
    parser.add_argument("-z", "--gzip", action="store_true", default=None,
                        help="Compress output using gzip")
    parser.add_argument("--max-attempts", type=int, default=None)
    parser.add_argument("--upload-workers", type=int, default=None)
    parser.add_argument("--tick-interval", type=float, default=None)
    parser.add_argument("--metrics-interval", type=float, default=None)
    parser.add_argument("--dashboard-port", type=int, default=None)
    parser.add_argument("--log-level", default=None)
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    return parser


def load_config(argv: list[str] | None = None) -> Config:
    """Build Config from defaults <- YAML file <- env vars <- CLI args (highest priority)."""
    args = build_cli_parser().parse_args(argv)
    yaml_data = load_yaml_config(args.config or os.environ.get("CONFIG_PATH"))

    def pick(cli_value, env_name: str, yaml_key: str, default):
        if cli_value is not None:
            return cli_value
        if env_name in os.environ:
            return os.environ[env_name]
        return yaml_data.get(yaml_key, default)

    destination = pick(args.destination, "DESTINATION", "destination", None)
    if not destination:
        raise ConfigError("Missing S3 write destination")
    bucket, template = parse_s3_url(str(destination))

    try:
        max_attempts = int(pick(args.max_attempts, "MAX_ATTEMPTS", "max_attempts", Config.max_attempts))
        upload_workers = int(pick(args.upload_workers, "UPLOAD_WORKERS", "upload_workers", Config.upload_workers))
        tick_interval = float(pick(args.tick_interval, "TICK_INTERVAL", "tick_interval", Config.tick_interval))
        metrics_interval = float(
            pick(args.metrics_interval, "METRICS_INTERVAL", "metrics_interval", Config.metrics_interval)
        )
        dashboard_port = int(pick(args.dashboard_port, "DASHBOARD_PORT", "dashboard_port", Config.dashboard_port))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid numeric setting: {e}") from e

    if max_attempts < 1:
        raise ConfigError("max_attempts must be at least 1")
    if upload_workers < 1:
        raise ConfigError("upload_workers must be at least 1")
    if tick_interval <= 0:
        raise ConfigError("tick_interval must be positive")

    return Config(
        bucket=bucket,
        template=template,
        max_size=parse_size(pick(args.size, "MAX_SIZE", "max_size", Config.max_size)),
        max_duration=parse_duration(pick(args.duration, "MAX_DURATION", "max_duration", Config.max_duration)),
        staging_dir=pick(args.tempdir, "TMPDIR", "staging_dir", None),
        input_path=pick(args.input, "INPUT_PATH", "input_path", None),
        compress=_parse_bool(pick(args.gzip, "COMPRESS", "compress", False)),
        max_attempts=max_attempts,
        upload_workers=upload_workers,
        tick_interval=tick_interval,
        metrics_interval=metrics_interval,
        dashboard_port=dashboard_port,
        log_level=parse_log_level(pick(args.log_level, "LOG_LEVEL", "log_level", Config.log_level)),
    )
