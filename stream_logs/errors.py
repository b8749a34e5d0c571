"""Exception hierarchy for the log streamer."""


class StreamLogsError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(StreamLogsError):
    """Raised when configuration values are missing or malformed."""


class InvalidS3URLError(ConfigError):
    def __init__(self, reason: str, url: str):
        super().__init__(f"Invalid S3 URL format: {reason}: {url}")
        self.reason = reason
        self.url = url


# ---------------------------------------------------------------------------
# Template errors
# ---------------------------------------------------------------------------


class TemplateError(ConfigError):
    """Raised when a path template cannot be compiled or rendered."""


class UnknownVariableError(TemplateError):
    def __init__(self, name: str, position: int):
        super().__init__(f"Unknown template variable '{name}' at position {position}")
        self.name = name
        self.position = position


class UnterminatedBraceError(TemplateError):
    def __init__(self, position: int):
        super().__init__(f"Unmatched '{{' at position {position}")
        self.position = position


class UnmatchedBraceError(TemplateError):
    def __init__(self, position: int):
        super().__init__(f"Unmatched '}}' at position {position}")
        self.position = position


class HostIdentityError(StreamLogsError):
    """Raised when every host identity probe has failed."""


# ---------------------------------------------------------------------------
# Segment / controller errors
# ---------------------------------------------------------------------------


class SegmentSealedError(StreamLogsError):
    """Raised when writing to a segment that has already been sealed."""


class ControllerClosedError(StreamLogsError):
    """Raised when appending after the flush controller began shutting down."""


# ---------------------------------------------------------------------------
# Delivery errors
# ---------------------------------------------------------------------------


class DeliveryError(StreamLogsError):
    """Base class for failures while uploading a sealed segment."""


class TransientDeliveryError(DeliveryError):
    """A failure worth retrying (network error, throttling, 5xx)."""


class PermanentDeliveryError(DeliveryError):
    """A rejection that retrying will not fix (e.g. access denied)."""


class TerminalDeliveryError(DeliveryError):
    """Delivery gave up; the segment's backing file was left on disk."""

    def __init__(self, key: str, attempts: int, path: str, cause: Exception | None = None):
        super().__init__(
            f"Giving up on s3 key {key} after {attempts} attempt(s); batch retained at {path}: {cause}"
        )
        self.key = key
        self.attempts = attempts
        self.path = path
        self.cause = cause
