"""Object-store sinks — the single "put object" capability the delivery pipeline needs."""

import logging
import os

import boto3
from boto3.exceptions import S3UploadFailedError
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from stream_logs.errors import PermanentDeliveryError, TransientDeliveryError

logger = logging.getLogger(__name__)

# Objects above this size go through a multipart upload.
MULTIPART_THRESHOLD = 10 << 20
MULTIPART_CHUNKSIZE = 10 << 20

# Rejections that no amount of retrying will fix.
PERMANENT_ERROR_CODES = frozenset([
    "AccessDenied",
    "AccountProblem",
    "AllAccessDisabled",
    "InvalidAccessKeyId",
    "InvalidBucketName",
    "InvalidObjectState",
    "NoSuchBucket",
    "SignatureDoesNotMatch",
])


class ObjectSink:
    """Interface: upload the file at *path* under *key*."""

    def put(self, key: str, path: str, content_encoding: str | None = None):
        raise NotImplementedError


def classify_error(exc: Exception, key: str) -> Exception:
    """Map a boto3/botocore/IO failure onto a transient or permanent delivery error."""
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        if code in PERMANENT_ERROR_CODES:
            return PermanentDeliveryError(f"s3 rejected {key}: {code}: {exc}")
        return TransientDeliveryError(f"s3 error for {key}: {code or 'unknown'}: {exc}")

    if isinstance(exc, S3UploadFailedError):
        message = str(exc)
        for code in PERMANENT_ERROR_CODES:
            if f"({code})" in message:
                return PermanentDeliveryError(f"s3 rejected {key}: {code}: {message}")
        return TransientDeliveryError(f"Multipart upload of {key} failed: {message}")

    return TransientDeliveryError(f"Upload of {key} failed: {exc}")


class S3Sink(ObjectSink):
    """Writes objects to one S3 bucket, server-side encrypted and tagged with the host id."""

    def __init__(
        self,
        client,
        bucket: str,
        host_id: str | None = None,
        server_side_encryption: str | None = "AES256",
        multipart_threshold: int = MULTIPART_THRESHOLD,
    ):
        self._client = client
        self._bucket = bucket
        self._host_id = host_id
        self._sse = server_side_encryption
        self._multipart_threshold = multipart_threshold
        self._transfer_config = TransferConfig(
            multipart_threshold=multipart_threshold,
            multipart_chunksize=MULTIPART_CHUNKSIZE,
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def host_id(self) -> str | None:
        return self._host_id

    @host_id.setter
    def host_id(self, value: str | None):
        self._host_id = value

    def _extra_args(self, content_encoding: str | None) -> dict:
        extra = {}
        if self._sse:
            extra["ServerSideEncryption"] = self._sse
        if self._host_id:
            extra["Tagging"] = f"HostId={self._host_id}"
        if content_encoding:
            extra["ContentEncoding"] = content_encoding
        return extra

    def put(self, key: str, path: str, content_encoding: str | None = None):
        """Upload *path* to s3://bucket/key.

        Raises:
            TransientDeliveryError: worth retrying.
            PermanentDeliveryError: retrying will not help.
        """
        extra = self._extra_args(content_encoding)
        try:
            size = os.path.getsize(path)
            if size <= self._multipart_threshold:
                logger.debug("Single upload of %s (%d bytes) to s3://%s/%s", path, size, self._bucket, key)
                with open(path, "rb") as body:
                    self._client.put_object(
                        Bucket=self._bucket,
                        Key=key,
                        Body=body,
                        ContentLength=size,
                        **extra,
                    )
            else:
                logger.debug("Multipart upload of %s (%d bytes) to s3://%s/%s", path, size, self._bucket, key)
                self._client.upload_file(
                    path,
                    self._bucket,
                    key,
                    ExtraArgs=extra,
                    Config=self._transfer_config,
                )
        except (ClientError, BotoCoreError, S3UploadFailedError, OSError) as e:
            raise classify_error(e, key) from e


def build_s3_client(region: str | None = None, timeout: float = 60.0):
    """Create an S3 client; credentials and default region come from boto3's usual chain."""
    session = boto3.session.Session(region_name=region)
    return session.client(
        "s3",
        config=BotoConfig(
            connect_timeout=timeout,
            read_timeout=timeout,
            # The delivery pipeline owns retries.
            retries={"max_attempts": 1, "mode": "standard"},
        ),
    )


def resolve_bucket_region(client, bucket: str) -> str:
    """Look up the region a bucket lives in.

    GetBucketLocation reports us-east-1 as an empty constraint and the legacy
    ``EU`` alias for eu-west-1.
    """
    response = client.get_bucket_location(Bucket=bucket)
    constraint = response.get("LocationConstraint")
    if not constraint:
        return "us-east-1"
    if constraint == "EU":
        return "eu-west-1"
    return constraint
