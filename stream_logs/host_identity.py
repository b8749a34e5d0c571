"""Host identity resolution — EC2 instance id, ECS task id, hostname, or IP address.

Probes are tried in order and the first one that answers wins. Every probe
swallows its own failures (timeouts, refused connections, non-2xx replies) so
the chain simply falls through to the next source.
"""

import ipaddress
import logging
import os
import re
import socket
import threading
from dataclasses import dataclass
from enum import Enum

import requests

from stream_logs.errors import HostIdentityError

logger = logging.getLogger(__name__)

# The metadata endpoints are link-local; anything slower than this means we
# are not running where they exist.
METADATA_TIMEOUT = 0.1

EC2_METADATA_BASE = "http://169.254.169.254/latest"
EC2_TOKEN_URL = f"{EC2_METADATA_BASE}/api/token"
EC2_INSTANCE_ID_URL = f"{EC2_METADATA_BASE}/meta-data/instance-id"
EC2_TOKEN_HEADER = "x-aws-ec2-metadata-token"
EC2_TOKEN_TTL_HEADER = "x-aws-ec2-metadata-token-ttl-seconds"
EC2_TOKEN_TTL_SECONDS = "60"

ECS_V4_ENDPOINT_VAR = "ECS_CONTAINER_METADATA_URI_V4"
ECS_V3_ENDPOINT_VAR = "ECS_CONTAINER_METADATA_URI"
ECS_V2_ENDPOINT = "http://169.254.170.2/v2/metadata"

TASK_ARN_PATTERN = re.compile(r"arn:[^:]+:ecs:[^:]+:[0-9]{12}:task/(.*)$")


class IdentityOrigin(Enum):
    EC2_INSTANCE_ID = "ec2_instance_id"
    ECS_TASK_ID = "ecs_task_id"
    HOSTNAME = "hostname"
    IP_ADDRESS = "ip_address"


@dataclass(frozen=True)
class HostIdentity:
    origin: IdentityOrigin
    value: str

    def __str__(self) -> str:
        return self.value


class Ec2MetadataProbe:
    """Ask the EC2 instance metadata service for the instance id (IMDSv2, falling back to v1)."""

    name = "ec2"

    def __init__(self, session: requests.Session | None = None, timeout: float = METADATA_TIMEOUT):
        self._session = session or requests.Session()
        self._timeout = timeout

    def probe(self) -> HostIdentity | None:
        headers = {}
        token = self._fetch_token()
        if token:
            headers[EC2_TOKEN_HEADER] = token

        try:
            resp = self._session.get(EC2_INSTANCE_ID_URL, headers=headers, timeout=self._timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.debug("EC2 metadata unavailable: %s", e)
            return None

        instance_id = resp.text.strip()
        if not instance_id:
            return None
        return HostIdentity(IdentityOrigin.EC2_INSTANCE_ID, instance_id)

    def _fetch_token(self) -> str | None:
        """Get an IMDSv2 session token, or None when only IMDSv1 (or nothing) answers."""
        try:
            resp = self._session.put(
                EC2_TOKEN_URL,
                headers={EC2_TOKEN_TTL_HEADER: EC2_TOKEN_TTL_SECONDS},
                timeout=self._timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.debug("IMDSv2 token request failed: %s", e)
            return None
        return resp.text.strip() or None


class EcsMetadataProbe:
    """Derive an id from the ECS task ARN exposed by the container metadata endpoint."""

    name = "ecs"

    def __init__(
        self,
        session: requests.Session | None = None,
        timeout: float = METADATA_TIMEOUT,
        environ=None,
    ):
        self._session = session or requests.Session()
        self._timeout = timeout
        self._environ = environ if environ is not None else os.environ

    def endpoints(self) -> list[str]:
        """Task metadata URLs to try: v4, then v3 (when advertised), then v2."""
        urls = []
        for var in (ECS_V4_ENDPOINT_VAR, ECS_V3_ENDPOINT_VAR):
            base = self._environ.get(var)
            if base:
                urls.append(f"{base.rstrip('/')}/task")
        urls.append(ECS_V2_ENDPOINT)
        return urls

    def probe(self) -> HostIdentity | None:
        for url in self.endpoints():
            task_id = self._task_id_from(url)
            if task_id:
                return HostIdentity(IdentityOrigin.ECS_TASK_ID, task_id)
        return None

    def _task_id_from(self, url: str) -> str | None:
        try:
            resp = self._session.get(url, timeout=self._timeout)
            resp.raise_for_status()
            metadata = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.debug("ECS metadata unavailable at %s: %s", url, e)
            return None

        task_arn = metadata.get("TaskARN", "") if isinstance(metadata, dict) else ""
        return parse_task_id(task_arn)


def parse_task_id(task_arn: str) -> str | None:
    """Extract the task id from an ECS task ARN; None if it is not one."""
    match = TASK_ARN_PATTERN.search(task_arn or "")
    if not match or not match.group(1):
        logger.debug("Invalid ECS task ARN: %r", task_arn)
        return None
    return match.group(1)


class HostnameProbe:
    name = "hostname"

    def probe(self) -> HostIdentity | None:
        try:
            hostname = socket.gethostname()
        except OSError:
            return None
        if not hostname:
            return None
        return HostIdentity(IdentityOrigin.HOSTNAME, hostname)


def _is_usable_address(addr: str) -> bool:
    try:
        ip = ipaddress.ip_address(addr.split("%", 1)[0])
    except ValueError:
        return False
    return not (ip.is_unspecified or ip.is_loopback or ip.is_link_local or ip.is_multicast)


class IpAddressProbe:
    """Pick the first non-loopback, non-link-local address of this host."""

    name = "ip_address"

    # Never contacted: connecting a UDP socket only selects a route.
    ROUTE_PROBE_TARGET = ("192.0.2.1", 9)

    def probe(self) -> HostIdentity | None:
        for addr in self._candidate_addresses():
            if _is_usable_address(addr):
                return HostIdentity(IdentityOrigin.IP_ADDRESS, addr)
        return None

    def _candidate_addresses(self) -> list[str]:
        addresses = []
        try:
            for info in socket.getaddrinfo(socket.gethostname(), None):
                addresses.append(info[4][0])
        except OSError as e:
            logger.debug("getaddrinfo on hostname failed: %s", e)

        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.connect(self.ROUTE_PROBE_TARGET)
                addresses.append(sock.getsockname()[0])
        except OSError as e:
            logger.debug("Route lookup failed: %s", e)
        return addresses


def default_probes() -> list:
    session = requests.Session()
    return [
        Ec2MetadataProbe(session),
        EcsMetadataProbe(session),
        HostnameProbe(),
        IpAddressProbe(),
    ]


class HostIdentityResolver:
    """Resolves the host identity once, lazily, and caches it for the process lifetime."""

    def __init__(self, probes: list | None = None):
        self._probes = probes if probes is not None else default_probes()
        self._identity: HostIdentity | None = None
        self._lock = threading.Lock()

    @property
    def resolved(self) -> bool:
        return self._identity is not None

    def resolve(self) -> HostIdentity:
        """Return the cached identity, probing on first call.

        Raises:
            HostIdentityError: every probe failed.
        """
        with self._lock:
            if self._identity is not None:
                return self._identity

            for probe in self._probes:
                try:
                    identity = probe.probe()
                except Exception:
                    logger.exception("Host identity probe %s raised", probe.name)
                    identity = None
                if identity is not None:
                    logger.info("Using host id %s (from %s)", identity.value, identity.origin.value)
                    self._identity = identity
                    return identity
                logger.debug("Host identity probe %s found nothing", probe.name)

            raise HostIdentityError(
                "Unable to determine a host identity from "
                + ", ".join(p.name for p in self._probes)
            )
