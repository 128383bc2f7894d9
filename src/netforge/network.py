import base64
import hashlib
import ipaddress
import logging
from dataclasses import asdict, dataclass
from typing import Iterable, Mapping


logger = logging.getLogger(__name__)

OCTET_BASE = 50
OCTET_BUCKETS = 200
DIGEST_LENGTH = 13

# Weights applied to (digest length, project length, environment length)
DIGEST_WEIGHT = 17
PROJECT_WEIGHT = 13
ENVIRONMENT_WEIGHT = 7

SCHEMES = ("weighted", "digest")
DEFAULT_SCHEME = "weighted"

# Azure keeps the first four addresses of every subnet for itself
AZURE_RESERVED_OFFSET = 4


class NetworkError(Exception):
    pass


class InvalidInputError(NetworkError):
    pass


class MalformedOverrideError(NetworkError):
    pass


class CollisionError(NetworkError):
    pass


class AddressSpaceExhaustedError(NetworkError):
    pass


@dataclass(frozen=True)
class AllocationKey:
    project_name: str
    environment: str

    @property
    def hash_input(self) -> str:
        return f"{self.project_name}{self.environment}"

    def __str__(self) -> str:
        return f"{self.project_name}/{self.environment}"


@dataclass(frozen=True)
class CollisionWarning:
    """Advisory record: the computed bucket is already held by another key."""

    octet: int
    owner: str

    def __str__(self) -> str:
        return f"octet {self.octet} is already allocated to '{self.owner}'"


@dataclass(frozen=True)
class AddressRange:
    vnet_prefix: str
    app_subnet_prefix: str
    network_octet: int | None = None
    source: str = "computed"
    requested_octet: int | None = None
    conflict: CollisionWarning | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["conflict"] = str(self.conflict) if self.conflict else None
        return data


def unique_string(*parts: str) -> str:
    """Stable 13-character lowercase digest of the given strings."""
    digest = hashlib.sha256("-".join(parts).encode("utf-8")).digest()
    return base64.b32encode(digest).decode("ascii").lower()[:DIGEST_LENGTH]


def hash_value(key: AllocationKey, scheme: str = DEFAULT_SCHEME) -> int:
    """Reduce an allocation key to an integer before bucketing.

    The ``weighted`` scheme reproduces the range the infrastructure templates
    compute inline: only the lengths of the digest, project and environment
    contribute, so every key with the same field lengths lands in the same
    bucket. ``digest`` uses the full SHA-256 value and spreads keys evenly.
    """
    if scheme == "weighted":
        digest = unique_string(key.hash_input)
        return (
            DIGEST_WEIGHT * len(digest)
            + PROJECT_WEIGHT * len(key.project_name)
            + ENVIRONMENT_WEIGHT * len(key.environment)
        )
    if scheme == "digest":
        return int(hashlib.sha256(key.hash_input.encode("utf-8")).hexdigest(), 16)
    raise NetworkError(f"Unknown allocation scheme '{scheme}'. Choose from: {', '.join(SCHEMES)}")


def compute_octet(key: AllocationKey, scheme: str = DEFAULT_SCHEME) -> int:
    """Map a key onto the second octet of a 10.x.0.0/16 block, in [50, 249]."""
    return hash_value(key, scheme) % OCTET_BUCKETS + OCTET_BASE


def vnet_prefix_for(octet: int) -> str:
    return f"10.{octet}.0.0/16"


def app_subnet_prefix_for(octet: int) -> str:
    return f"10.{octet}.1.0/24"


def collision_probability(keys: int) -> float:
    """Birthday bound: chance that at least two of ``keys`` share a bucket."""
    if keys > OCTET_BUCKETS:
        return 1.0
    unique = 1.0
    for i in range(keys):
        unique *= (OCTET_BUCKETS - i) / OCTET_BUCKETS
    return 1.0 - unique


def validate_override(vnet_prefix: str, subnet_prefix: str) -> None:
    """Check that an explicit vnet/subnet pair is well-formed and nested."""
    try:
        vnet = ipaddress.IPv4Network(vnet_prefix)
        subnet = ipaddress.IPv4Network(subnet_prefix)
    except ValueError as e:
        raise MalformedOverrideError(f"Invalid override CIDR: {e}") from e
    if "/" not in vnet_prefix or "/" not in subnet_prefix:
        raise MalformedOverrideError(
            f"Override prefixes must be in CIDR form, got '{vnet_prefix}' and '{subnet_prefix}'"
        )
    if not subnet.subnet_of(vnet):
        raise MalformedOverrideError(
            f"Subnet {subnet_prefix} is not inside virtual network {vnet_prefix}"
        )


class RangeAllocator:
    """Derives a 10.x.0.0/16 network and its 10.x.1.0/24 app subnet from a key."""

    def __init__(self, scheme: str = DEFAULT_SCHEME):
        if scheme not in SCHEMES:
            raise NetworkError(f"Unknown allocation scheme '{scheme}'. Choose from: {', '.join(SCHEMES)}")
        self.scheme = scheme

    def allocate(
        self,
        project_name: str | None,
        environment: str | None,
        vnet_prefix: str | None = None,
        subnet_prefix: str | None = None,
        in_use: Mapping[int, str] | Iterable[int] | None = None,
        policy: str = "probe",
    ) -> AddressRange:
        """Allocate an address range for a project/environment pair.

        Explicit prefixes win whenever both are given. Otherwise the octet is
        computed from the key. Passing ``in_use`` enables collision handling
        according to ``policy`` (``probe``, ``warn`` or ``reject``); without
        it the result is a pure function of the key.
        """
        if vnet_prefix or subnet_prefix:
            if not (vnet_prefix and subnet_prefix):
                raise MalformedOverrideError(
                    "Both a virtual network prefix and a subnet prefix are required to override"
                )
            validate_override(vnet_prefix, subnet_prefix)
            logger.debug("Using override range %s / %s", vnet_prefix, subnet_prefix)
            return AddressRange(vnet_prefix, subnet_prefix, source="override")

        key = AllocationKey(project_name or "", environment or "")
        if not key.hash_input:
            raise InvalidInputError(
                "A project name or environment is required when no override range is given"
            )

        octet = compute_octet(key, self.scheme)
        logger.debug("Key %s hashes to octet %d (%s scheme)", key, octet, self.scheme)
        if in_use is None:
            return self._range(octet, octet)

        owners = _owners(in_use)
        if octet not in owners:
            return self._range(octet, octet)

        conflict = CollisionWarning(octet, owners[octet])
        if policy == "reject":
            raise CollisionError(f"Cannot allocate {key}: {conflict}")
        if policy == "warn":
            logger.warning("Collision for %s: %s", key, conflict)
            return self._range(octet, octet, conflict=conflict)
        if policy != "probe":
            raise NetworkError(f"Unknown collision policy '{policy}'")

        probed = probe_free_octet(octet, owners)
        logger.info("Octet %d is taken by '%s', probed to %d", octet, conflict.owner, probed)
        return self._range(probed, octet, source="probed", conflict=conflict)

    @staticmethod
    def _range(
        octet: int,
        requested: int,
        source: str = "computed",
        conflict: CollisionWarning | None = None,
    ) -> AddressRange:
        return AddressRange(
            vnet_prefix=vnet_prefix_for(octet),
            app_subnet_prefix=app_subnet_prefix_for(octet),
            network_octet=octet,
            source=source,
            requested_octet=requested,
            conflict=conflict,
        )

    @staticmethod
    def compute_ip(subnet: str, offset: int) -> str:
        """Compute an IP address from a subnet and offset."""
        net = ipaddress.IPv4Network(subnet)
        ip = net.network_address + offset
        if ip not in net:
            raise NetworkError(
                f"IP offset {offset} is out of range for subnet {subnet}"
            )
        return str(ip)

    @staticmethod
    def gateway_ip(subnet: str) -> str:
        """Return the gateway IP (first usable address) for a subnet."""
        net = ipaddress.IPv4Network(subnet)
        return str(net.network_address + 1)

    @staticmethod
    def first_host_ip(subnet: str) -> str:
        """Return the first address Azure assigns to a NIC in the subnet."""
        return RangeAllocator.compute_ip(subnet, AZURE_RESERVED_OFFSET)


def probe_free_octet(start: int, in_use: Mapping[int, str] | Iterable[int]) -> int:
    """Walk linearly from ``start`` to the next octet not in use, wrapping in [50, 249]."""
    taken = set(in_use)
    for step in range(OCTET_BUCKETS):
        candidate = (start - OCTET_BASE + step) % OCTET_BUCKETS + OCTET_BASE
        if candidate not in taken:
            return candidate
    raise AddressSpaceExhaustedError(
        f"All {OCTET_BUCKETS} address ranges (10.{OCTET_BASE}-{OCTET_BASE + OCTET_BUCKETS - 1}.0.0/16) are in use"
    )


def _owners(in_use: Mapping[int, str] | Iterable[int]) -> dict[int, str]:
    if isinstance(in_use, Mapping):
        return dict(in_use)
    return {octet: "unknown" for octet in in_use}
