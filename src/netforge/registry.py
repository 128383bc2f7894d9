import logging
import os
import platform
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

import yaml

from netforge.network import AddressRange, AllocationKey, RangeAllocator

if platform.system() == "Windows":
    import msvcrt
else:
    import fcntl


logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).parent.parent.parent / "data"
DEFAULT_REGISTRY = DATA_DIR / "registry.yml"

POLICIES = ("probe", "warn", "reject")


class StateError(Exception):
    pass


class LockTimeoutError(Exception):
    pass


def default_registry_path() -> Path:
    """Registry location, honouring NETFORGE_REGISTRY."""
    env_path = os.environ.get("NETFORGE_REGISTRY")
    return Path(env_path).expanduser() if env_path else DEFAULT_REGISTRY


@contextmanager
def file_lock(path: Path, timeout: float = 5.0):
    """Hold an exclusive lock on ``path`` (created if missing) for the block."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a") as handle:
        deadline = time.monotonic() + timeout
        delay = 0.05
        while True:
            try:
                _lock(handle)
                break
            except OSError:
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(
                        f"Could not lock {path} within {timeout}s; another allocation is in progress"
                    )
                time.sleep(delay)
                delay = min(delay * 2, 1.0)
        try:
            yield
        finally:
            _unlock(handle)


def _lock(handle) -> None:
    if platform.system() == "Windows":
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock(handle) -> None:
    if platform.system() == "Windows":
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@dataclass
class RegistryEntry:
    key: str
    project: str
    environment: str
    octet: int | None
    vnet_prefix: str
    app_subnet_prefix: str
    status: str = "active"
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "RegistryEntry":
        try:
            return cls(**{field: data[field] for field in cls.__dataclass_fields__ if field in data})
        except TypeError as e:
            raise StateError(f"Malformed registry entry: {data}") from e


class AllocationRegistry:
    """Persistent record of active address ranges stored in a YAML file.

    The pure allocator knows nothing about previous deployments. The registry
    feeds it the octets already in use so collisions can be probed past,
    warned about or rejected. Every read-modify-write happens under an
    exclusive file lock, so concurrent ``reserve`` calls never hand out the
    same bucket twice.
    """

    def __init__(self, path: Path | None = None, lock_timeout: float = 5.0):
        self.path = Path(path) if path else default_registry_path()
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = lock_timeout

    def reserve(
        self,
        project_name: str,
        environment: str,
        allocator: RangeAllocator | None = None,
        policy: str = "probe",
    ) -> AddressRange:
        """Allocate and record a range for the key, or return its existing one."""
        with file_lock(self.lock_path, self.lock_timeout):
            entries = self._read()
            address_range = self._resolve(entries, project_name, environment, allocator, policy)
            if address_range.source == "registry":
                return address_range

            key = (project_name, environment)
            existing = entries.get(key)
            now = datetime.now(timezone.utc).isoformat()
            entries[key] = RegistryEntry(
                key=str(AllocationKey(project_name, environment)),
                project=project_name,
                environment=environment,
                octet=address_range.network_octet,
                vnet_prefix=address_range.vnet_prefix,
                app_subnet_prefix=address_range.app_subnet_prefix,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._write(entries)
            logger.info("Recorded %s for %s in %s", address_range.vnet_prefix, entries[key].key, self.path)
            return address_range

    def preview(
        self,
        project_name: str,
        environment: str,
        allocator: RangeAllocator | None = None,
        policy: str = "probe",
    ) -> AddressRange:
        """Return the range ``reserve`` would hand out, without recording it."""
        return self._resolve(self._read(), project_name, environment, allocator, policy)

    def _resolve(
        self,
        entries: dict[tuple[str, str], RegistryEntry],
        project_name: str,
        environment: str,
        allocator: RangeAllocator | None,
        policy: str,
    ) -> AddressRange:
        if policy not in POLICIES:
            raise StateError(f"Unknown collision policy '{policy}'. Choose from: {', '.join(POLICIES)}")
        allocator = allocator or RangeAllocator()

        existing = entries.get((project_name, environment))
        if existing and existing.status == "active":
            logger.debug("Key %s already holds %s", existing.key, existing.vnet_prefix)
            return AddressRange(
                existing.vnet_prefix,
                existing.app_subnet_prefix,
                network_octet=existing.octet,
                source="registry",
                requested_octet=existing.octet,
            )
        return allocator.allocate(
            project_name,
            environment,
            in_use=self._owners(entries),
            policy=policy,
        )

    def release(self, project_name: str, environment: str) -> RegistryEntry:
        """Mark a key's range as released so its octet can be reused."""
        with file_lock(self.lock_path, self.lock_timeout):
            entries = self._read()
            entry = entries.get((project_name, environment))
            if entry is None or entry.status != "active":
                raise StateError(f"No active allocation for '{AllocationKey(project_name, environment)}'")
            entry.status = "released"
            entry.updated_at = datetime.now(timezone.utc).isoformat()
            self._write(entries)
        logger.info("Released %s (%s)", entry.key, entry.vnet_prefix)
        return entry

    def get(self, project_name: str, environment: str) -> RegistryEntry:
        entry = self._read().get((project_name, environment))
        if entry is None:
            raise StateError(f"No allocation found for '{AllocationKey(project_name, environment)}'")
        return entry

    def list_entries(self, include_released: bool = False) -> list[RegistryEntry]:
        entries = sorted(self._read().values(), key=_sort_key)
        if include_released:
            return entries
        return [e for e in entries if e.status == "active"]

    def active_octets(self) -> dict[int, str]:
        """Return octets in use by active allocations, mapped to their key."""
        return self._owners(self._read())

    @staticmethod
    def _owners(entries: dict[tuple[str, str], RegistryEntry]) -> dict[int, str]:
        return {
            e.octet: e.key
            for e in entries.values()
            if e.status == "active" and e.octet is not None
        }

    def _read(self) -> dict[tuple[str, str], RegistryEntry]:
        # Entries are keyed by the (project, environment) pair; the joined
        # "project/environment" string is for display only and is not unique.
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise StateError(f"Registry file {self.path} is not valid YAML: {e}") from e
        allocations = data.get("allocations", []) if isinstance(data, dict) else None
        if not isinstance(allocations, list):
            raise StateError(f"Invalid registry file: {self.path}")
        entries = {}
        for item in allocations:
            if not isinstance(item, dict):
                raise StateError(f"Malformed registry entry: {item}")
            entry = RegistryEntry.from_dict(item)
            entries[(entry.project, entry.environment)] = entry
        return entries

    def _write(self, entries: dict[tuple[str, str], RegistryEntry]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        data = {"allocations": [e.to_dict() for e in sorted(entries.values(), key=_sort_key)]}
        with open(tmp_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
        os.replace(tmp_path, self.path)


def _sort_key(entry: RegistryEntry) -> tuple[str, str]:
    return (entry.project, entry.environment)
