"""State store for stack-based provisioning.

Keeps the last successfully applied configuration and provider attributes
per resource address, persisted to a JSON file so later runs can diff
against it and destroy can find remote IDs.

Writes are per-address compare-and-set on the record's version token.
Within a process a lock serializes writers; across processes an exclusive
flock on a sidecar lock file does. Every write goes to a temp file that is
renamed over the state file, so a crash never leaves a half-written file.
"""

import fcntl
import json
import logging
import os
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

from engine.errors import ConflictError, PreconditionError

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


@dataclass
class StateRecord:
    """Per-address applied state.

    Attributes:
        address: Resource address
        kind: Resource kind
        config: Materialized attributes as last applied (diff baseline)
        attributes: Attributes reported by the provider, including 'id'
        dependencies: Resource addresses this resource depended on
        position: Index in the create order that produced this record
        version: Opaque version token, replaced on every write
        applied_at: Timestamp of the last successful write
    """
    address: str
    kind: str
    config: dict = field(default_factory=dict)
    attributes: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    position: int = 0
    version: str = ''
    applied_at: Optional[float] = None

    @property
    def resource_id(self) -> Optional[str]:
        return self.attributes.get('id')

    def to_dict(self) -> dict:
        return {
            'kind': self.kind,
            'config': self.config,
            'attributes': self.attributes,
            'dependencies': list(self.dependencies),
            'position': self.position,
            'version': self.version,
            'applied_at': self.applied_at,
        }

    @classmethod
    def from_dict(cls, address: str, data: dict) -> 'StateRecord':
        return cls(
            address=address,
            kind=data.get('kind', ''),
            config=data.get('config', {}),
            attributes=data.get('attributes', {}),
            dependencies=list(data.get('dependencies', [])),
            position=data.get('position', 0),
            version=data.get('version', ''),
            applied_at=data.get('applied_at'),
        )


@dataclass
class StateSnapshot:
    """Read-only view of the state file at one point in time."""
    serial: int = 0
    records: dict[str, StateRecord] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)

    def get(self, address: str) -> Optional[StateRecord]:
        return self.records.get(address)

    def __contains__(self, address: str) -> bool:
        return address in self.records


class StateStore:
    """File-backed state store with per-address compare-and-set.

    State is persisted to a single JSON file:

        {"format": 1, "serial": N, "resources": {address: {...}}, "outputs": {...}}
    """

    def __init__(self, path: Path):
        """Initialize the store.

        Args:
            path: Path to the state JSON file
        """
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + '.lock')
        self._lock = threading.Lock()

    def initialize(self) -> None:
        """Create the state directory and an empty state file if missing.

        Raises:
            PreconditionError: If the location is not writable
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._transaction():
                pass
        except OSError as e:
            raise PreconditionError(f"State store not reachable at {self.path}: {e}", code='E601') from e
        logger.debug(f"State store ready at {self.path}")

    def check(self) -> None:
        """Verify the state store is reachable without modifying it.

        Raises:
            PreconditionError: If the state directory is missing or not writable
        """
        directory = self.path.parent
        if not directory.is_dir():
            raise PreconditionError(
                f"State directory {directory} does not exist. Run 'init' first.", code='E601'
            )
        if not os.access(directory, os.W_OK):
            raise PreconditionError(f"State directory {directory} is not writable", code='E602')
        if self.path.exists():
            try:
                self._read()
            except (OSError, ValueError) as e:
                raise PreconditionError(f"State file {self.path} unreadable: {e}", code='E603') from e

    def _read(self) -> dict:
        if not self.path.exists():
            return {'format': STATE_FORMAT_VERSION, 'serial': 0, 'resources': {}, 'outputs': {}}
        with open(self.path, encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict) or 'resources' not in data:
            raise ValueError("not a state file")
        return data

    def _write(self, data: dict) -> None:
        tmp = self.path.with_name(self.path.name + '.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    @contextmanager
    def _transaction(self) -> Iterator[dict]:
        """Exclusive read-modify-write of the state file."""
        with self._lock:
            with open(self.lock_path, 'a+', encoding='utf-8') as lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    data = self._read()
                    before = json.dumps(data, sort_keys=True)
                    yield data
                    if not self.path.exists() or json.dumps(data, sort_keys=True) != before:
                        self._write(data)
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def snapshot(self) -> StateSnapshot:
        """Load a consistent snapshot of all records."""
        with self._lock:
            data = self._read()
        return StateSnapshot(
            serial=data.get('serial', 0),
            records={a: StateRecord.from_dict(a, r) for a, r in data.get('resources', {}).items()},
            outputs=data.get('outputs', {}),
        )

    def get(self, address: str) -> Optional[StateRecord]:
        return self.snapshot().get(address)

    def put(self, address: str, kind: str, config: dict, attributes: dict,
            dependencies: list[str], position: int,
            expected_version: Optional[str]) -> StateRecord:
        """Create or replace a record if its version matches.

        Args:
            expected_version: Version the caller last saw; None if the
                record must not exist yet

        Returns:
            The written record with its new version token

        Raises:
            ConflictError: If the stored version differs from expected_version
        """
        with self._transaction() as data:
            resources = data.setdefault('resources', {})
            current = resources.get(address)
            current_version = current.get('version') if current else None
            if current_version != expected_version:
                raise ConflictError(
                    f"State for '{address}' changed concurrently "
                    f"(expected version {expected_version}, found {current_version}); re-plan",
                    code='E301',
                )
            record = StateRecord(
                address=address,
                kind=kind,
                config=config,
                attributes=attributes,
                dependencies=sorted(dependencies),
                position=position,
                version=uuid.uuid4().hex,
                applied_at=time.time(),
            )
            resources[address] = record.to_dict()
            data['serial'] = data.get('serial', 0) + 1
        logger.debug(f"Committed state for {address} (version {record.version})")
        return record

    def remove(self, address: str, expected_version: Optional[str]) -> None:
        """Delete a record if its version matches.

        Raises:
            ConflictError: If the record is missing or its version differs
        """
        with self._transaction() as data:
            resources = data.setdefault('resources', {})
            current = resources.get(address)
            current_version = current.get('version') if current else None
            if current is None or current_version != expected_version:
                raise ConflictError(
                    f"State for '{address}' changed concurrently "
                    f"(expected version {expected_version}, found {current_version}); re-plan",
                    code='E302',
                )
            del resources[address]
            data['serial'] = data.get('serial', 0) + 1
        logger.debug(f"Removed state for {address}")

    def save_outputs(self, outputs: dict[str, Any]) -> None:
        """Replace the persisted outputs section."""
        with self._transaction() as data:
            data['outputs'] = outputs
