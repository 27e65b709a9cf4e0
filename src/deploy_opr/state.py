"""Deployment state management.

Tracks per-resource status (pending, creating, ready, failed, deleting,
deleted) and persists it after every transition so that a re-run after a
crash diffs against what was actually provisioned.

State is persisted to {state_dir}/{deployment}/state.json.
"""

import copy
import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)

STATE_FILE = 'state.json'
LOCK_FILE = '.lock'


class StateStoreError(Exception):
    """State could not be read or persisted. Fatal for the run.

    When raised out of an engine run, `outcome` carries the aborted run's
    per-resource results (status FatalError).
    """
    outcome = None


class StateLockError(StateStoreError):
    """Another run holds the deployment lock."""


class ResourceStatus(str, Enum):
    PENDING = 'pending'
    CREATING = 'creating'
    READY = 'ready'
    FAILED = 'failed'
    DELETING = 'deleting'
    DELETED = 'deleted'


@dataclass
class ResourceState:
    """Per-resource provisioning state.

    Attributes:
        name: Logical name (matches ResourceSpec.name)
        kind: Resource kind value, kept so teardown can handle resources
            that have left the manifest
        status: Current status
        provider_id: Provider-assigned id once created
        spec_hash: Effective hash of the spec at the last successful apply
        error: Last observed error
        attempts: Provider calls made by the last transition
        dependencies: Dependency names at the last apply
        outputs: Attributes reported by the provider
        blocked_by: Failed dependency that kept this resource from being attempted
        updated_at: Timestamp of the last transition
    """
    name: str
    kind: str = ''
    status: ResourceStatus = ResourceStatus.PENDING
    provider_id: Optional[str] = None
    spec_hash: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    dependencies: list[str] = field(default_factory=list)
    outputs: dict = field(default_factory=dict)
    blocked_by: Optional[str] = None
    updated_at: Optional[float] = None

    def _touch(self) -> None:
        self.updated_at = time.time()

    def begin_create(self) -> None:
        self.status = ResourceStatus.CREATING
        self.error = None
        self.blocked_by = None
        self.attempts = 0
        self._touch()

    def mark_ready(self, provider_id: str, spec_hash: str,
                   outputs: Optional[dict] = None, attempts: int = 1) -> None:
        self.status = ResourceStatus.READY
        self.provider_id = provider_id
        self.spec_hash = spec_hash
        self.outputs = dict(outputs or {})
        self.attempts = attempts
        self.error = None
        self._touch()

    def fail(self, error: str, attempts: int = 0) -> None:
        self.status = ResourceStatus.FAILED
        self.error = error
        self.attempts = attempts
        self._touch()

    def block(self, dependency: str) -> None:
        """Record that a failed dependency kept this resource from running.

        Status is left as it was; only the reason is recorded.
        """
        self.blocked_by = dependency
        self.error = f"blocked: '{dependency}' did not settle"
        self.attempts = 0
        self._touch()

    def begin_delete(self) -> None:
        self.status = ResourceStatus.DELETING
        self.error = None
        self.blocked_by = None
        self.attempts = 0
        self._touch()

    def mark_deleted(self, attempts: int = 1) -> None:
        self.status = ResourceStatus.DELETED
        self.attempts = attempts
        self.error = None
        self.outputs = {}
        self._touch()

    @property
    def exists(self) -> bool:
        """True while the provider may still hold this resource."""
        return self.provider_id is not None and self.status != ResourceStatus.DELETED

    def copy(self) -> 'ResourceState':
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'kind': self.kind,
            'status': self.status.value,
        }
        if self.provider_id is not None:
            d['provider_id'] = self.provider_id
        if self.spec_hash is not None:
            d['spec_hash'] = self.spec_hash
        if self.error is not None:
            d['error'] = self.error
        if self.attempts:
            d['attempts'] = self.attempts
        if self.dependencies:
            d['dependencies'] = list(self.dependencies)
        if self.outputs:
            d['outputs'] = dict(self.outputs)
        if self.blocked_by is not None:
            d['blocked_by'] = self.blocked_by
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceState':
        return cls(
            name=data['name'],
            kind=data.get('kind', ''),
            status=ResourceStatus(data.get('status', 'pending')),
            provider_id=data.get('provider_id'),
            spec_hash=data.get('spec_hash'),
            error=data.get('error'),
            attempts=data.get('attempts', 0),
            dependencies=list(data.get('dependencies', [])),
            outputs=dict(data.get('outputs', {})),
            blocked_by=data.get('blocked_by'),
            updated_at=data.get('updated_at'),
        )


@dataclass
class DeploymentState:
    """All resource states of one deployment.

    Attributes:
        deployment_id: Deployment name
        resources: Logical name → ResourceState
        version: Incremented on every commit
        updated_at: Timestamp of the last commit
    """
    deployment_id: str
    resources: dict[str, ResourceState] = field(default_factory=dict)
    version: int = 0
    updated_at: Optional[float] = None

    def get(self, name: str) -> Optional[ResourceState]:
        return self.resources.get(name)

    def copy(self) -> 'DeploymentState':
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            'deployment_id': self.deployment_id,
            'version': self.version,
            'updated_at': self.updated_at,
            'resources': {name: rs.to_dict() for name, rs in self.resources.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'DeploymentState':
        return cls(
            deployment_id=data['deployment_id'],
            resources={
                name: ResourceState.from_dict(rs)
                for name, rs in (data.get('resources') or {}).items()
            },
            version=int(data.get('version', 0)),
            updated_at=data.get('updated_at'),
        )


class StateStore:
    """Durable record of provisioned resources.

    Each commit writes the whole deployment state to a temp file, fsyncs it
    and renames it over state.json, so readers always see the state as of
    the last completed commit. The in-memory copy is only replaced after the
    write succeeds.
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self._lock = threading.Lock()
        self._state: Optional[DeploymentState] = None

    def _deployment_dir(self, deployment_id: str) -> Path:
        return self.state_dir / deployment_id

    @property
    def path(self) -> Path:
        return self._deployment_dir(self._require_loaded().deployment_id) / STATE_FILE

    def load(self, deployment_id: str) -> DeploymentState:
        """Load state for a deployment (empty state on first deployment).

        Raises:
            StateStoreError: If the state file exists but cannot be read
        """
        path = self._deployment_dir(deployment_id) / STATE_FILE
        if not path.exists():
            logger.debug(f"No state at {path}; starting empty")
            state = DeploymentState(deployment_id=deployment_id)
        else:
            try:
                with open(path, encoding='utf-8') as f:
                    state = DeploymentState.from_dict(json.load(f))
            except (OSError, ValueError, KeyError) as e:
                raise StateStoreError(f"Cannot read state from {path}: {e}") from e
            if state.deployment_id != deployment_id:
                raise StateStoreError(
                    f"State at {path} belongs to deployment '{state.deployment_id}'"
                )
            logger.debug(f"Loaded state v{state.version} from {path}")

        with self._lock:
            self._state = state
            return state.copy()

    def commit(self, name: str, resource_state: ResourceState) -> None:
        """Persist one resource's state transition before returning.

        Raises:
            StateStoreError: If the state cannot be written
        """
        if resource_state.name != name:
            raise StateStoreError(f"Cannot commit state of '{resource_state.name}' as '{name}'")

        with self._lock:
            current = self._require_loaded()
            updated = DeploymentState(
                deployment_id=current.deployment_id,
                resources=dict(current.resources),
                version=current.version + 1,
                updated_at=time.time(),
            )
            updated.resources[name] = resource_state.copy()
            self._write(updated)
            self._state = updated
        logger.debug(f"Committed {name}={resource_state.status.value} (v{updated.version})")

    def snapshot(self) -> DeploymentState:
        """Read-only copy of the committed state."""
        with self._lock:
            return self._require_loaded().copy()

    def get(self, name: str) -> Optional[ResourceState]:
        """Committed state of one resource (a copy), or None."""
        with self._lock:
            rs = self._require_loaded().get(name)
            return rs.copy() if rs is not None else None

    def _require_loaded(self) -> DeploymentState:
        if self._state is None:
            raise StateStoreError("No deployment loaded; call load() first")
        return self._state

    def _write(self, state: DeploymentState) -> None:
        """Atomic, durable write (caller holds the lock)."""
        directory = self._deployment_dir(state.deployment_id)
        path = directory / STATE_FILE
        tmp = directory / f'{STATE_FILE}.tmp'
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with open(tmp, 'w', encoding='utf-8') as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
            _fsync_dir(directory)
        except OSError as e:
            raise StateStoreError(f"Cannot write state to {path}: {e}") from e

    @contextmanager
    def lock(self, deployment_id: str) -> Iterator[None]:
        """Hold the deployment lock for the duration of a run.

        A lock left behind by a process that no longer exists is taken over.

        Raises:
            StateLockError: If another live process holds the lock, or its owner pid is unreadable
        """
        directory = self._deployment_dir(deployment_id)
        lock_path = directory / LOCK_FILE
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateStoreError(f"Cannot create state directory {directory}: {e}") from e

        _acquire_lock_file(lock_path)
        try:
            yield
        finally:
            try:
                lock_path.unlink()
            except FileNotFoundError:
                pass


def _acquire_lock_file(lock_path: Path) -> None:
    """Publish a lock file that already holds our pid.

    The pid is written to a private file first and hard-linked into place,
    so a lock file never exists without its owner's pid. Only a lock whose
    recorded process is gone is taken over.
    """
    tmp = lock_path.with_name(f'{lock_path.name}.{os.getpid()}.{threading.get_ident()}')
    try:
        tmp.write_text(str(os.getpid()))
    except OSError as e:
        raise StateStoreError(f"Cannot create lock {lock_path}: {e}") from e

    try:
        for _ in range(3):
            try:
                os.link(tmp, lock_path)
                return
            except FileExistsError:
                pass
            except OSError as e:
                raise StateStoreError(f"Cannot create lock {lock_path}: {e}") from e

            try:
                holder = _read_lock_pid(lock_path)
            except FileNotFoundError:
                continue  # released meanwhile
            if holder is None:
                raise StateLockError(
                    f"Deployment lock {lock_path} has no readable owner pid; "
                    "remove it if no run is active"
                )
            if _pid_alive(holder):
                raise StateLockError(f"Deployment is locked by process {holder} ({lock_path})")

            logger.warning(f"Removing stale lock {lock_path} (pid {holder})")
            try:
                if _read_lock_pid(lock_path) == holder:
                    lock_path.unlink()
            except FileNotFoundError:
                pass
        raise StateLockError(f"Could not acquire {lock_path}")
    finally:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass


def _read_lock_pid(lock_path: Path) -> Optional[int]:
    """Pid recorded in a lock file; None if it cannot be read as one.

    Raises:
        FileNotFoundError: If the lock file no longer exists
    """
    try:
        return int(lock_path.read_text().strip())
    except FileNotFoundError:
        raise
    except (OSError, ValueError):
        return None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _fsync_dir(directory: Path) -> None:
    """Flush a directory entry after rename (POSIX only)."""
    if not hasattr(os, 'O_DIRECTORY'):
        return
    fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
