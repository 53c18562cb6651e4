"""
State store: the durable record of last-applied resources.

Every write must happen while the caller holds the store's lock, which
is taken once for the whole of a plan's execution. A second holder is
refused with ConcurrentModificationError.
"""
import getpass
import json
import os
import socket
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional

from converge.errors import ConcurrentModificationError, StateCorruptionError
from converge.models.state import LockInfo, StateRecord

SCHEMA_VERSION = 1
_POLL_INTERVAL = 0.2


def _who() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}"


class StateStore:
    """Base store. Subclasses provide loading, flushing and the lock primitive."""

    def __init__(self):
        self._guard = threading.RLock()
        self._records: Optional[Dict[str, StateRecord]] = None
        self._held: Optional[LockInfo] = None
        self.serial = 0
        self.lineage = str(uuid.uuid4())

    # -------------------------------------------------------- hooks
    def _load(self) -> Dict[str, StateRecord]:
        return {}

    def _flush(self, records: Dict[str, StateRecord]) -> None:
        pass

    def _acquire(self, info: LockInfo) -> Optional[LockInfo]:
        """Take the lock; return the current holder instead if it is taken."""
        raise NotImplementedError

    def _release(self, info: LockInfo) -> None:
        raise NotImplementedError

    def _on_acquire(self) -> None:
        # pick up writes made by the previous holder
        self._records = None

    # -------------------------------------------------------- reads
    def _ensure_loaded(self) -> Dict[str, StateRecord]:
        with self._guard:
            if self._records is None:
                self._records = self._load()
            return self._records

    def get(self, identity: str) -> Optional[StateRecord]:
        with self._guard:
            return self._ensure_loaded().get(identity)

    def identities(self) -> List[str]:
        with self._guard:
            return list(self._ensure_loaded())

    def records(self) -> Dict[str, StateRecord]:
        with self._guard:
            return dict(self._ensure_loaded())

    # -------------------------------------------------------- writes
    def _check_locked(self) -> None:
        if self._held is None:
            raise ConcurrentModificationError("state must be locked before it is written")

    def put(self, identity: str, record: StateRecord) -> None:
        with self._guard:
            self._check_locked()
            records = self._ensure_loaded()
            records[identity] = record
            self.serial += 1
            self._flush(records)

    def remove(self, identity: str) -> None:
        with self._guard:
            self._check_locked()
            records = self._ensure_loaded()
            if records.pop(identity, None) is not None:
                self.serial += 1
                self._flush(records)

    # -------------------------------------------------------- locking
    @property
    def locked(self) -> bool:
        return self._held is not None

    @contextmanager
    def lock(self, operation: str = "apply", timeout: float = 0.0) -> Iterator[LockInfo]:
        """Hold the exclusive lock for the duration of the block."""
        info = LockInfo(
            lock_id=str(uuid.uuid4()),
            operation=operation,
            who=_who(),
            created=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        )
        deadline = time.monotonic() + timeout
        while True:
            with self._guard:
                holder = self._acquire(info)
                if holder is None:
                    self._held = info
                    self._on_acquire()
                    break
            if time.monotonic() >= deadline:
                raise ConcurrentModificationError(
                    f"state is locked by {holder.who} ({holder.operation}, "
                    f"id {holder.lock_id}, since {holder.created})"
                )
            time.sleep(_POLL_INTERVAL)
        try:
            yield info
        finally:
            with self._guard:
                self._held = None
                self._release(info)


class MemoryStateStore(StateStore):
    """In-process store; the lock is exclusive per instance."""

    def __init__(self, records: Optional[Dict[str, StateRecord]] = None):
        super().__init__()
        self._records = dict(records or {})
        self._lock_holder: Optional[LockInfo] = None
        self._lock_guard = threading.Lock()

    def _on_acquire(self) -> None:
        pass

    def _acquire(self, info: LockInfo) -> Optional[LockInfo]:
        with self._lock_guard:
            if self._lock_holder is not None:
                return self._lock_holder
            self._lock_holder = info
            return None

    def _release(self, info: LockInfo) -> None:
        with self._lock_guard:
            if self._lock_holder is not None and self._lock_holder.lock_id == info.lock_id:
                self._lock_holder = None


class LocalStateStore(StateStore):
    """
    JSON state file with a sibling ``.lock`` file.

    Layout::

        {"version": 1, "serial": 7, "lineage": "...", "resources": {identity: record}}
    """

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        self.lock_path = f"{path}.lock"

    def _load(self) -> Dict[str, StateRecord]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, encoding="utf-8") as fh:
                doc = json.load(fh)
        except ValueError as exc:
            raise StateCorruptionError(f"{self.path}: not valid JSON: {exc}") from exc
        except OSError as exc:
            raise StateCorruptionError(f"{self.path}: unreadable: {exc}") from exc

        if not isinstance(doc, dict) or "version" not in doc:
            raise StateCorruptionError(f"{self.path}: missing schema version")
        version = doc["version"]
        if not isinstance(version, int) or version < 1:
            raise StateCorruptionError(f"{self.path}: invalid schema version {version!r}")
        if version > SCHEMA_VERSION:
            raise StateCorruptionError(
                f"{self.path}: written by a newer converge (schema {version}, "
                f"this version understands {SCHEMA_VERSION})"
            )
        resources = doc.get("resources", {})
        if not isinstance(resources, dict):
            raise StateCorruptionError(f"{self.path}: 'resources' must be a mapping")

        self.serial = int(doc.get("serial", 0))
        self.lineage = str(doc.get("lineage") or self.lineage)
        return {identity: StateRecord.from_dict(identity, data) for identity, data in resources.items()}

    def _flush(self, records: Dict[str, StateRecord]) -> None:
        doc = {
            "version": SCHEMA_VERSION,
            "serial": self.serial,
            "lineage": self.lineage,
            "resources": {identity: records[identity].to_dict() for identity in sorted(records)},
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        tmp = f"{self.path}.{os.getpid()}.tmp"
        with open(tmp, "w", encoding="utf-8", newline="\n") as fh:
            json.dump(doc, fh, indent=2, sort_keys=True)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, self.path)

    def current_lock(self) -> Optional[LockInfo]:
        try:
            with open(self.lock_path, encoding="utf-8") as fh:
                return LockInfo.from_dict(json.load(fh))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return LockInfo(lock_id="?", operation="?", who="?", created="?")

    def _acquire(self, info: LockInfo) -> Optional[LockInfo]:
        os.makedirs(os.path.dirname(os.path.abspath(self.lock_path)), exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return self.current_lock() or LockInfo("?", "?", "?", "?")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(info.to_dict(), fh)
        return None

    def _release(self, info: LockInfo) -> None:
        holder = self.current_lock()
        if holder is not None and holder.lock_id == info.lock_id:
            os.remove(self.lock_path)

    def force_unlock(self, lock_id: str) -> None:
        holder = self.current_lock()
        if holder is None:
            raise ConcurrentModificationError("state is not locked")
        if holder.lock_id != lock_id:
            raise ConcurrentModificationError(
                f"lock id {lock_id} does not match the current lock {holder.lock_id}"
            )
        os.remove(self.lock_path)
