"""Persisted registry of outstanding locks.

A lock whose release never happened (process killed, unlock rejected) stays on
the backend until its session ends. The registry keeps enough to find and
release such locks later.
"""

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from config import env_manager
from .types import LockLease, ObjectDescriptor, short_handle

logger = logging.getLogger(__name__)


class LockRecord(BaseModel):
    session_id: str
    lock_handle: str
    object_type: str
    object_name: str
    parent_name: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)
    pid: int = Field(default_factory=os.getpid)


def _key(object_type: str, object_name: str, parent_name: Optional[str] = None) -> str:
    return f"{object_type.lower()}:{(parent_name or '').upper()}:{object_name.upper()}"


class LockRegistry:
    """JSON file of lock records keyed by object"""

    def __init__(self, path: Optional[str] = None, enabled: Optional[bool] = None):
        self.path = Path(path or env_manager.get_lock_registry_path())
        self.enabled = env_manager.is_lock_registry_enabled() if enabled is None else enabled

    def _load(self) -> Dict[str, LockRecord]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return {key: LockRecord(**value) for key, value in raw.items()}
        except (OSError, ValueError, TypeError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable lock registry {self.path}: {e}")
            return {}

    def _save(self, records: Dict[str, LockRecord]) -> None:
        """Write to a temp file beside the registry, then swap it into place"""
        payload = {key: record.model_dump() for key, record in records.items()}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent), text=True
            )
        except OSError as e:
            logger.warning(f"Could not write lock registry {self.path}: {e}")
            return
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(temp_path, self.path)
        except OSError as e:
            logger.warning(f"Could not write lock registry {self.path}: {e}")
            os.unlink(temp_path)

    def register(self, lease: LockLease) -> None:
        if not self.enabled:
            return
        descriptor = lease.descriptor
        records = self._load()
        records[_key(descriptor.kind, descriptor.name, descriptor.parent_name)] = LockRecord(
            session_id=lease.session_id,
            lock_handle=lease.handle,
            object_type=descriptor.kind,
            object_name=descriptor.name,
            parent_name=descriptor.parent_name,
            timestamp=lease.acquired_at,
        )
        self._save(records)
        logger.debug(
            f"Registered lock {lease.short_handle} for {descriptor.label}"
        )

    def remove(self, descriptor: ObjectDescriptor) -> None:
        if not self.enabled:
            return
        records = self._load()
        record = records.pop(_key(descriptor.kind, descriptor.name, descriptor.parent_name), None)
        if record is not None:
            self._save(records)
            logger.debug(
                f"Removed lock {short_handle(record.lock_handle)} for {descriptor.label}"
            )

    def find(self, descriptor: ObjectDescriptor) -> Optional[LockRecord]:
        if not self.enabled:
            return None
        return self._load().get(_key(descriptor.kind, descriptor.name, descriptor.parent_name))

    def list_locks(self) -> List[LockRecord]:
        if not self.enabled:
            return []
        return sorted(self._load().values(), key=lambda record: record.timestamp)
