"""Catalog store lockfile (PID + process start time).

Only one process writes to a catalog store at a time. The lockfile records
the owner's pid and start time; a lock whose owner is gone, or whose pid was
reused by a different process, is stale and taken over.
"""

from __future__ import annotations

import getpass
import json
import logging
import os
import socket
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

import psutil

from ..exceptions import FileOperationError, StoreLockedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockInfo:
    pid: int
    process_start_time_utc: str
    created_at_utc: str
    hostname: str
    user: str
    store_path: str


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_process_start_time(pid: int) -> Optional[str]:
    try:
        start_ts = psutil.Process(pid).create_time()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None
    return datetime.fromtimestamp(start_ts, tz=timezone.utc).isoformat()


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def read_lock(path: Path) -> Optional[LockInfo]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        return LockInfo(
            pid=int(payload.get("pid")),
            process_start_time_utc=str(payload.get("process_start_time_utc")),
            created_at_utc=str(payload.get("created_at_utc")),
            hostname=str(payload.get("hostname")),
            user=str(payload.get("user")),
            store_path=str(payload.get("store_path")),
        )
    except (OSError, ValueError, TypeError, AttributeError):
        return None


def is_lock_live(lock: Optional[LockInfo]) -> bool:
    if lock is None or not lock.pid:
        return False
    if lock.hostname != socket.gethostname():
        # Cannot inspect processes on another host; assume the owner is alive.
        return True
    start = get_process_start_time(lock.pid)
    if not start:
        return False
    return start == lock.process_start_time_utc


def acquire_store_lock(lock_path: Path, store_path: Path, *, attempts: int = 3) -> LockInfo:
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    pid = os.getpid()
    info = LockInfo(
        pid=pid,
        process_start_time_utc=get_process_start_time(pid) or _utc_now(),
        created_at_utc=_utc_now(),
        hostname=socket.gethostname(),
        user=_current_user(),
        store_path=str(store_path),
    )

    for _ in range(max(1, attempts)):
        try:
            with lock_path.open("x", encoding="utf-8") as f:
                json.dump(asdict(info), f, indent=2)
            logger.debug("Acquired store lock %s", lock_path)
            return info
        except FileExistsError:
            existing = read_lock(lock_path)
            if existing is not None and existing.pid == pid and existing.hostname == info.hostname:
                raise StoreLockedError(f"Catalog store is already locked by this process (pid={pid})")
            if is_lock_live(existing):
                raise StoreLockedError(
                    f"Catalog store is locked by pid={existing.pid} on {existing.hostname}",
                    details={"lock_path": str(lock_path), "pid": existing.pid},
                )
            logger.warning("Removing stale store lock %s", lock_path)
            lock_path.unlink(missing_ok=True)
        except OSError as exc:
            raise FileOperationError(
                f"Could not create store lock: {exc}", file_path=str(lock_path), operation="lock"
            ) from exc
    raise StoreLockedError(f"Could not acquire store lock {lock_path}")


def release_store_lock(lock_path: Path) -> None:
    existing = read_lock(lock_path)
    if existing is not None and existing.pid != os.getpid():
        logger.warning("Store lock %s belongs to pid=%s; leaving it", lock_path, existing.pid)
        return
    lock_path.unlink(missing_ok=True)


@contextmanager
def store_lock(lock_path: Path, store_path: Path) -> Iterator[LockInfo]:
    info = acquire_store_lock(lock_path, store_path)
    try:
        yield info
    finally:
        release_store_lock(lock_path)
