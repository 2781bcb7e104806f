"""
Atomic JSON persistence and the state directory lock.

Every persisted file (cache entries, session, snapshots, announced
periods) goes through `atomic_write_json`: a reader sees either the old
or the new content, never a half-written file.
"""

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Optional, Union

import portalocker
import structlog

from portal.errors import CacheCorrupt, StateLocked

logger = structlog.get_logger(__name__)


def atomic_write_json(path: Union[str, Path], payload: Any, mode: Optional[int] = None) -> None:
    """
    Write `payload` as JSON to `path` atomically.

    Args:
        path: Destination file
        payload: JSON-serializable data
        mode: Optional permission bits applied before the file becomes visible
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=path.parent,
        delete=False,
    ) as f:
        temp_path = Path(f.name)
        try:
            json.dump(payload, f, ensure_ascii=False, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        except BaseException:
            f.close()
            temp_path.unlink(missing_ok=True)
            raise

    try:
        if mode is not None:
            os.chmod(temp_path, mode)
        temp_path.replace(path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def read_json(path: Union[str, Path]) -> Any:
    """
    Read a JSON file.

    Raises:
        FileNotFoundError: if the file does not exist
        CacheCorrupt: if the file exists but is not valid JSON
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        raise
    except (OSError, ValueError) as e:
        raise CacheCorrupt(path, f"unreadable JSON: {e}") from e


@contextmanager
def state_lock(lock_path: Union[str, Path], timeout: float = 0) -> Generator[Path, None, None]:
    """
    Hold an exclusive advisory lock on the state directory.

    Args:
        lock_path: Lock file inside the state directory
        timeout: Seconds to wait for a concurrent invocation to finish

    Raises:
        StateLocked: if another process keeps the lock past `timeout`
    """
    lock_path = Path(lock_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    lock = portalocker.Lock(
        str(lock_path),
        mode="a",
        timeout=timeout,
        fail_when_locked=timeout <= 0,
        flags=portalocker.LOCK_EX | portalocker.LOCK_NB,
    )
    try:
        lock.acquire()
    except portalocker.exceptions.LockException as e:
        raise StateLocked(f"state directory is locked by another invocation ({lock_path})") from e

    logger.debug("Acquired state lock", path=str(lock_path))
    try:
        yield lock_path
    finally:
        lock.release()
        logger.debug("Released state lock", path=str(lock_path))
