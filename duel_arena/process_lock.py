"""
单实例建议锁：PID 文件 + 存活检查。

用法：

    with PidLock(state_dir / "agent.lock"):
        orchestrator.run_forever(stop_event)

锁文件内容为 {"pid": ..., "started_at": ...}。已存在且持有者仍存活时抛出 LockContentionError；
持有者已退出（陈旧锁）则接管。退出 with 作用域时只删除属于本进程的锁文件。
"""

from __future__ import annotations

import errno
import json
import logging
import os
from pathlib import Path
from typing import Any

from duel_arena.utils.text_utils import now_iso

logger = logging.getLogger(__name__)


class LockContentionError(RuntimeError):
    def __init__(self, path: Path, pid: int) -> None:
        super().__init__(f"检测到已有运行中的辩论进程 (pid {pid})，锁文件：{path}")
        self.path = path
        self.pid = pid


def is_process_alive(pid: Any) -> bool:
    try:
        pid = int(pid)
    except (TypeError, ValueError):
        return False
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # 进程存在但属于其他用户
        return True
    except OSError:
        return False
    return True


def _read_owner(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


class PidLock:
    def __init__(self, path: Path, *, pid: int | None = None) -> None:
        self.path = path
        self.pid = pid if pid is not None else os.getpid()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _payload(self) -> str:
        return json.dumps({"pid": self.pid, "started_at": now_iso()}, ensure_ascii=False, indent=2)

    def _try_create(self) -> bool:
        try:
            fd = os.open(str(self.path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except OSError as e:
            if e.errno == errno.EEXIST:
                return False
            raise
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(self._payload())
        return True

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self._try_create():
            self._held = True
            logger.info("lock.acquired", extra={"fields": {"path": str(self.path), "pid": self.pid}})
            return

        owner = _read_owner(self.path)
        try:
            owner_pid: int | None = int((owner or {}).get("pid"))
        except (TypeError, ValueError):
            owner_pid = None
        if owner_pid is not None and owner_pid != self.pid and is_process_alive(owner_pid):
            raise LockContentionError(self.path, owner_pid)

        logger.warning("lock.stale_taken_over", extra={"fields": {"path": str(self.path), "previous": owner}})
        self.path.unlink(missing_ok=True)
        if not self._try_create():
            owner = _read_owner(self.path) or {}
            raise LockContentionError(self.path, int(owner.get("pid") or 0))
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        owner = _read_owner(self.path)
        if owner is not None and owner.get("pid") == self.pid:
            self.path.unlink(missing_ok=True)
        self._held = False
        logger.info("lock.released", extra={"fields": {"path": str(self.path)}})

    def __enter__(self) -> "PidLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
