"""
持久化小工具：原子写 JSON / 文本、读 JSON、追加 JSONL。

所有持久状态（status.json / policy.json / dynamics.json）都经过 write_json_atomic：
先写同目录临时文件，再 os.replace 覆盖，进程中途被杀也不会留下半截文件。
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


def write_json_atomic(path: Path, data: Any) -> None:
    write_text_atomic(path, json.dumps(data, ensure_ascii=False, indent=2) + "\n")


def read_json(path: Path, default: Any = None) -> Any:
    """
    读取 JSON 文件；文件不存在或内容损坏时返回 default（损坏会记录告警）。
    """

    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("state.read_failed", extra={"fields": {"path": str(path), "error": str(e)}})
        return default


def append_jsonl(path: Path, record: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    out: list[dict[str, Any]] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            out.append(obj)
    return out


class StatePaths:
    """
    state 目录下各持久文件的位置。
    """

    def __init__(self, state_dir: Path, *, archive_dir_name: str = "archives", lock_file: str = "agent.lock") -> None:
        self.state_dir = state_dir
        self.archive_dir = state_dir / archive_dir_name
        self.lock = state_dir / lock_file

    @property
    def status(self) -> Path:
        return self.state_dir / "status.json"

    @property
    def policy(self) -> Path:
        return self.state_dir / "policy.json"

    @property
    def policy_history(self) -> Path:
        return self.state_dir / "policy_history.jsonl"

    @property
    def dynamics(self) -> Path:
        return self.state_dir / "dynamics.json"

    @property
    def conversation(self) -> Path:
        return self.state_dir / "conversation.log"

    @property
    def events(self) -> Path:
        return self.state_dir / "events.jsonl"

    @property
    def experience(self) -> Path:
        return self.state_dir / "experience.md"
