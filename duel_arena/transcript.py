"""
对话转录：只追加的纯文本 conversation.log + 结构化事件 events.jsonl。

条目格式：

    [2026-01-01 12:00:00 UTC+8] P1 (Round 3)
    Topic: ...
    Stage: ...
    正文

系统事件同样写成条目（说话人为 SYSTEM，括号内为事件名），并镜像一份到 events.jsonl。
构造模型输入时只读取尾部 context_max_chars 个字符。
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from duel_arena.state_store import append_jsonl, write_text_atomic
from duel_arena.utils.text_utils import format_utc8, now_iso, read_tail, safe_filename

logger = logging.getLogger(__name__)

SYSTEM_SPEAKER = "SYSTEM"
_EMPTY_BODY = "(空)"
_PENDING_TOPIC = "(待定)"

_HEADER_RE = re.compile(r"^\[(?P<ts>[^\]]+)\] (?P<speaker>P1|P2|SYSTEM) \((?P<label>[^)]*)\)$")
_ROUND_RE = re.compile(r"^Round (\d+)$")


def build_conversation_entry(
    persona: str,
    reply: str,
    round_num: int,
    topic: str,
    stage: str | None = None,
    *,
    timestamp: str | None = None,
) -> str:
    stamp = timestamp or format_utc8()
    body = (reply or "").strip() or _EMPTY_BODY
    stage_line = f"Stage: {stage}\n" if stage else ""
    return f"[{stamp}] {persona} (Round {round_num})\nTopic: {topic or _PENDING_TOPIC}\n{stage_line}{body}\n\n"


def build_system_entry(event: str, detail: str, *, timestamp: str | None = None) -> str:
    stamp = timestamp or format_utc8()
    return f"[{stamp}] {SYSTEM_SPEAKER} ({event})\n{(detail or '').strip() or _EMPTY_BODY}\n\n"


def append_and_trim(base: str, addition: str, max_chars: int) -> str:
    """
    把新条目接到上下文尾部，超长时只保留最后 max_chars 个字符。
    """

    prefix = "\n" if base and not base.endswith("\n") else ""
    combined = f"{base or ''}{prefix}{addition or ''}"
    if not max_chars or len(combined) <= max_chars:
        return combined
    return combined[-max_chars:]


@dataclass(frozen=True)
class ConversationEntry:
    timestamp: str
    speaker: str
    label: str
    round: int | None
    topic: str
    stage: str
    body: str


def _finish_entry(header: re.Match, lines: list[str]) -> ConversationEntry:
    speaker = header.group("speaker")
    label = header.group("label")
    m = _ROUND_RE.match(label)
    topic = ""
    stage = ""
    body_lines = list(lines)
    if speaker != SYSTEM_SPEAKER:
        if body_lines and body_lines[0].startswith("Topic: "):
            topic = body_lines.pop(0)[len("Topic: "):]
        if body_lines and body_lines[0].startswith("Stage: "):
            stage = body_lines.pop(0)[len("Stage: "):]
    return ConversationEntry(
        timestamp=header.group("ts"),
        speaker=speaker,
        label=label,
        round=int(m.group(1)) if m else None,
        topic=topic,
        stage=stage,
        body="\n".join(body_lines).strip(),
    )


def parse_conversation(text: str) -> list[ConversationEntry]:
    """
    把转录文本解析为条目列表；被尾部截断的首个残缺条目会被丢弃。
    """

    entries: list[ConversationEntry] = []
    header: re.Match | None = None
    lines: list[str] = []
    for line in (text or "").splitlines():
        m = _HEADER_RE.match(line)
        if m:
            if header is not None:
                entries.append(_finish_entry(header, lines))
            header = m
            lines = []
            continue
        if header is not None:
            lines.append(line)
    if header is not None:
        entries.append(_finish_entry(header, lines))
    return entries


class ConversationLog:
    """
    conversation.log 的读写与归档。
    """

    def __init__(self, path: Path, *, archive_dir: Path, events_path: Path) -> None:
        self.path = path
        self.archive_dir = archive_dir
        self.events_path = events_path

    def ensure(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text("", encoding="utf-8")

    def _append(self, text: str) -> None:
        self.ensure()
        with self.path.open("a", encoding="utf-8") as f:
            f.write(text)

    def append_event(self, event_type: str, payload: dict[str, Any]) -> None:
        append_jsonl(self.events_path, {"ts": now_iso(), "type": event_type, "payload": payload})

    def append_reply(self, persona: str, reply: str, round_num: int, topic: str, stage: str | None = None) -> str:
        entry = build_conversation_entry(persona, reply, round_num, topic, stage)
        self._append(entry)
        self.append_event("message", {"round": round_num, "persona": persona, "topic": topic, "stage": stage, "reply": reply})
        return entry

    def append_system_event(self, event: str, detail: str, payload: dict[str, Any] | None = None) -> None:
        self._append(build_system_entry(event, detail))
        self.append_event("system", {"event": event, "detail": detail, **(payload or {})})
        logger.info("transcript.system_event", extra={"fields": {"event": event, "detail": detail[:200]}})

    def read_tail(self, max_chars: int) -> str:
        return read_tail(self.path, max_chars)

    def read_full(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")

    def entries(self) -> list[ConversationEntry]:
        return parse_conversation(self.read_full())

    def archive(self, session_id: int, topic: str) -> Path | None:
        """
        把当前转录复制到 archives/ 并清空；转录为空时不归档，返回 None。
        """

        content = self.read_full()
        if not content.strip():
            return None
        stamp = now_iso().replace(":", "-").rstrip("Z")
        target = self.archive_dir / f"debate_{session_id}_{stamp}_{safe_filename(topic)}.log"
        write_text_atomic(target, content)
        write_text_atomic(self.path, "")
        logger.info("transcript.archived", extra={"fields": {"session_id": session_id, "path": str(target)}})
        return target
