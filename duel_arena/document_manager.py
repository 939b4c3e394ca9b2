"""
文档管理器：辩手的“计划文档”（plan_p1.md / plan_p2.md）与共享的“经验文档”（experience.md）。

计划文档：
- 每行一条要点，格式为 `- [时间戳] 内容`；
- 模型通过 plan_update 提交操作：`add: x`、`del: x`、`change: a -> b`（也接受 => / →、中文动词或对象形式）；
- 只在一轮成功提交后应用；一场辩论结束时清空。

经验文档：
- 一场辩论结束时追加双方的 experience_update 与评分统计；
- 构造提示词时只读取尾部 experience_max_chars 个字符。
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from duel_arena.config_loader import PERSONAS
from duel_arena.state_store import write_text_atomic
from duel_arena.utils.text_utils import format_utc8, read_tail

logger = logging.getLogger(__name__)

_ADD_VERBS = ("add", "新增", "添加", "补充")
_DEL_VERBS = ("del", "delete", "remove", "删除", "移除")
_CHANGE_VERBS = ("change", "update", "replace", "修改", "变更", "替换")

_ADD_RE = re.compile(r"^(add|新增|添加|补充)\s*[:：]\s*(.+)$", re.I)
_DEL_RE = re.compile(r"^(del|delete|remove|删除|移除)\s*[:：]\s*(.+)$", re.I)
_CHANGE_RE = re.compile(
    r"^(change|update|replace|修改|变更|替换)\s*[:：]\s*(.+?)(?:\s*->\s*|\s*=>\s*|\s*→\s*)(.+)$", re.I
)
_LINE_PREFIX_RE = re.compile(r"^\s*-\s*\[[^\]]+\]\s*(.*)$")


@dataclass(frozen=True)
class PlanOp:
    op: str
    text: str = ""
    old: str = ""

    def describe(self) -> str:
        if self.op == "change":
            return f"change: {self.old} -> {self.text}"
        return f"{self.op}: {self.text}"


def _normalize_verb(value: Any) -> str:
    raw = str(value or "").strip().lower()
    if raw in _ADD_VERBS:
        return "add"
    if raw in _DEL_VERBS:
        return "del"
    if raw in _CHANGE_VERBS:
        return "change"
    return raw


def parse_plan_ops(updates: Any) -> list[PlanOp]:
    """
    把模型给出的 plan_update（字符串 / 对象 / 列表）解析为操作列表。

    无法识别动词的字符串按 add 处理；无法识别的对象被忽略。
    """

    if isinstance(updates, (str, dict)):
        updates = [updates]
    if not isinstance(updates, list):
        return []

    ops: list[PlanOp] = []
    for item in updates:
        if isinstance(item, str):
            text = item.strip().lstrip("-*").strip()
            if not text:
                continue
            m = _CHANGE_RE.match(text)
            if m:
                ops.append(PlanOp("change", text=m.group(3).strip(), old=m.group(2).strip()))
                continue
            m = _DEL_RE.match(text)
            if m:
                ops.append(PlanOp("del", text=m.group(2).strip()))
                continue
            m = _ADD_RE.match(text)
            ops.append(PlanOp("add", text=(m.group(2) if m else text).strip()))
            continue

        if isinstance(item, dict):
            op = _normalize_verb(item.get("op") or item.get("action") or item.get("type"))
            if op in ("add", "del"):
                text = str(item.get("text") or item.get("value") or item.get("content") or "").strip()
                if text:
                    ops.append(PlanOp(op, text=text))
            elif op == "change":
                old = str(item.get("from") or item.get("old") or "").strip()
                new = str(item.get("to") or item.get("new") or item.get("text") or "").strip()
                if old and new:
                    ops.append(PlanOp("change", text=new, old=old))
    return ops


def _strip_prefix(line: str) -> str:
    m = _LINE_PREFIX_RE.match(line or "")
    return m.group(1).strip() if m else (line or "").strip()


def _matches(line: str, query: str) -> bool:
    return bool(line and query) and query.lower() in line.lower()


def apply_plan_ops(lines: list[str], ops: list[PlanOp], timestamp: str) -> tuple[list[str], list[str]]:
    """
    纯函数：对计划行应用操作，返回 (新行列表, 实际生效的操作描述)。

    - del 删除所有包含该文本的行；
    - change 替换第一条匹配行，找不到时追加新行。
    """

    out = list(lines)
    applied: list[str] = []
    for op in ops:
        if op.op == "add" and op.text:
            out.append(f"- [{timestamp}] {op.text}")
            applied.append(op.describe())
        elif op.op == "del" and op.text:
            kept = [line for line in out if not _matches(_strip_prefix(line), op.text)]
            if len(kept) != len(out):
                out = kept
                applied.append(op.describe())
        elif op.op == "change" and op.old and op.text:
            idx = next((i for i, line in enumerate(out) if _matches(_strip_prefix(line), op.old)), None)
            if idx is None:
                out.append(f"- [{timestamp}] {op.text}")
            else:
                out[idx] = f"- [{timestamp}] {op.text}"
            applied.append(op.describe())
    return out, applied


class PlanningDocuments:
    """
    两位辩手的计划文档。
    """

    def __init__(self, state_dir: Path) -> None:
        self._paths = {p: state_dir / f"plan_{p.lower()}.md" for p in PERSONAS}

    def path(self, persona: str) -> Path:
        return self._paths[persona]

    def read(self, persona: str) -> str:
        path = self._paths[persona]
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8").strip()

    def apply(self, persona: str, updates: Any) -> list[str]:
        ops = parse_plan_ops(updates)
        if not ops:
            return []
        lines = [line.strip() for line in self.read(persona).splitlines() if line.strip()]
        new_lines, applied = apply_plan_ops(lines, ops, format_utc8())
        if applied:
            write_text_atomic(self._paths[persona], "\n".join(new_lines) + ("\n" if new_lines else ""))
            logger.info("plan.updated", extra={"fields": {"persona": persona, "applied": applied}})
        return applied

    def reset(self) -> None:
        for path in self._paths.values():
            write_text_atomic(path, "")


class ExperienceBook:
    """
    跨场次积累的经验笔记。
    """

    def __init__(self, path: Path, max_chars: int) -> None:
        self.path = path
        self._max_chars = max_chars

    def read_tail(self) -> str:
        return read_tail(self.path, self._max_chars)

    def append_session_summary(
        self,
        *,
        session_id: int,
        topic: str,
        updates: dict[str, list[str]],
        evaluated_rounds: int,
        cumulative_scores: dict[str, float],
        policy_summary: dict[str, dict[str, float]] | None = None,
    ) -> str:
        """
        追加一场辩论的经验小结与评分统计，返回追加的文本。
        """

        lines = [f"## [{format_utc8()}] Debate {session_id} | Topic: {topic or '(待定)'}"]
        has_updates = False
        for persona in PERSONAS:
            items = [str(x).strip() for x in updates.get(persona) or [] if str(x).strip()]
            if items:
                has_updates = True
                lines.append(f"- {persona}: {'；'.join(items)}")
        if not has_updates:
            lines.append("- (无经验总结)")

        lines.append("")
        lines.append("### 强化学习统计")
        lines.append(f"- 评估轮数: {evaluated_rounds}")
        if evaluated_rounds > 0:
            avg1 = cumulative_scores.get("P1", 0.0) / evaluated_rounds
            avg2 = cumulative_scores.get("P2", 0.0) / evaluated_rounds
            lead = "正方领先" if avg1 > avg2 else ("反方领先" if avg2 > avg1 else "势均力敌")
            lines.append(f"- 正方平均分: {avg1:.2f}/10")
            lines.append(f"- 反方平均分: {avg2:.2f}/10")
            lines.append(
                f"- 累计总分: 正方 {cumulative_scores.get('P1', 0.0):.2f} | 反方 {cumulative_scores.get('P2', 0.0):.2f}"
            )
            lines.append(f"- 表现评估: {lead}")
        for persona, stats in (policy_summary or {}).items():
            lines.append(
                f"- {persona} 策略: 步数 {stats.get('steps', 0)}，平均奖励 {stats.get('avg_reward', 0.0):.3f}，"
                f"基线 {stats.get('baseline', 0.0):.3f}"
            )

        text = "\n".join(lines) + "\n\n"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(text)
        return text
