"""
辩手 Agent：P1（正方）/ P2（反方）共用逻辑，通过人设配置注入风格差异。

每轮一次模型调用，要求输出 JSON：
- reply：本轮发言（会被硬裁剪到阶段字数上限）
- topic：可选，总结陈词时为下一场提议的辩题
- plan_update：可选，计划文档操作（add/del/change）
- experience_update：可选，经验笔记（仅在总结陈词时收集）

失败语义：
- 传输失败：TransportError 向上抛出，由编排器放弃整轮；
- 输出为空或无法解析：先按“字段：内容”的行格式兜底提取，仍失败则用占位发言代替，不重试。
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any

from duel_arena.agents.judge import RoundEvaluation
from duel_arena.config_loader import LlmSettings, PersonaProfile, opponent_of
from duel_arena.llm_factory import ChatModelClient
from duel_arena.stages import Stage, format_length_guide, stage_length_guide
from duel_arena.utils.json_utils import try_extract_json_object
from duel_arena.utils.text_utils import clip_chars

logger = logging.getLogger(__name__)

PARSE_FAILURE_REPLY = "(模型输出无法解析，本轮以占位发言代替)"
EMPTY_REPLY = "(无回复)"

_REPLY_KEYS = ("reply", "response", "发言")
_FALLBACK_FIELDS = ("reply", "发言", "topic", "辩题")


@dataclass(frozen=True)
class TurnContext:
    """
    构造一次辩手调用所需的全部上下文（由编排器组装）。
    """

    round_num: int
    session_id: int
    stage: Stage
    stage_index: int
    total_stages: int
    topic: str
    conversation: str
    plan: str = ""
    experience: str = ""
    evaluation: RoundEvaluation | None = None
    policy_context: dict[str, Any] | None = None
    max_chars: int | None = None
    is_session_start: bool = False
    is_session_end: bool = False


@dataclass
class PersonaTurnResult:
    persona: str
    reply: str
    proposed_topic: str = ""
    plan_ops: list[Any] = field(default_factory=list)
    experience_notes: list[str] = field(default_factory=list)
    transport_error: str = ""
    parse_error: bool = False
    raw_text: str = ""
    usage: dict[str, int] | None = None


def _normalize_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]
    if isinstance(value, str) and value.strip():
        return [line.lstrip("-*").strip() for line in value.splitlines() if line.lstrip("-*").strip()]
    return []


def _normalize_updates(value: Any) -> list[Any]:
    if isinstance(value, list):
        out: list[Any] = []
        for item in value:
            if isinstance(item, str) and item.strip():
                out.append(item.strip())
            elif isinstance(item, dict):
                out.append(item)
        return out
    if isinstance(value, dict):
        return [value]
    return _normalize_list(value)


def extract_fields_fallback(text: str, keys: tuple[str, ...]) -> dict[str, str]:
    """
    模型没有给出 JSON 时，尝试按“字段：内容”的行格式提取（兼容 **字段**： 与 > 引用前缀）。
    """

    t = (text or "").strip()
    if not t:
        return {}
    out: dict[str, str] = {}
    current: str | None = None
    for line in t.splitlines():
        s = line.strip()
        if not s:
            continue
        if s.startswith(">"):
            s = s.lstrip(">").strip()
        matched = None
        for k in keys:
            if s.startswith(f"**{k}**：") or s.startswith(f"**{k}**:") or s.startswith(f"{k}：") or s.startswith(f"{k}:"):
                matched = k
                break
        if matched:
            current = matched
            sep = "：" if "：" in s else ":"
            value = s.split(sep, 1)[1].strip()
            out[current] = (out.get(current, "") + ("\n" if out.get(current) else "") + value).strip()
            continue
        if current:
            out[current] = (out.get(current, "") + "\n" + s).strip()
    return {k: v for k, v in out.items() if v}


def parse_persona_response(raw: str) -> dict[str, Any]:
    """
    解析模型输出。返回 dict：reply / topic / plan_update / experience_update / parse_error。
    """

    text = (raw or "").strip()
    if not text:
        return {"reply": "", "topic": "", "plan_update": [], "experience_update": [], "parse_error": True}

    data = try_extract_json_object(text)
    if data is None:
        fields = extract_fields_fallback(text, _FALLBACK_FIELDS)
        reply = fields.get("reply") or fields.get("发言") or ""
        return {
            "reply": reply,
            "topic": fields.get("topic") or fields.get("辩题") or "",
            "plan_update": [],
            "experience_update": [],
            "parse_error": not reply,
        }

    reply = ""
    for key in _REPLY_KEYS:
        if isinstance(data.get(key), str) and data[key].strip():
            reply = data[key].strip()
            break
    updates = data.get("plan_update") or data.get("planUpdate") or data.get("identity_update") or []
    notes = data.get("experience_update") or data.get("experienceUpdate") or []
    return {
        "reply": reply,
        "topic": str(data.get("topic") or "").strip(),
        "plan_update": _normalize_updates(updates),
        "experience_update": _normalize_list(notes),
        "parse_error": not reply,
    }


def _format_scores(scores: dict[str, float] | None) -> str:
    if not scores:
        return "(暂无)"
    return "，".join(f"{k} {v:g}" for k, v in scores.items())


class PersonaAgent:
    """
    辩手 Agent。

    client: ChatModelClient（可按辩手使用不同模型）
    """

    def __init__(self, profile: PersonaProfile, client: ChatModelClient, settings: LlmSettings) -> None:
        self._profile = profile
        self._client = client
        self._settings = settings

    @property
    def persona(self) -> str:
        return self._profile.key

    @property
    def client(self) -> ChatModelClient:
        return self._client

    def max_tokens_for(self, max_chars: int | None) -> int:
        """
        由字数上限推出生成长度上限：中文约 1.5 token/字，另加 JSON 包装开销。
        """

        if not max_chars:
            return self._settings.max_tokens
        return int(math.ceil(max_chars * self._settings.tokens_per_char)) + self._settings.reply_token_overhead

    def build_prompts(self, ctx: TurnContext) -> tuple[str, str]:
        p = self._profile
        stage = ctx.stage
        opp = opponent_of(p.key)
        guide = format_length_guide(stage_length_guide(stage, p.key))

        system_prompt = f"""你是辩手 {p.key}（{p.side_label}，{p.name}），正在参加一场无人值守的长期辩论。
风格：{p.style or "理性、直接、讲证据"}
你只代表本方发言，不替对方或评委说话。只输出严格 JSON，不要输出任何多余文本。"""

        lines = [
            f"场次：第{ctx.session_id}场，第{ctx.stage_index + 1}/{ctx.total_stages}阶段（全局第{ctx.round_num}轮）",
            f"辩题：{ctx.topic or '(待定)'}",
            f"阶段：{stage.title}（{stage.key}）",
            f"阶段规则：{stage.rule}",
            f"发言顺序：{' → '.join(stage.speaker_order)}",
            f"你的角色：{stage.roles.get(p.key, '')}",
            f"本轮任务：{stage.tasks.get(p.key, '')}",
            f"字数要求：{guide}" + (f"，硬上限 {ctx.max_chars} 字（超出会被截断）" if ctx.max_chars else ""),
            "",
            "【你的计划文档】",
            ctx.plan or "(空)",
            "",
            "【历史经验】",
            ctx.experience or "(空)",
        ]

        if ctx.evaluation is not None:
            mine = ctx.evaluation.scores.get(p.key)
            theirs = ctx.evaluation.scores.get(opp)
            lines += [
                "",
                "【上一轮评委反馈】",
                f"胜方：{ctx.evaluation.round_winner}",
                f"你方得分：{_format_scores(mine)}",
                f"对方得分：{_format_scores(theirs)}",
                f"改进建议：{'；'.join(ctx.evaluation.suggestions.get(p.key, [])) or '(无)'}",
            ]
            if ctx.evaluation.core_conflict:
                lines.append(f"核心冲突：{ctx.evaluation.core_conflict}")

        if ctx.policy_context:
            actions = ctx.policy_context.get("actions") or []
            focus = ctx.policy_context.get("focus") or []
            weaknesses = ctx.policy_context.get("weaknesses") or []
            lines += ["", "【本轮战术】"]
            lines += [f"- {a['label']}：{a['desc']}" for a in actions]
            if focus:
                lines.append("重点维度：" + "、".join(f"{f['label']}({f['weight']})" for f in focus))
            if weaknesses:
                lines.append("对方薄弱点：" + "；".join(weaknesses))

        lines += ["", "【最近对话】", ctx.conversation or "(无)", ""]

        schema: dict[str, Any] = {
            "reply": "本轮发言",
            "plan_update": ["add: 新要点", "del: 要删除的要点", "change: 旧要点 -> 新要点"],
        }
        if ctx.is_session_end:
            schema["topic"] = "可选：为下一场提议一个新的可辩论题目"
            schema["experience_update"] = ["本场最值得保留的一条经验"]
        lines += [
            "请只输出一个 JSON 对象：",
            json.dumps(schema, ensure_ascii=False, indent=2),
        ]
        return system_prompt, "\n".join(lines)

    def generate_turn(self, ctx: TurnContext) -> PersonaTurnResult:
        """
        生成本轮发言。TransportError 不在此捕获。
        """

        system_prompt, user_prompt = self.build_prompts(ctx)
        result = self._client.chat(
            system_prompt,
            user_prompt,
            max_tokens=self.max_tokens_for(ctx.max_chars),
            temperature=self._settings.temperature,
        )
        parsed = parse_persona_response(result.content)
        if parsed["parse_error"]:
            logger.warning(
                "persona.output.unparseable",
                extra={"fields": {"persona": self.persona, "round": ctx.round_num, "raw": result.content[:300]}},
            )
            reply = PARSE_FAILURE_REPLY if result.content.strip() else EMPTY_REPLY
        else:
            reply = parsed["reply"]

        return PersonaTurnResult(
            persona=self.persona,
            reply=clip_chars(reply, ctx.max_chars),
            proposed_topic=parsed["topic"],
            plan_ops=parsed["plan_update"],
            experience_notes=parsed["experience_update"],
            parse_error=bool(parsed["parse_error"]),
            raw_text=result.content,
            usage=result.usage,
        )
