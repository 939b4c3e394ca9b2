"""
评委 Agent：对每一轮交锋做五维评分，并在一场辩论结束时给出总评。

约定：
- 评分维度固定为 logic / evidence / responsiveness / expression / rule_compliance，每项 1-10 分；
- 平均分由代码重新计算，不信任模型自报的 averages；
- 评委不可用（传输失败或输出无法解析）时返回 None，而不是默认分：
  编排器据此跳过本轮的策略更新，避免用“假分数”训练策略。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from duel_arena.config_loader import PERSONAS, LlmSettings
from duel_arena.llm_factory import ChatModelClient, TransportError
from duel_arena.utils.json_utils import try_extract_json_object

logger = logging.getLogger(__name__)

SCORE_DIMS: tuple[str, ...] = ("logic", "evidence", "responsiveness", "expression", "rule_compliance")

# 模型偶尔沿用 A/B 称呼双方
_PERSONA_ALIASES = {"P1": ("P1", "A", "正方"), "P2": ("P2", "B", "反方")}

_ROUND_SYSTEM_PROMPT = """你是一位专业辩论评委，具有丰富的辩论赛事经验。你需要客观、公正、中立地评估双方的表现。

评估维度（每项1-10分，10分为满分）：
1. 论点逻辑性（logic）：论点是否清晰、逻辑严密、论证链条完整
2. 证据充分性（evidence）：是否有充分的事实、数据、理论支撑
3. 反应敏锐度（responsiveness）：是否有效回应对方观点，是否抓住对方漏洞
4. 语言表达（expression）：表达是否清晰流畅、有感染力、符合规范
5. 规则遵守（rule_compliance）：是否符合阶段规则（如提问只提问，回答只回答）

评分标准：
- 9-10分：优秀，表现突出，无明显瑕疵
- 7-8分：良好，整体表现不错，有小瑕疵
- 5-6分：一般，表现中规中矩，有明显不足
- 3-4分：较差，存在较多问题
- 1-2分：极差，严重违反规则或完全不合格

你还需要：
1. 判定本轮胜方（P1/P2/tie）
2. 指出双方的关键亮点（每方最多3条）
3. 给出改进建议（每方最多3条）
4. 用一句话概括本轮的核心冲突

输出严格JSON格式，不要包含任何其他文本。"""

_ROUND_SCHEMA = """{
  "scores": {
    "P1": {"logic": 0, "evidence": 0, "responsiveness": 0, "expression": 0, "rule_compliance": 0},
    "P2": {"logic": 0, "evidence": 0, "responsiveness": 0, "expression": 0, "rule_compliance": 0}
  },
  "round_winner": "P1/P2/tie",
  "highlights": {"P1": ["亮点1"], "P2": ["亮点1"]},
  "suggestions": {"P1": ["建议1"], "P2": ["建议1"]},
  "core_conflict": "本轮核心冲突"
}"""

_DEBATE_SYSTEM_PROMPT = """你是一位资深辩论总评委，具有多年国际辩论赛事裁判经验。你需要对整场辩论进行综合评估，判定胜负并给出详细分析。

你的任务：
1. 判定整场辩论的胜负（正方P1 / 反方P2 / 平局tie）
2. 识别关键转折点（辩论局势发生重大变化的时刻）
3. 分析决定性因素（导致胜负的关键因素，最多3个）
4. 总结双方优点（每方最多5条）
5. 指出双方不足（每方最多5条）
6. 给出最终综合评分（每方总分100分）

输出严格JSON格式。"""

_DEBATE_SCHEMA = """{
  "winner": "P1/P2/tie",
  "key_turning_points": [{"round": 1, "description": "转折点描述"}],
  "decisive_factors": ["因素1"],
  "strengths": {"P1": ["优点1"], "P2": ["优点1"]},
  "weaknesses": {"P1": ["不足1"], "P2": ["不足1"]},
  "final_scores": {"P1": 0, "P2": 0},
  "overall_comment": "对整场辩论的整体评价（2-3句话）"
}"""


@dataclass(frozen=True)
class RoundEvaluation:
    """
    单轮评分结果（已归一化）。

    scores: {persona: {dim: 1..10}}
    averages: {persona: 五维均值}
    """

    scores: dict[str, dict[str, float]]
    averages: dict[str, float]
    round_winner: str
    highlights: dict[str, list[str]] = field(default_factory=dict)
    suggestions: dict[str, list[str]] = field(default_factory=dict)
    core_conflict: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "scores": self.scores,
            "averages": self.averages,
            "round_winner": self.round_winner,
            "highlights": self.highlights,
            "suggestions": self.suggestions,
            "core_conflict": self.core_conflict,
        }


def _persona_value(obj: Any, persona: str) -> Any:
    if not isinstance(obj, dict):
        return None
    for alias in _PERSONA_ALIASES[persona]:
        if alias in obj:
            return obj[alias]
    return None


def _clamp_score(value: Any) -> float | None:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    if v != v:
        return None
    return max(1.0, min(10.0, v))


def _string_list(value: Any, limit: int = 3) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [str(x).strip() for x in value if str(x).strip()][:limit]


def _normalize_winner(value: Any, averages: dict[str, float]) -> str:
    text = str(value or "").strip()
    for persona in PERSONAS:
        if text in _PERSONA_ALIASES[persona]:
            return persona
    if text.lower() == "tie" or text == "平局":
        return "tie"
    a, b = averages["P1"], averages["P2"]
    if abs(a - b) < 1e-9:
        return "tie"
    return "P1" if a > b else "P2"


def parse_round_evaluation(data: dict[str, Any] | None) -> RoundEvaluation | None:
    """
    将模型 JSON 归一化为 RoundEvaluation；缺少任一方的完整五维分数时返回 None。
    """

    if not isinstance(data, dict):
        return None
    raw_scores = data.get("scores")
    scores: dict[str, dict[str, float]] = {}
    for persona in PERSONAS:
        details = _persona_value(raw_scores, persona)
        if not isinstance(details, dict):
            return None
        dims: dict[str, float] = {}
        for dim in SCORE_DIMS:
            v = _clamp_score(details.get(dim))
            if v is None:
                return None
            dims[dim] = v
        scores[persona] = dims

    averages = {p: round(sum(scores[p].values()) / len(SCORE_DIMS), 2) for p in PERSONAS}
    return RoundEvaluation(
        scores=scores,
        averages=averages,
        round_winner=_normalize_winner(data.get("round_winner"), averages),
        highlights={p: _string_list(_persona_value(data.get("highlights"), p)) for p in PERSONAS},
        suggestions={p: _string_list(_persona_value(data.get("suggestions"), p)) for p in PERSONAS},
        core_conflict=str(data.get("core_conflict") or "").strip(),
    )


def _normalize_debate_evaluation(data: dict[str, Any]) -> dict[str, Any] | None:
    final_scores: dict[str, float] = {}
    for persona in PERSONAS:
        try:
            v = float(_persona_value(data.get("final_scores"), persona))
        except (TypeError, ValueError):
            return None
        final_scores[persona] = max(0.0, min(100.0, v))

    winner = str(data.get("winner") or "").strip()
    if winner not in ("P1", "P2", "tie"):
        winner = _normalize_winner(winner, final_scores)

    turning_points = []
    for item in data.get("key_turning_points") or []:
        if isinstance(item, dict) and str(item.get("description") or "").strip():
            turning_points.append({"round": item.get("round"), "description": str(item["description"]).strip()})

    return {
        "winner": winner,
        "key_turning_points": turning_points,
        "decisive_factors": _string_list(data.get("decisive_factors")),
        "strengths": {p: _string_list(_persona_value(data.get("strengths"), p), 5) for p in PERSONAS},
        "weaknesses": {p: _string_list(_persona_value(data.get("weaknesses"), p), 5) for p in PERSONAS},
        "final_scores": final_scores,
        "overall_comment": str(data.get("overall_comment") or "").strip(),
    }


class JudgeAgent:
    """
    评委 Agent。

    client: ChatModelClient（测试中可包一层假 LLM）
    """

    def __init__(self, client: ChatModelClient, settings: LlmSettings) -> None:
        self._client = client
        self._settings = settings

    @property
    def client(self) -> ChatModelClient:
        return self._client

    def evaluate_round(
        self,
        *,
        topic: str,
        stage_label: str,
        stage_key: str,
        stage_rule: str,
        replies: dict[str, str],
        round_num: int,
    ) -> RoundEvaluation | None:
        user_prompt = f"""【辩论信息】
主题：{topic or "未设定"}
轮次：{round_num}
阶段：{stage_label} ({stage_key})
阶段规则：{stage_rule or "无特殊规则"}

【正方P1发言】
{replies.get("P1") or "(无发言)"}

【反方P2发言】
{replies.get("P2") or "(无发言)"}

请评估双方表现并输出JSON格式：

{_ROUND_SCHEMA}"""

        try:
            result = self._client.chat(
                _ROUND_SYSTEM_PROMPT,
                user_prompt,
                max_tokens=self._settings.judge_max_tokens,
                temperature=self._settings.judge_temperature,
            )
        except TransportError as e:
            logger.error("judge.round.failed", extra={"fields": {"round": round_num, "error": str(e)}})
            return None

        evaluation = parse_round_evaluation(try_extract_json_object(result.content))
        if evaluation is None:
            logger.error("judge.round.unparseable", extra={"fields": {"round": round_num, "raw": result.content[:500]}})
            return None

        logger.info(
            "judge.round.evaluation",
            extra={"fields": {
                "round": round_num,
                "winner": evaluation.round_winner,
                "avg_p1": evaluation.averages["P1"],
                "avg_p2": evaluation.averages["P2"],
            }},
        )
        return evaluation

    def evaluate_debate(self, *, topic: str, history: str) -> dict[str, Any] | None:
        """
        整场总评；失败返回 None（调用方容忍）。
        """

        user_prompt = f"""【辩论主题】
{topic or "未设定"}

【辩论历史】
{history}

请进行综合评估并输出JSON格式：

{_DEBATE_SCHEMA}"""

        try:
            result = self._client.chat(
                _DEBATE_SYSTEM_PROMPT,
                user_prompt,
                max_tokens=max(self._settings.judge_max_tokens, 3072),
                temperature=self._settings.judge_temperature,
            )
        except TransportError as e:
            logger.error("judge.debate.failed", extra={"fields": {"error": str(e)}})
            return None

        data = try_extract_json_object(result.content)
        final = _normalize_debate_evaluation(data) if data else None
        if final is None:
            logger.error("judge.debate.unparseable", extra={"fields": {"raw": result.content[:500]}})
            return None
        logger.info(
            "judge.debate.evaluation",
            extra={"fields": {"winner": final["winner"], "score_p1": final["final_scores"]["P1"], "score_p2": final["final_scores"]["P2"]}},
        )
        return final
