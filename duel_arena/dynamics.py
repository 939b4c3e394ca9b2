"""
交锋动态：规则版的“动作识别 + 状态机 + 奖励信号”。

输入是一对（对方上一轮发言, 本方本轮发言）与本方技能画像，输出离散动作、下一状态与奖励信号。
全部基于关键词/模式规则，不做学习；关键词可由 config/dynamics_keywords.yaml 扩充。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Action(str, Enum):
    ATTACK_CLAIM = "AttackClaim"
    ATTACK_EVIDENCE = "AttackEvidence"
    FORCE_CLARIFICATION = "ForceClarification"
    DEFLECT = "Deflect"
    CONCEDE_PARTIAL = "ConcedePartial"
    REFRAME = "Reframe"
    COUNTER_QUESTION = "CounterQuestion"
    SUMMARIZE_PRESSURE = "SummarizePressure"
    INTRODUCE_NEW_CLAIM = "IntroduceNewClaim"


class ConversationalState(str, Enum):
    NEUTRAL = "Neutral"
    PRESSURE = "Pressure"
    DEFENSE = "Defense"
    ADVANTAGE = "Advantage"
    COLLAPSE = "Collapse"


# 崩溃只能发生在已经承压/防守的语境中
_COLLAPSE_PRONE = {ConversationalState.PRESSURE, ConversationalState.DEFENSE, ConversationalState.COLLAPSE}

SKILL_MIN = 0.05
SKILL_MAX = 0.95
PRESSURE_AWARENESS_THRESHOLD = 0.45
RECOVERY_THRESHOLD = 0.55
COMMITMENT_RESIST_THRESHOLD = 0.75

DEFAULT_SKILLS: dict[str, float] = {
    "pressure_awareness": 0.6,
    "commitment": 0.6,
    "aggression": 0.6,
    "recovery": 0.6,
    "evidence_control": 0.5,
}

DEFAULT_KEYWORDS: dict[str, list[str]] = {
    "pressure": ["是否", "是不是", "请回答", "能否", "定义", "来源", "条件", "必须", "请说明", "请解释"],
    "defense": ["不能一概而论", "复杂", "不一定", "视情况", "综合来看", "因地制宜", "不好说"],
    "deflect": ["另一方面", "需要更广泛", "话题本身", "更重要的是", "让我们回到"],
    "reframe": ["换个角度", "从另一个角度", "重新定义", "问题的关键在于", "讨论的核心是"],
    "concession": ["我承认", "确实有", "部分同意", "我们同意"],
    "contradiction": ["但是我之前说", "这与我刚才", "自相矛盾", "前后不一致"],
    "inability": ["无法回答", "不知道", "答不上来"],
    "advantage": ["你没有回答", "你回避了", "你没有解释", "你的前提错误"],
    "evidence": ["数据", "证据", "案例", "统计"],
    "claim": ["我方认为", "核心论点", "主张", "定义"],
}

_QUESTION_MARK_RE = re.compile(r"[?？]")
_TOKEN_SPLIT_RE = re.compile(r"[^\u4e00-\u9fffA-Za-z0-9]+")


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def normalize_skills(raw: dict[str, Any] | None) -> dict[str, float]:
    """
    合并默认技能并夹到 [0.05, 0.95]；非数值回落到默认值。
    """

    out: dict[str, float] = {}
    merged = {**DEFAULT_SKILLS, **(raw or {})}
    for key, value in merged.items():
        try:
            v = float(value)
        except (TypeError, ValueError):
            v = DEFAULT_SKILLS.get(key, 0.6)
        if v != v:  # NaN
            v = DEFAULT_SKILLS.get(key, 0.6)
        out[key] = clamp(v, SKILL_MIN, SKILL_MAX)
    return out


def merge_keywords(overrides: dict[str, list[str]] | None) -> dict[str, list[str]]:
    merged = {k: list(v) for k, v in DEFAULT_KEYWORDS.items()}
    for cat, words in (overrides or {}).items():
        bucket = merged.setdefault(cat, [])
        for w in words:
            if w and w not in bucket:
                bucket.append(w)
    return merged


def extract_keywords(text: str, limit: int = 6) -> list[str]:
    """
    粗切出问题中的关键片段（长度 >= 2），用于判断回答是否“沾边”。
    """

    if not text:
        return []
    parts = [p.strip() for p in _TOKEN_SPLIT_RE.split(text)]
    return [p for p in parts if len(p) >= 2][:limit]


def count_hits(text: str, keywords: list[str]) -> int:
    if not text or not keywords:
        return 0
    return sum(1 for kw in keywords if kw and kw in text)


def _low_overlap(question: str, reply: str, min_reply_len: int) -> bool:
    q_words = extract_keywords(question)
    return bool(question) and count_hits(reply, q_words) == 0 and len(reply) > min_reply_len


def classify_action(question: str, reply: str, keywords: dict[str, list[str]] | None = None) -> Action:
    """
    按优先级识别本方动作。

    顺序：让步 → 含糊防守 → 重构 → 抢占优势 → 追问澄清 → 自相矛盾 → 低重合（答非所问）
    → 反问 → 证据/立论关键词 → 兜底为攻击论点。
    """

    kw = keywords or DEFAULT_KEYWORDS
    q = question or ""
    r = reply or ""

    if count_hits(r, kw.get("concession", [])):
        return Action.CONCEDE_PARTIAL
    if count_hits(r, kw.get("defense", [])):
        return Action.DEFLECT
    if count_hits(r, kw.get("reframe", [])):
        return Action.REFRAME
    if count_hits(r, kw.get("advantage", [])):
        return Action.SUMMARIZE_PRESSURE
    if _QUESTION_MARK_RE.search(r) and count_hits(r, kw.get("pressure", [])):
        return Action.FORCE_CLARIFICATION
    if count_hits(r, kw.get("contradiction", [])):
        return Action.DEFLECT
    if _low_overlap(q, r, 120):
        return Action.DEFLECT
    if q and _QUESTION_MARK_RE.search(r):
        return Action.COUNTER_QUESTION
    if count_hits(r, kw.get("evidence", [])):
        return Action.ATTACK_EVIDENCE
    if count_hits(r, kw.get("claim", [])):
        return Action.INTRODUCE_NEW_CLAIM
    return Action.ATTACK_CLAIM


def detect_pressure(question: str, keywords: dict[str, list[str]]) -> bool:
    if not question:
        return False
    if question.rstrip().endswith(("?", "？")):
        return True
    return count_hits(question, keywords.get("pressure", [])) > 0


def detect_deflect(question: str, reply: str, keywords: dict[str, list[str]]) -> bool:
    if not question or not reply:
        return False
    if count_hits(reply, keywords.get("deflect", [])):
        return True
    return len(extract_keywords(question)) >= 2 and _low_overlap(question, reply, 80)


def detect_defense(reply: str, keywords: dict[str, list[str]]) -> bool:
    return count_hits(reply, keywords.get("defense", [])) > 0


def detect_collapse(reply: str, keywords: dict[str, list[str]]) -> bool:
    if not reply:
        return False
    return bool(count_hits(reply, keywords.get("contradiction", [])) or count_hits(reply, keywords.get("inability", [])))


def detect_advantage(reply: str, keywords: dict[str, list[str]]) -> bool:
    return count_hits(reply, keywords.get("advantage", [])) > 0


def compute_next_state(
    prev_state: ConversationalState | None,
    question: str,
    reply: str,
    skills: dict[str, Any] | None,
    keywords: dict[str, list[str]] | None = None,
) -> ConversationalState:
    """
    状态机：

    - Collapse：出现矛盾/答不上来，且此前已处于承压或防守语境，commitment 不足以顶住；
    - Advantage：出现“你没有回答”等抢占优势的话术；
    - 被质询且 pressure_awareness 够高：含糊/回避 → Defense；recovery 高且未回避 → Advantage；否则 Pressure；
    - 未被质询但含糊/回避 → Defense；
    - 其余保持原状态。
    """

    kw = keywords or DEFAULT_KEYWORDS
    prev = prev_state or ConversationalState.NEUTRAL
    s = normalize_skills(skills)

    pressured = detect_pressure(question, kw)
    deflect = detect_deflect(question, reply, kw)
    defense = detect_defense(reply, kw)

    if detect_collapse(reply, kw):
        if prev in _COLLAPSE_PRONE and s["commitment"] < COMMITMENT_RESIST_THRESHOLD:
            return ConversationalState.COLLAPSE
        defense = True

    if detect_advantage(reply, kw):
        return ConversationalState.ADVANTAGE

    if pressured and s["pressure_awareness"] >= PRESSURE_AWARENESS_THRESHOLD:
        if deflect or defense:
            return ConversationalState.DEFENSE
        if s["recovery"] > RECOVERY_THRESHOLD:
            return ConversationalState.ADVANTAGE
        return ConversationalState.PRESSURE

    if deflect or defense:
        return ConversationalState.DEFENSE
    return prev


@dataclass(frozen=True)
class RewardSignal:
    transition: str
    reward: float
    penalty: float
    details: dict[str, float | bool] = field(default_factory=dict)

    @property
    def net(self) -> float:
        return self.reward - self.penalty


def build_reward_signal(
    prev_state: ConversationalState | None,
    next_state: ConversationalState | None,
    action: Action,
    skills: dict[str, Any] | None,
) -> RewardSignal:
    s = normalize_skills(skills)
    prev = prev_state or ConversationalState.NEUTRAL
    nxt = next_state or ConversationalState.NEUTRAL
    transition = f"{prev.value}->{nxt.value}"

    reward = 0.0
    penalty = 0.0
    details: dict[str, float | bool] = {
        "deflect": False,
        "deflect_penalty": 0.0,
        "collapse": False,
        "collapse_penalty": 0.0,
        "pressure_penalty": 0.0,
    }

    if transition == "Neutral->Advantage":
        reward += 1.0 + s["aggression"] * 0.2
    elif transition == "Pressure->Advantage":
        reward += 1.5 + s["recovery"] * 0.3
    elif transition == "Pressure->Defense":
        p = 0.6 + s["commitment"] * 0.4
        details["pressure_penalty"] = p
        penalty += p
    elif transition == "Defense->Collapse":
        p = 2.2 + s["commitment"] * 0.4
        details["collapse"] = True
        details["collapse_penalty"] = p
        penalty += p

    if action == Action.DEFLECT:
        p = 0.8 + s["commitment"] * 0.4
        details["deflect"] = True
        details["deflect_penalty"] = p
        penalty += p

    return RewardSignal(transition=transition, reward=reward, penalty=penalty, details=details)


@dataclass
class DynamicsState:
    """
    单个辩手的交锋状态（持久化到 dynamics.json）。

    last_reply 保存本方上一轮发言，下一轮作为对方的“问题”输入。
    """

    state: ConversationalState = ConversationalState.NEUTRAL
    last_action: Action | None = None
    last_reward_signal: float = 0.0
    last_transition: str = ""
    last_reply: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "last_action": self.last_action.value if self.last_action else None,
            "last_reward_signal": self.last_reward_signal,
            "last_transition": self.last_transition,
            "last_reply": self.last_reply,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DynamicsState":
        data = data or {}
        try:
            state = ConversationalState(data.get("state") or "Neutral")
        except ValueError:
            state = ConversationalState.NEUTRAL
        try:
            action = Action(data["last_action"]) if data.get("last_action") else None
        except ValueError:
            action = None
        return cls(
            state=state,
            last_action=action,
            last_reward_signal=float(data.get("last_reward_signal") or 0.0),
            last_transition=str(data.get("last_transition") or ""),
            last_reply=str(data.get("last_reply") or ""),
        )


@dataclass(frozen=True)
class DynamicsOutcome:
    action: Action
    prev_state: ConversationalState
    next_state: ConversationalState
    signal: RewardSignal


def step_dynamics(
    current: DynamicsState,
    question: str,
    reply: str,
    skills: dict[str, Any] | None,
    keywords: dict[str, list[str]] | None = None,
) -> tuple[DynamicsState, DynamicsOutcome]:
    """
    一步推进：识别动作、计算下一状态与奖励信号，返回新的 DynamicsState（不修改入参）。
    """

    action = classify_action(question, reply, keywords)
    nxt = compute_next_state(current.state, question, reply, skills, keywords)
    signal = build_reward_signal(current.state, nxt, action, skills)
    new_state = DynamicsState(
        state=nxt,
        last_action=action,
        last_reward_signal=signal.net,
        last_transition=signal.transition,
        last_reply=reply,
    )
    return new_state, DynamicsOutcome(action=action, prev_state=current.state, next_state=nxt, signal=signal)
