"""
自博弈战术策略：为每个辩手维护“战术概率 + 关注维度权重”，并按评委分数做策略梯度式更新。

更新规则（每轮一次）：
- 奖励 r = w_q·(avg-5)/5 + w_m·(avg-opp)/10 + w_r·(rule-5)/5，复读扣分，可选叠加交锋动态信号，夹到 [-1, 1]；
- 优势 A = r - b（b 为更新前的基线），基线 b ← (1-α)·b + α·r；
- 被选战术 p += lr·A·(1-p)，未选战术 p -= lr·A·p/(K-1)，夹到 [min_prob, 1] 后重新归一化；
- 关注维度按“与对手差距 + 与目标分差距 + 评委建议命中”微调，夹到 [0.6, 1.8]。

状态写入 policy.json（带版本号与 last_updated_round），更新历史追加到 policy_history.jsonl。
"""

from __future__ import annotations

import logging
import random
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from duel_arena.agents.judge import RoundEvaluation
from duel_arena.config_loader import PERSONAS, PolicySettings, opponent_of
from duel_arena.state_store import append_jsonl, read_json, write_json_atomic
from duel_arena.utils.text_utils import now_iso, text_similarity

logger = logging.getLogger(__name__)

POLICY_VERSION = 1
FOCUS_MIN = 0.6
FOCUS_MAX = 1.8
SIGNAL_BOOST = 0.04
TARGET_SCORE = 8.0


@dataclass(frozen=True)
class Tactic:
    key: str
    label: str
    desc: str


TACTICS: tuple[Tactic, ...] = (
    Tactic("data_anchor", "数据锚定", "引用权威数据并说明统计口径"),
    Tactic("causal_chain", "因果链条", "建立因果机制并说明边界条件"),
    Tactic("counter_example", "反例对照", "用反例削弱对方过度泛化"),
    Tactic("assumption_audit", "前提审计", "识别对方隐含前提并进行质疑"),
    Tactic("definition_lock", "定义锁定", "澄清关键词定义，避免偷换概念"),
    Tactic("cross_examine", "交叉质询", "指出对方证据/逻辑漏洞并追问"),
    Tactic("cost_benefit", "成本收益", "量化成本、收益与风险权衡"),
    Tactic("case_pivot", "案例对照", "用对比案例提升说服力"),
    Tactic("mechanism_test", "机制检验", "要求对方给出可验证机制或可操作路径"),
    Tactic("framework_reframe", "框架重述", "重构问题框架，强调己方价值"),
    Tactic("priority_tradeoff", "价值权衡", "承认代价并给出权衡路径"),
    Tactic("steelman_refute", "先强后破", "先概括对方最强论点再精准反驳"),
    Tactic("synthesis", "综合归纳", "总结要点并回扣核心主张"),
)
TACTIC_MAP: dict[str, Tactic] = {t.key: t for t in TACTICS}

FOCUS_DIMS: tuple[tuple[str, str], ...] = (
    ("logic", "逻辑性"),
    ("evidence", "证据性"),
    ("responsiveness", "反应度"),
    ("expression", "表达力"),
    ("rule_compliance", "规则遵守"),
)

SUGGESTION_SIGNALS: dict[str, tuple[str, ...]] = {
    "logic": ("逻辑", "论证", "严密", "链条", "因果"),
    "evidence": ("证据", "数据", "案例", "事实", "来源"),
    "responsiveness": ("回应", "反驳", "质疑", "针对", "漏洞"),
    "expression": ("表达", "语言", "感染力", "节奏", "清晰"),
    "rule_compliance": ("规则", "遵守", "越权", "抢答"),
}


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def normalize_probs(probs: dict[str, float], min_prob: float) -> dict[str, float]:
    """
    归一化并保证每项 >= min_prob。

    先把低于下限的项钉在 min_prob，再把剩余质量按比例分给其余项；
    重复直到没有新的项跌破下限（最多 K 次）。
    """

    keys = list(probs)
    if not keys:
        return {}
    floor = min(min_prob, 1.0 / len(keys))
    values = {}
    for k in keys:
        v = float(probs[k])
        values[k] = v if v == v and v > 0 else 0.0

    pinned: set[str] = set()
    for _ in range(len(keys)):
        free = [k for k in keys if k not in pinned]
        budget = 1.0 - floor * len(pinned)
        total = sum(values[k] for k in free)
        if total <= 0:
            for k in free:
                values[k] = budget / len(free)
        else:
            for k in free:
                values[k] = values[k] / total * budget
        newly = {k for k in free if values[k] < floor}
        if not newly:
            break
        for k in newly:
            values[k] = floor
        pinned |= newly
    return values


def detect_suggestion_signals(suggestions: list[str]) -> dict[str, int]:
    hits = {dim: 0 for dim in SUGGESTION_SIGNALS}
    for suggestion in suggestions or []:
        text = str(suggestion or "")
        if not text:
            continue
        for dim, keywords in SUGGESTION_SIGNALS.items():
            if any(kw in text for kw in keywords):
                hits[dim] += 1
    return hits


def compute_weaknesses(my_scores: dict[str, float] | None, opp_scores: dict[str, float] | None) -> list[str]:
    """
    找出对手的薄弱维度（对手 <= 6 分，或明显低于本方）。
    """

    if not my_scores or not opp_scores:
        return []
    out: list[str] = []
    for key, label in FOCUS_DIMS:
        try:
            mine = float(my_scores[key])
            theirs = float(opp_scores[key])
        except (KeyError, TypeError, ValueError):
            continue
        if theirs <= 6 or theirs + 0.3 < mine:
            out.append(f"{label}: 对方{theirs:g}/10 < 你方{mine:g}/10")
    return out


def replies_duplicate(a: str, b: str, threshold: float) -> bool:
    ta = (a or "").strip()
    tb = (b or "").strip()
    if not ta or not tb:
        return False
    return ta == tb or text_similarity(ta, tb) >= threshold


@dataclass
class PersonaPolicy:
    tactic_probs: dict[str, float]
    focus: dict[str, float]
    value: float = 0.0
    last_reward: float = 0.0
    last_advantage: float = 0.0
    step: int = 0
    last_actions: list[str] = field(default_factory=list)
    last_update: str | None = None

    @classmethod
    def initial(cls) -> "PersonaPolicy":
        uniform = 1.0 / len(TACTICS)
        return cls(
            tactic_probs={t.key: uniform for t in TACTICS},
            focus={key: 1.0 for key, _ in FOCUS_DIMS},
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, min_prob: float) -> "PersonaPolicy":
        base = cls.initial()
        if not isinstance(data, dict):
            return base
        probs = dict(data.get("tactic_probs") or {})
        # 目录新增的战术以下限概率加入；目录外的旧键丢弃
        merged = {t.key: float(probs.get(t.key, min_prob)) for t in TACTICS}
        focus = dict(base.focus)
        for key, weight in (data.get("focus") or {}).items():
            if key in focus:
                focus[key] = clamp(float(weight), FOCUS_MIN, FOCUS_MAX)
        return cls(
            tactic_probs=normalize_probs(merged, min_prob),
            focus=focus,
            value=float(data.get("value") or 0.0),
            last_reward=float(data.get("last_reward") or 0.0),
            last_advantage=float(data.get("last_advantage") or 0.0),
            step=int(data.get("step") or 0),
            last_actions=[str(a) for a in data.get("last_actions") or [] if str(a) in TACTIC_MAP],
            last_update=data.get("last_update"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PolicyMetrics:
    steps: int = 0
    avg_reward: float = 0.0
    avg_score: float = 0.0

    def observe(self, reward: float, score: float) -> None:
        self.steps += 1
        self.avg_reward = self.avg_reward * 0.9 + reward * 0.1
        self.avg_score = self.avg_score * 0.9 + score * 0.1


class TacticPolicy:
    """
    双方共享的一份策略文档。

    rng 可注入（测试用 random.Random(seed)）。
    """

    def __init__(
        self,
        settings: PolicySettings,
        *,
        policy_path: Path,
        history_path: Path,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings
        self._policy_path = policy_path
        self._history_path = history_path
        self._rng = rng or random.Random()
        self._round_actions: dict[str, list[str]] = {}
        self._current_round: int | None = None
        self.personas: dict[str, PersonaPolicy] = {}
        self.metrics: dict[str, PolicyMetrics] = {}
        self.last_updated_round: int | None = None
        self.load()

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    def load(self) -> None:
        data = read_json(self._policy_path, default=None)
        min_prob = self._settings.min_prob
        if isinstance(data, dict) and int(data.get("version") or 0) != POLICY_VERSION:
            logger.warning(
                "policy.version_mismatch",
                extra={"fields": {"found": data.get("version"), "expected": POLICY_VERSION}},
            )
            data = None
        data = data if isinstance(data, dict) else {}
        personas_raw = data.get("personas") or {}
        metrics_raw = data.get("metrics") or {}
        self.personas = {p: PersonaPolicy.from_dict(personas_raw.get(p), min_prob) for p in PERSONAS}
        self.metrics = {}
        for p in PERSONAS:
            m = metrics_raw.get(p) or {}
            self.metrics[p] = PolicyMetrics(
                steps=int(m.get("steps") or 0),
                avg_reward=float(m.get("avg_reward") or 0.0),
                avg_score=float(m.get("avg_score") or 0.0),
            )
        raw_round = data.get("last_updated_round")
        self.last_updated_round = int(raw_round) if raw_round is not None else None

    def save(self) -> None:
        write_json_atomic(self._policy_path, self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": POLICY_VERSION,
            "updated_at": now_iso(),
            "last_updated_round": self.last_updated_round,
            "tactics": [asdict(t) for t in TACTICS],
            "personas": {p: self.personas[p].to_dict() for p in PERSONAS},
            "metrics": {p: asdict(self.metrics[p]) for p in PERSONAS},
        }

    def _ensure_round(self, round_num: int) -> None:
        if self._current_round != round_num:
            self._current_round = round_num
            self._round_actions = {}

    def _pick_weighted(self, keys: list[str], probs: dict[str, float]) -> str:
        total = sum(probs.get(k, 0.0) for k in keys)
        if total <= 0:
            return self._rng.choice(keys)
        threshold = self._rng.random() * total
        for k in keys:
            threshold -= probs.get(k, 0.0)
            if threshold <= 0:
                return k
        return keys[-1]

    def select_actions(self, round_num: int, persona: str) -> list[str]:
        """
        为本轮抽取 action_count 个战术（不放回）；同一轮重复调用返回同一结果。
        """

        if not self.enabled:
            return []
        self._ensure_round(round_num)
        cached = self._round_actions.get(persona)
        if cached is not None:
            return list(cached)

        state = self.personas[persona]
        remaining = list(state.tactic_probs)
        count = max(1, min(self._settings.action_count, len(remaining)))
        explore = self._rng.random() < self._settings.exploration
        actions: list[str] = []
        for _ in range(count):
            pick = self._rng.choice(remaining) if explore else self._pick_weighted(remaining, state.tactic_probs)
            actions.append(pick)
            remaining.remove(pick)
        self._round_actions[persona] = actions
        state.last_actions = list(actions)
        logger.debug("policy.actions.selected", extra={"fields": {"round": round_num, "persona": persona, "actions": actions, "explore": explore}})
        return list(actions)

    def prompt_context(
        self,
        persona: str,
        round_num: int,
        my_scores: dict[str, float] | None = None,
        opp_scores: dict[str, float] | None = None,
    ) -> dict[str, Any] | None:
        if not self.enabled:
            return None
        actions = self.select_actions(round_num, persona)
        focus = self.personas[persona].focus
        ranked = sorted(FOCUS_DIMS, key=lambda d: -focus.get(d[0], 1.0))[:3]
        return {
            "actions": [asdict(TACTIC_MAP[k]) for k in actions if k in TACTIC_MAP],
            "focus": [{"key": k, "label": label, "weight": round(focus.get(k, 1.0), 2)} for k, label in ranked],
            "weaknesses": compute_weaknesses(my_scores, opp_scores),
            "opponent_label": f"对手{opponent_of(persona)}",
        }

    def compute_reward(
        self,
        evaluation: RoundEvaluation,
        persona: str,
        *,
        duplicate: bool,
        dynamics_signal: float = 0.0,
    ) -> float:
        s = self._settings
        opp = opponent_of(persona)
        avg = float(evaluation.averages.get(persona, 0.0))
        opp_avg = float(evaluation.averages.get(opp, 0.0))
        rule = float(evaluation.scores.get(persona, {}).get("rule_compliance", 5.0))
        reward = (
            s.quality_weight * (avg - 5) / 5
            + s.margin_weight * (avg - opp_avg) / 10
            + s.rule_weight * (rule - 5) / 5
        )
        if duplicate:
            reward -= s.duplicate_penalty
        reward += s.dynamics_reward_weight * dynamics_signal
        return clamp(reward, -1.0, 1.0)

    def actions_for_round(self, round_num: int, persona: str) -> list[str] | None:
        """
        本轮已抽取的战术；该辩手本轮没有被询问（未抽取）时返回 None。
        """

        if self._current_round != round_num:
            return None
        actions = self._round_actions.get(persona)
        return list(actions) if actions is not None else None

    def _update_persona(self, persona: str, evaluation: RoundEvaluation, reward: float, chosen: set[str]) -> None:
        s = self._settings
        state = self.personas[persona]

        baseline = state.value
        advantage = reward - baseline
        state.value = (1 - s.baseline_alpha) * baseline + s.baseline_alpha * reward
        state.last_reward = reward
        state.last_advantage = advantage
        state.step += 1
        state.last_update = now_iso()

        probs = state.tactic_probs
        k = len(probs)
        for key in list(probs):
            p = probs[key]
            direction = (1 - p) if key in chosen else -p / max(1, k - 1)
            probs[key] = clamp(p + s.learning_rate * advantage * direction, s.min_prob, 1.0)
        state.tactic_probs = normalize_probs(probs, s.min_prob)

        opp = opponent_of(persona)
        mine = evaluation.scores.get(persona, {})
        theirs = evaluation.scores.get(opp, {})
        hits = detect_suggestion_signals(evaluation.suggestions.get(persona, []))
        for key, _ in FOCUS_DIMS:
            my_value = float(mine.get(key, 5.0))
            opp_value = float(theirs.get(key, 5.0))
            gap = clamp((opp_value - my_value) / 10, -0.2, 0.2)
            target_gap = clamp((TARGET_SCORE - my_value) / 10, -0.1, 0.2)
            delta = s.focus_learning_rate * (gap + target_gap) + SIGNAL_BOOST * hits.get(key, 0)
            state.focus[key] = clamp(state.focus.get(key, 1.0) + delta, FOCUS_MIN, FOCUS_MAX)

        self.metrics[persona].observe(reward, float(evaluation.averages.get(persona, 0.0)))

    def update_from_evaluation(
        self,
        evaluation: RoundEvaluation | None,
        round_num: int,
        replies: dict[str, str],
        dynamics_signals: dict[str, float] | None = None,
        meta: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """
        用本轮评分更新双方策略并持久化。

        评分缺失或本轮已更新过时直接跳过，返回 None；否则返回写入历史的记录。
        """

        if not self.enabled or evaluation is None:
            return None
        if self.last_updated_round == round_num:
            logger.info("policy.update.skipped_duplicate_round", extra={"fields": {"round": round_num}})
            return None

        duplicate = replies_duplicate(
            replies.get("P1", ""), replies.get("P2", ""), self._settings.duplicate_similarity
        )
        signals = dynamics_signals or {}
        rewards: dict[str, float] = {}
        actions: dict[str, list[str]] = {}
        skipped: list[str] = []
        for persona in PERSONAS:
            rewards[persona] = self.compute_reward(
                evaluation, persona, duplicate=duplicate, dynamics_signal=float(signals.get(persona, 0.0))
            )
            chosen = self.actions_for_round(round_num, persona)
            if chosen is None:
                # 本轮没有发言（如自由辩论预算已用完）：不推进 step/基线，也不强化旧战术
                skipped.append(persona)
                actions[persona] = []
                continue
            actions[persona] = chosen
            self._update_persona(persona, evaluation, rewards[persona], set(chosen))

        self.last_updated_round = round_num
        record = {
            "ts": now_iso(),
            "round": round_num,
            **(meta or {}),
            "averages": evaluation.averages,
            "duplicate_reply": duplicate,
            "actions": actions,
            "skipped": skipped,
            "rewards": rewards,
            "advantages": {p: self.personas[p].last_advantage for p in PERSONAS},
        }
        self.save()
        append_jsonl(self._history_path, record)
        logger.info(
            "policy.updated",
            extra={"fields": {"round": round_num, "reward_p1": round(rewards["P1"], 4), "reward_p2": round(rewards["P2"], 4), "duplicate": duplicate}},
        )
        return record

    def summary(self) -> dict[str, dict[str, float]]:
        """
        会话结束时写入经验文档的统计摘要。
        """

        return {
            p: {
                "steps": self.metrics[p].steps,
                "avg_reward": round(self.metrics[p].avg_reward, 4),
                "avg_score": round(self.metrics[p].avg_score, 2),
                "baseline": round(self.personas[p].value, 4),
            }
            for p in PERSONAS
        }
