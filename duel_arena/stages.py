"""
赛制：定义一场辩论的固定阶段序列（立论 → 四轮攻辩 → 攻辩小结 → N 轮自由辩 → 总结陈词）。

每个阶段携带发言顺序、双方角色、任务与字数指导。字数按口语语速折算：约 300 字/分钟，
提问短、回答与小结长。该模块是纯函数，不做任何 I/O。
"""

from __future__ import annotations

from dataclasses import dataclass, field

CHARS_PER_MINUTE = 300
DEFAULT_FREE_ROUNDS = 4


def calc_max_chars(minutes: float) -> int:
    return int(round(minutes * CHARS_PER_MINUTE))


@dataclass(frozen=True)
class LengthGuide:
    """
    字数指导：[min, max] 区间 + 说明（例如“3分钟陈词”）。
    """

    min: int | None
    max: int | None
    hint: str = ""
    unit: str = "字"

    def format(self) -> str:
        if self.min is not None and self.max is not None:
            text = f"{self.min}-{self.max}{self.unit}"
        elif self.max is not None:
            text = f"≤{self.max}{self.unit}"
        elif self.min is not None:
            text = f"≥{self.min}{self.unit}"
        else:
            text = "-"
        return f"{text}（{self.hint}）" if self.hint else text


def guide_for(minutes: float, hint: str, spread: int) -> LengthGuide:
    """
    由口语时长推出字数区间：中心值 ± spread。
    """

    center = calc_max_chars(minutes)
    return LengthGuide(min=center - spread, max=center + spread, hint=hint)


@dataclass(frozen=True)
class Stage:
    key: str
    title: str
    rule: str
    speaker_order: tuple[str, str]
    roles: dict[str, str]
    tasks: dict[str, str]
    length_guide: dict[str, LengthGuide]
    max_chars: dict[str, int]
    is_free: bool = field(default=False)

    @property
    def first_speaker(self) -> str:
        return self.speaker_order[0]

    @property
    def is_closing(self) -> bool:
        return self.key == "closing"


_BRAINSTORM = "头脑风暴流程：先发散列3个不同角度 → 选择1个最有冲突且可检验的角度 → 落地论点与边界 → 收束回扣对抗点。"
_ASK_GUIDE = guide_for(0.5, "提问30秒", 10)
_ANSWER_GUIDE = guide_for(1, "回答1分钟", 20)
_ASK_CHARS = calc_max_chars(0.5)
_ANSWER_CHARS = calc_max_chars(1)


def _cross_stage(index: int, asker: str, asker_role: str, answerer_role: str, ask_task: str, answer_task: str) -> Stage:
    answerer = "P2" if asker == "P1" else "P1"
    asker_side = "正方" if asker == "P1" else "反方"
    answer_side = "反方" if asker == "P1" else "正方"
    return Stage(
        key=f"cross_{index}",
        title=f"攻辩阶段-{asker_side}{asker_role}提问",
        rule=(
            f"{asker_side}{asker_role}提问，{answer_side}{answerer_role}回答；"
            f"提问30秒（约{_ASK_CHARS}字），回答1分钟（约{_ANSWER_CHARS}字）。"
        ),
        speaker_order=(asker, answerer),
        roles={asker: f"{asker_side}{asker_role}(提问)", answerer: f"{answer_side}{answerer_role}(回答)"},
        tasks={asker: ask_task, answerer: answer_task},
        length_guide={asker: _ASK_GUIDE, answerer: _ANSWER_GUIDE},
        max_chars={asker: _ASK_CHARS, answerer: _ANSWER_CHARS},
    )


def build_debate_flow(
    free_rounds: int = DEFAULT_FREE_ROUNDS,
    *,
    free_debate_total_chars: int = 0,
    free_debate_max_rounds: int = 0,
) -> list[Stage]:
    """
    构造完整赛程。

    free_debate_total_chars > 0 时启用“每方总字数预算”：规则文本会说明预算优先，
    轮数只是上限（实际截断由编排器结合已用字数完成，见 effective_max_chars）。
    free_debate_max_rounds > 0 时覆盖 free_rounds 作为自由辩轮数上限。
    """

    rounds = free_debate_max_rounds if free_debate_max_rounds > 0 else free_rounds
    rounds = max(1, int(rounds))
    free_chars = calc_max_chars(1)
    if free_debate_total_chars > 0:
        free_rule = (
            f"自由辩论由正方先发言，正反方轮流发言。总字数预算：每方{free_debate_total_chars}字"
            f"（预算优先，回合数仅为上限）。{_BRAINSTORM}"
        )
    else:
        free_rule = (
            f"自由辩论由正方先发言，正反方轮流发言，共{rounds}轮"
            f"（回合数为上限，约{free_chars}字/轮）。{_BRAINSTORM}"
        )

    opening_chars = calc_max_chars(3)
    summary_chars = calc_max_chars(2)
    answer_task = "直接回答问题，给出清晰理由或证据并点明边界。"

    flow: list[Stage] = [
        Stage(
            key="opening",
            title="陈词阶段-立论陈词",
            rule=f"正方一辩陈词3分钟（约{opening_chars}字），反方一辩陈词3分钟（约{opening_chars}字）。",
            speaker_order=("P1", "P2"),
            roles={"P1": "正方一辩", "P2": "反方一辩"},
            tasks={
                "P1": "进行立论陈词，给出立场、定义、核心论点与证据，并说明边界条件。",
                "P2": "进行立论陈词，明确反方立场并指出正方核心漏洞与隐含前提。",
            },
            length_guide={"P1": guide_for(3, "3分钟陈词", 50), "P2": guide_for(3, "3分钟陈词", 50)},
            max_chars={"P1": opening_chars, "P2": opening_chars},
        ),
        _cross_stage(1, "P1", "二辩", "二辩/三辩", "提出1个尖锐问题，聚焦对方逻辑漏洞或证据缺口。", answer_task),
        _cross_stage(2, "P2", "二辩", "二辩/三辩", "提出1个尖锐问题，聚焦对方逻辑漏洞或证据缺口。", answer_task),
        _cross_stage(
            3, "P1", "三辩", "二辩/三辩", "提出1个尖锐问题，逼迫对方澄清或承认不足。",
            "直接回答问题，避免回避或跑题，并补充关键事实。",
        ),
        _cross_stage(
            4, "P2", "三辩", "二辩/三辩", "提出1个尖锐问题，推动对方自证或限定范围。",
            "直接回答问题，补强立场并避免新漏洞。",
        ),
        Stage(
            key="cross_summary",
            title="攻辩阶段-攻辩小结",
            rule=f"四轮攻辩完毕后，正方一辩与反方一辩各作2分钟攻辩小结（约{summary_chars}字）。",
            speaker_order=("P1", "P2"),
            roles={"P1": "正方一辩(攻辩小结)", "P2": "反方一辩(攻辩小结)"},
            tasks={
                "P1": "针对攻辩态势总结己方优势与对方漏洞，不背稿，突出对抗点。",
                "P2": "针对攻辩态势总结己方优势与对方漏洞，不背稿，突出对抗点。",
            },
            length_guide={"P1": guide_for(2, "2分钟小结", 50), "P2": guide_for(2, "2分钟小结", 50)},
            max_chars={"P1": summary_chars, "P2": summary_chars},
        ),
    ]

    free_task = "先回应对方最新观点，再推进己方核心论点，补充一个新角度或新证据。"
    for i in range(rounds):
        flow.append(
            Stage(
                key=f"free_{i + 1}",
                title=f"自由辩论阶段-第{i + 1}轮",
                rule=free_rule,
                speaker_order=("P1", "P2"),
                roles={"P1": "正方自由辩", "P2": "反方自由辩"},
                tasks={"P1": free_task, "P2": free_task},
                length_guide={"P1": guide_for(1, "自由辩论单轮", 20), "P2": guide_for(1, "自由辩论单轮", 20)},
                max_chars={"P1": free_chars, "P2": free_chars},
                is_free=True,
            )
        )

    closing_task = "最终总结，回扣核心论点与全场关键对抗点，明确胜负理由。"
    flow.append(
        Stage(
            key="closing",
            title="总结陈词阶段",
            rule=f"反方四辩总结陈词3分钟（约{opening_chars}字）；正方四辩总结陈词3分钟（约{opening_chars}字）。",
            speaker_order=("P2", "P1"),
            roles={"P1": "正方四辩(总结陈词)", "P2": "反方四辩(总结陈词)"},
            tasks={"P1": closing_task, "P2": closing_task},
            length_guide={"P1": guide_for(3, "3分钟总结", 50), "P2": guide_for(3, "3分钟总结", 50)},
            max_chars={"P1": opening_chars, "P2": opening_chars},
        )
    )
    return flow


def closing_index(flow: list[Stage]) -> int:
    return len(flow) - 1


def stage_max_chars(stage: Stage, persona: str) -> int | None:
    return stage.max_chars.get(persona)


def stage_length_guide(stage: Stage, persona: str) -> LengthGuide | None:
    return stage.length_guide.get(persona)


def format_length_guide(guide: LengthGuide | None) -> str:
    return guide.format() if guide is not None else "-"


def format_stage_length_guide(stage: Stage | None) -> str:
    if stage is None:
        return "-"
    g1 = stage.length_guide.get("P1")
    g2 = stage.length_guide.get("P2")
    if g1 is not None and g1 == g2:
        return g1.format()
    parts = []
    if g1 is not None:
        parts.append(f"P1: {g1.format()}")
    if g2 is not None:
        parts.append(f"P2: {g2.format()}")
    return " / ".join(parts) if parts else "-"


def remaining_budget(persona: str, usage: dict[str, int], total_budget: int) -> int | None:
    """
    自由辩论剩余字数；未启用预算时返回 None。
    """

    if total_budget <= 0:
        return None
    return max(0, total_budget - int(usage.get(persona, 0)))


def effective_max_chars(stage: Stage, persona: str, usage: dict[str, int], total_budget: int) -> int | None:
    """
    实际字数上限：自由辩论阶段且启用预算时，取静态上限与剩余预算的较小值。
    """

    static = stage_max_chars(stage, persona)
    if not stage.is_free:
        return static
    remaining = remaining_budget(persona, usage, total_budget)
    if remaining is None:
        return static
    if static is None:
        return remaining
    return min(static, remaining)


def budget_exhausted(usage: dict[str, int], total_budget: int) -> bool:
    """
    双方都用完自由辩论预算时为 True（编排器据此直接跳到总结陈词）。
    """

    if total_budget <= 0:
        return False
    return all(int(usage.get(p, 0)) >= total_budget for p in ("P1", "P2"))
