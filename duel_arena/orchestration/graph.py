"""
LangGraph 编排：每次调用推进一个赛程阶段（一“轮”）。

节点流转：

    START → open_round → first_turn → second_turn → classify → judge → learn → commit → END

- open_round：确定阶段与发言顺序；场次第一轮时由主席确定辩题；读取对话尾部；
- first_turn / second_turn：严格串行地询问两位辩手，第二位的上下文包含第一位的发言；
  任一方传输失败 → Command(goto=END) 放弃整轮，不写任何会话状态；
- classify：用“对方上一轮发言”作为问题，推进双方交锋状态机；
- judge：评委打分（不可用时为 None）；
- learn：按评分更新战术策略（评分缺失时跳过）；
- commit：写转录、会话、交锋状态、计划文档，推进阶段指针；总结陈词后执行场次收尾。
"""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import asdict, dataclass, field
from typing import Any

from typing_extensions import TypedDict

from duel_arena.agents.chairman import ChairmanAgent, TopicDecision
from duel_arena.agents.debater import PersonaAgent, PersonaTurnResult, TurnContext
from duel_arena.agents.judge import JudgeAgent, RoundEvaluation, parse_round_evaluation
from duel_arena.config_loader import PERSONAS, ArenaSettings, opponent_of
from duel_arena.document_manager import ExperienceBook, PlanningDocuments
from duel_arena.dynamics import DynamicsOutcome, DynamicsState, merge_keywords, step_dynamics
from duel_arena.llm_factory import ChatModelClient, TokenStats, TransportError, load_env, make_chat_model
from duel_arena.policy import TacticPolicy
from duel_arena.stages import (
    Stage,
    budget_exhausted,
    build_debate_flow,
    closing_index,
    effective_max_chars,
    format_stage_length_guide,
)
from duel_arena.state_store import StatePaths, read_json, write_json_atomic
from duel_arena.transcript import ConversationLog, append_and_trim, build_conversation_entry
from duel_arena.utils.text_utils import now_iso, truncate_chars

logger = logging.getLogger(__name__)

BUDGET_EXHAUSTED_REPLY = "(自由辩论字数预算已用完，本轮不发言)"
FINAL_EVALUATION_MAX_CHARS = 24000


@dataclass
class SessionState:
    """
    会话状态（status.json）。

    round：全局已提交轮数（跨场次单调递增，策略更新的幂等键）；
    stage_round：本场已完成的阶段数；
    stage_pointer：下一轮要进行的阶段下标。
    """

    session_id: int = 1
    round: int = 0
    stage_round: int = 0
    stage_pointer: int = 0
    topic: str = ""
    proposed_topic: str = ""
    topic_history: list[str] = field(default_factory=list)
    free_stage_usage: dict[str, int] = field(default_factory=lambda: {p: 0 for p in PERSONAS})
    current_evaluation: dict[str, Any] | None = None
    cumulative_scores: dict[str, float] = field(default_factory=lambda: {p: 0.0 for p in PERSONAS})
    evaluated_rounds: int = 0
    session_notes: dict[str, list[str]] = field(default_factory=lambda: {p: [] for p in PERSONAS})
    last_reply_at: str | None = None
    last_error: str | None = None
    token_stats: dict[str, Any] = field(default_factory=lambda: TokenStats().to_dict())

    @property
    def is_session_start(self) -> bool:
        return self.stage_pointer == 0 and self.stage_round == 0

    def record_topic(self, topic: str) -> None:
        t = (topic or "").strip()
        if t and t not in self.topic_history:
            self.topic_history.append(t)

    def last_evaluation(self) -> RoundEvaluation | None:
        return parse_round_evaluation(self.current_evaluation)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SessionState":
        data = data or {}
        base = cls()
        known = set(cls.__dataclass_fields__)
        kwargs = {k: v for k, v in data.items() if k in known and v is not None}
        state = cls(**{**asdict(base), **kwargs})
        state.free_stage_usage = {p: int(state.free_stage_usage.get(p, 0)) for p in PERSONAS}
        state.cumulative_scores = {p: float(state.cumulative_scores.get(p, 0.0)) for p in PERSONAS}
        state.session_notes = {p: list(state.session_notes.get(p) or []) for p in PERSONAS}
        return state


@dataclass(frozen=True)
class RoundOutcome:
    committed: bool
    round: int
    stage_key: str
    error: str = ""
    rolled_over: bool = False


class RoundState(TypedDict):
    session: SessionState
    stage: Stage
    stage_index: int
    round_num: int
    is_session_start: bool
    is_session_end: bool
    topic: str
    topic_decision: TopicDecision | None
    tail: str
    experience: str
    results: dict[str, PersonaTurnResult]
    dynamics: dict[str, DynamicsState]
    outcomes: dict[str, DynamicsOutcome]
    evaluation: RoundEvaluation | None
    policy_record: dict[str, Any] | None
    aborted: str
    rolled_over: bool


class RoundOrchestrator:
    """
    编排器是唯一写持久状态的组件。

    personas / judge / chairman 可注入假对象（测试中包一层假 LLM 的 ChatModelClient）。
    """

    def __init__(
        self,
        settings: ArenaSettings,
        *,
        personas: dict[str, PersonaAgent],
        judge: JudgeAgent,
        chairman: ChairmanAgent,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings
        self._personas = personas
        self._judge = judge
        self._chairman = chairman
        storage = settings.storage
        self.paths = StatePaths(storage.state_dir, archive_dir_name=storage.archive_dir_name, lock_file=storage.lock_file)
        self.paths.state_dir.mkdir(parents=True, exist_ok=True)

        debate = settings.debate
        self.flow: list[Stage] = build_debate_flow(
            debate.free_rounds,
            free_debate_total_chars=debate.free_debate_total_chars,
            free_debate_max_rounds=debate.free_debate_max_rounds,
        )
        self.conversation = ConversationLog(
            self.paths.conversation, archive_dir=self.paths.archive_dir, events_path=self.paths.events
        )
        self.conversation.ensure()
        self.plans = PlanningDocuments(self.paths.state_dir)
        self.experience = ExperienceBook(self.paths.experience, debate.experience_max_chars)
        self.policy = TacticPolicy(
            settings.policy,
            policy_path=self.paths.policy,
            history_path=self.paths.policy_history,
            rng=rng,
        )
        self._keywords = merge_keywords(settings.dynamics_keywords)
        self.session = SessionState.from_dict(read_json(self.paths.status, default=None))
        self.dynamics = self._load_dynamics()
        self._graph = self._build_graph()

    # ------------------------------------------------------------------ 持久化

    def _load_dynamics(self) -> dict[str, DynamicsState]:
        data = read_json(self.paths.dynamics, default=None)
        if not isinstance(data, dict) or data.get("session_id") != self.session.session_id:
            return {p: DynamicsState() for p in PERSONAS}
        personas = data.get("personas") or {}
        return {p: DynamicsState.from_dict(personas.get(p)) for p in PERSONAS}

    def _save_dynamics(self) -> None:
        write_json_atomic(
            self.paths.dynamics,
            {
                "session_id": self.session.session_id,
                "updated_at": now_iso(),
                "personas": {p: self.dynamics[p].to_dict() for p in PERSONAS},
            },
        )

    def status_document(self) -> dict[str, Any]:
        s = self.session
        stage = self.flow[s.stage_pointer] if 0 <= s.stage_pointer < len(self.flow) else None
        averages = (
            {p: s.cumulative_scores[p] / s.evaluated_rounds for p in PERSONAS} if s.evaluated_rounds else None
        )
        winner = None
        if averages:
            winner = "tie" if averages["P1"] == averages["P2"] else ("P1" if averages["P1"] > averages["P2"] else "P2")
        return {
            **s.to_dict(),
            "stage_key": stage.key if stage else "-",
            "stage_title": stage.title if stage else "-",
            "stage_rule": stage.rule if stage else "-",
            "stage_length": format_stage_length_guide(stage),
            "total_stages": len(self.flow),
            "average_scores": averages,
            "overall_winner": winner,
            "dynamics": {p: self.dynamics[p].to_dict()["state"] for p in PERSONAS},
            "updated_at": now_iso(),
        }

    def save_status(self) -> None:
        write_json_atomic(self.paths.status, self.status_document())

    def _clients(self) -> list[ChatModelClient]:
        seen: dict[int, ChatModelClient] = {}
        candidates = [agent.client for agent in self._personas.values()]
        candidates += [self._judge.client, self._chairman.client]
        for client in candidates:
            if client is not None:
                seen.setdefault(id(client), client)
        return list(seen.values())

    def _drain_usage(self) -> None:
        total = TokenStats.from_dict(self.session.token_stats)
        for client in self._clients():
            total.merge(client.stats)
            client.stats = TokenStats()
        self.session.token_stats = total.to_dict()

    # ------------------------------------------------------------------ 图节点

    def _build_graph(self):
        try:
            from langgraph.graph import END, START, StateGraph  # type: ignore
            from langgraph.types import Command  # type: ignore
        except ModuleNotFoundError as e:
            raise RuntimeError("缺少依赖 langgraph。请先安装项目依赖后再运行辩论。") from e

        settings = self._settings

        def open_round(state: RoundState):
            session = state["session"]
            index = min(max(session.stage_pointer, 0), closing_index(self.flow))
            stage = self.flow[index]
            round_num = session.round + 1
            is_start = session.is_session_start
            tail = self.conversation.read_tail(settings.debate.context_max_chars)

            topic = session.topic
            decision = None
            if is_start:
                decision = self._chairman.resolve_topic(
                    current_topic=session.topic or session.proposed_topic,
                    history=session.topic_history,
                    conversation=tail,
                    round_num=round_num,
                )
                topic = decision.topic

            logger.info(
                "round.start",
                extra={"fields": {"round": round_num, "session_id": session.session_id, "stage": stage.key, "topic": topic}},
            )
            return Command(
                goto="first_turn",
                update={
                    "stage": stage,
                    "stage_index": index,
                    "round_num": round_num,
                    "is_session_start": is_start,
                    "is_session_end": stage.is_closing,
                    "topic": topic,
                    "topic_decision": decision,
                    "tail": tail,
                    "experience": self.experience.read_tail(),
                },
            )

        def make_turn(position: int, next_node: str):
            def turn(state: RoundState):
                stage = state["stage"]
                speaker = stage.speaker_order[position]
                session = state["session"]
                budget = settings.debate.free_debate_total_chars
                max_chars = effective_max_chars(stage, speaker, session.free_stage_usage, budget)
                results = dict(state["results"])

                if stage.is_free and max_chars is not None and max_chars <= 0:
                    result = PersonaTurnResult(persona=speaker, reply=BUDGET_EXHAUSTED_REPLY)
                    logger.info("round.persona.budget_exhausted", extra={"fields": {"round": state["round_num"], "persona": speaker}})
                else:
                    evaluation = session.last_evaluation()
                    my_scores = evaluation.scores.get(speaker) if evaluation else None
                    opp_scores = evaluation.scores.get(opponent_of(speaker)) if evaluation else None
                    ctx = TurnContext(
                        round_num=state["round_num"],
                        session_id=session.session_id,
                        stage=stage,
                        stage_index=state["stage_index"],
                        total_stages=len(self.flow),
                        topic=state["topic"],
                        conversation=state["tail"],
                        plan=self.plans.read(speaker),
                        experience=state["experience"],
                        evaluation=evaluation,
                        policy_context=self.policy.prompt_context(speaker, state["round_num"], my_scores, opp_scores),
                        max_chars=max_chars,
                        is_session_start=state["is_session_start"],
                        is_session_end=state["is_session_end"],
                    )
                    try:
                        result = self._personas[speaker].generate_turn(ctx)
                    except TransportError as e:
                        results[speaker] = PersonaTurnResult(persona=speaker, reply="", transport_error=str(e))
                        logger.error(
                            "round.aborted",
                            extra={"fields": {"round": state["round_num"], "persona": speaker, "error": str(e)}},
                        )
                        return Command(goto=END, update={"results": results, "aborted": f"{speaker}: {e}"})

                results[speaker] = result
                entry = build_conversation_entry(speaker, result.reply, state["round_num"], state["topic"], stage.title)
                tail = append_and_trim(state["tail"], entry, settings.debate.context_max_chars)
                return Command(goto=next_node, update={"results": results, "tail": tail})

            return turn

        def classify(state: RoundState):
            replies = {p: state["results"][p].reply for p in PERSONAS}
            # 问题 = 对方上一轮的发言（取自更新前的状态）
            previous = {p: state["dynamics"][p].last_reply for p in PERSONAS}
            new_states: dict[str, DynamicsState] = {}
            outcomes: dict[str, DynamicsOutcome] = {}
            for p in PERSONAS:
                new_states[p], outcomes[p] = step_dynamics(
                    state["dynamics"][p],
                    previous[opponent_of(p)],
                    replies[p],
                    settings.persona(p).skills,
                    self._keywords,
                )
            return Command(goto="judge", update={"dynamics": new_states, "outcomes": outcomes})

        def judge(state: RoundState):
            stage = state["stage"]
            evaluation = self._judge.evaluate_round(
                topic=state["topic"],
                stage_label=stage.title,
                stage_key=stage.key,
                stage_rule=stage.rule,
                replies={p: state["results"][p].reply for p in PERSONAS},
                round_num=state["round_num"],
            )
            return Command(goto="learn", update={"evaluation": evaluation})

        def learn(state: RoundState):
            stage = state["stage"]
            record = self.policy.update_from_evaluation(
                state["evaluation"],
                state["round_num"],
                {p: state["results"][p].reply for p in PERSONAS},
                dynamics_signals={p: state["outcomes"][p].signal.net for p in PERSONAS},
                meta={
                    "session_id": state["session"].session_id,
                    "topic": state["topic"],
                    "stage_key": stage.key,
                    "stage_title": stage.title,
                },
            )
            return Command(goto="commit", update={"policy_record": record})

        def commit(state: RoundState):
            rolled_over = self._commit(state)
            return Command(goto=END, update={"rolled_over": rolled_over})

        builder = StateGraph(RoundState)
        builder.add_node("open_round", open_round)
        builder.add_node("first_turn", make_turn(0, "second_turn"))
        builder.add_node("second_turn", make_turn(1, "classify"))
        builder.add_node("classify", classify)
        builder.add_node("judge", judge)
        builder.add_node("learn", learn)
        builder.add_node("commit", commit)
        builder.add_edge(START, "open_round")
        return builder.compile()

    # ------------------------------------------------------------------ 提交与收尾

    def _commit(self, state: RoundState) -> bool:
        session = self.session
        stage = state["stage"]
        round_num = state["round_num"]
        topic = state["topic"]
        results = state["results"]
        log = self.conversation

        decision = state["topic_decision"]
        if decision is not None:
            if decision.source == "generated":
                log.append_system_event(
                    "topic_generated",
                    f"Round {round_num}: {decision.topic} (分歧点: {decision.disagreement or '未明确'})",
                )
            elif decision.source == "fallback":
                log.append_system_event("topic_fallback", f"Round {round_num}: {decision.topic}")
            session.record_topic(decision.topic)
            session.topic = decision.topic
            session.proposed_topic = ""

        for speaker in stage.speaker_order:
            result = results[speaker]
            log.append_reply(speaker, result.reply, round_num, topic, stage.title)
            if result.parse_error:
                log.append_system_event("persona_parse_error", f"{speaker}: 模型输出无法解析，已使用占位发言")

        if stage.is_free:
            for p in PERSONAS:
                if results[p].reply != BUDGET_EXHAUSTED_REPLY:
                    session.free_stage_usage[p] = session.free_stage_usage.get(p, 0) + len(results[p].reply)

        evaluation = state["evaluation"]
        if evaluation is None:
            log.append_system_event("judge_unavailable", f"Round {round_num}: 评委不可用，本轮不计分，跳过策略更新")
        else:
            session.current_evaluation = evaluation.to_dict()
            for p in PERSONAS:
                session.cumulative_scores[p] += evaluation.averages[p]
            session.evaluated_rounds += 1
            log.append_event("round_evaluation", {"round": round_num, "evaluation": evaluation.to_dict()})
        if state["policy_record"] is not None:
            log.append_event("policy_update", state["policy_record"])

        for p in PERSONAS:
            outcome = state["outcomes"][p]
            log.append_event(
                "dynamics",
                {
                    "round": round_num,
                    "persona": p,
                    "action": outcome.action.value,
                    "transition": outcome.signal.transition,
                    "reward": outcome.signal.reward,
                    "penalty": outcome.signal.penalty,
                },
            )
        self.dynamics = dict(state["dynamics"])

        for p in PERSONAS:
            applied = self.plans.apply(p, results[p].plan_ops)
            if applied:
                log.append_event("plan_update", {"persona": p, "applied": applied})
            if results[p].experience_notes:
                session.session_notes[p].extend(results[p].experience_notes)

        session.round = round_num
        session.stage_round += 1
        session.stage_pointer = state["stage_index"] + 1
        session.last_reply_at = now_iso()
        session.last_error = None

        budget = self._settings.debate.free_debate_total_chars
        closing = closing_index(self.flow)
        if stage.is_free and session.stage_pointer < closing and budget_exhausted(session.free_stage_usage, budget):
            log.append_system_event("free_budget_exhausted", f"双方自由辩论预算（{budget}字）已用完，直接进入总结陈词")
            session.stage_pointer = closing

        rolled_over = False
        if stage.is_closing:
            for p in PERSONAS:
                proposal = (results[p].proposed_topic or "").strip()
                if proposal and proposal not in session.topic_history and proposal != topic:
                    session.proposed_topic = proposal
                    break
            self._rollover(topic)
            rolled_over = True

        self._drain_usage()
        self._save_dynamics()
        self.save_status()
        logger.info(
            "round.committed",
            extra={"fields": {"round": round_num, "stage": stage.key, "next_pointer": session.stage_pointer, "rolled_over": rolled_over}},
        )
        return rolled_over

    def _rollover(self, topic: str) -> None:
        """
        场次收尾：总评 → 经验 → 归档 → 清空计划 → 会话与交锋状态重置。
        """

        session = self.session
        log = self.conversation
        ended_id = session.session_id

        final = self._judge.evaluate_debate(
            topic=topic, history=log.read_tail(FINAL_EVALUATION_MAX_CHARS)
        )
        if final is not None:
            log.append_system_event(
                "final_evaluation",
                f"Debate {ended_id} 胜方: {final['winner']}，综合评分 P1 {final['final_scores']['P1']:g} / "
                f"P2 {final['final_scores']['P2']:g}。{final['overall_comment']}",
                payload={"session_id": ended_id, "evaluation": final},
            )
        else:
            log.append_system_event("final_evaluation_unavailable", f"Debate {ended_id}: 总评不可用")

        self.experience.append_session_summary(
            session_id=ended_id,
            topic=topic,
            updates=session.session_notes,
            evaluated_rounds=session.evaluated_rounds,
            cumulative_scores=session.cumulative_scores,
            policy_summary=self.policy.summary(),
        )
        log.append_event("experience_update", {"session_id": ended_id, "updates": session.session_notes})

        winner = final["winner"] if final else "unknown"
        log.append_system_event("debate_end", f"Debate {ended_id} completed. Winner: {winner}")
        archived = log.archive(ended_id, topic)
        self.plans.reset()

        # 新场次的对话以上一场的结论开头，供主席提炼新辩题
        carry = f"上一场辩题：{topic}"
        last_eval = session.last_evaluation()
        if last_eval is not None and last_eval.core_conflict:
            carry += f"\n核心冲突：{last_eval.core_conflict}"
        if final is not None and final["overall_comment"]:
            carry += f"\n总评：{truncate_chars(final['overall_comment'], 300)}"
        log.append_system_event(
            "session_start",
            carry,
            payload={"session_id": ended_id + 1, "archive": str(archived) if archived else None},
        )

        session.session_id = ended_id + 1
        session.topic = ""
        session.stage_pointer = 0
        session.stage_round = 0
        session.free_stage_usage = {p: 0 for p in PERSONAS}
        session.current_evaluation = None
        session.cumulative_scores = {p: 0.0 for p in PERSONAS}
        session.evaluated_rounds = 0
        session.session_notes = {p: [] for p in PERSONAS}
        self.dynamics = {p: DynamicsState() for p in PERSONAS}
        logger.info("session.rollover", extra={"fields": {"ended": ended_id, "next": session.session_id}})

    # ------------------------------------------------------------------ 入口

    def run_once(self) -> RoundOutcome:
        initial: RoundState = {
            "session": self.session,
            "stage": self.flow[0],
            "stage_index": 0,
            "round_num": self.session.round + 1,
            "is_session_start": False,
            "is_session_end": False,
            "topic": self.session.topic,
            "topic_decision": None,
            "tail": "",
            "experience": "",
            "results": {},
            "dynamics": dict(self.dynamics),
            "outcomes": {},
            "evaluation": None,
            "policy_record": None,
            "aborted": "",
            "rolled_over": False,
        }
        final: RoundState = self._graph.invoke(initial)
        stage_key = final["stage"].key
        if final["aborted"]:
            error = truncate_chars(final["aborted"], 300)
            self.conversation.append_system_event("round_retry", f"Round {final['round_num']} 放弃：{error}")
            self._record_error(error)
            return RoundOutcome(committed=False, round=self.session.round, stage_key=stage_key, error=error)
        return RoundOutcome(
            committed=True, round=self.session.round, stage_key=stage_key, rolled_over=bool(final["rolled_over"])
        )

    def _record_error(self, error: str) -> None:
        """
        只更新 status.json 中的 last_error，会话计数保持不变。
        """

        self.session.last_error = error
        self.save_status()

    def run_forever(self, stop_event: threading.Event) -> None:
        debate = self._settings.debate
        logger.info("arena.loop.start", extra={"fields": {"round": self.session.round, "session_id": self.session.session_id}})
        while not stop_event.is_set():
            try:
                outcome = self.run_once()
            except Exception as e:
                logger.exception("round.error")
                self.conversation.append_system_event("error", f"{type(e).__name__}: {e}")
                self._record_error(f"{type(e).__name__}: {e}")
                delay = debate.retry_delay_seconds
            else:
                delay = debate.loop_sleep_seconds if outcome.committed else debate.retry_delay_seconds
            stop_event.wait(max(0.0, delay))
        logger.info("arena.loop.stop", extra={"fields": {"round": self.session.round}})


def build_orchestrator(settings: ArenaSettings, *, rng: random.Random | None = None) -> RoundOrchestrator:
    """
    用真实模型客户端装配编排器。按辩手配置了模型覆盖时各自建立客户端，否则共用默认客户端。
    """

    load_env()
    default_client = make_chat_model(settings.llm)
    personas: dict[str, PersonaAgent] = {}
    for p in PERSONAS:
        profile = settings.persona(p)
        client = make_chat_model(settings.llm, model=profile.model) if profile.model else default_client
        personas[p] = PersonaAgent(profile, client, settings.llm)
    return RoundOrchestrator(
        settings,
        personas=personas,
        judge=JudgeAgent(default_client, settings.llm),
        chairman=ChairmanAgent(default_client),
        rng=rng,
    )
