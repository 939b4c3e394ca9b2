import json
import random
import tempfile
import unittest
from pathlib import Path

from duel_arena.agents.chairman import FALLBACK_TOPICS, ChairmanAgent
from duel_arena.agents.debater import PARSE_FAILURE_REPLY, PersonaAgent
from duel_arena.agents.judge import JudgeAgent
from duel_arena.config_loader import DebateSettings, PolicySettings, StorageSettings, default_settings
from duel_arena.llm_factory import ChatModelClient
from duel_arena.orchestration.graph import BUDGET_EXHAUSTED_REPLY, RoundOrchestrator, SessionState
from duel_arena.state_store import read_json, read_jsonl


class _FakeResp:
    def __init__(self, content: str) -> None:
        self.content = content
        self.usage_metadata = {"input_tokens": 10, "output_tokens": 5, "total_tokens": 15}


def _judge_json(p1: float = 7, p2: float = 6) -> str:
    dims = ("logic", "evidence", "responsiveness", "expression", "rule_compliance")
    return json.dumps(
        {
            "scores": {"P1": {d: p1 for d in dims}, "P2": {d: p2 for d in dims}},
            "round_winner": "P1",
            "highlights": {"P1": ["结构清晰"], "P2": ["反驳有力"]},
            "suggestions": {"P1": ["补充证据"], "P2": ["加强逻辑"]},
            "core_conflict": "效率与公平孰先",
        },
        ensure_ascii=False,
    )


_DEBATE_JSON = json.dumps(
    {
        "winner": "P1",
        "key_turning_points": [{"round": 2, "description": "反方未能回应数据来源"}],
        "decisive_factors": ["证据质量"],
        "strengths": {"P1": ["论证扎实"], "P2": ["反应快"]},
        "weaknesses": {"P1": ["表达平淡"], "P2": ["证据不足"]},
        "final_scores": {"P1": 82, "P2": 76},
        "overall_comment": "正方整体更稳。",
    },
    ensure_ascii=False,
)


class _ScriptedLLM:
    """
    按系统提示词区分调用方：辩手 / 评委 / 总评 / 主席。
    """

    def __init__(
        self,
        *,
        reply_len: int = 40,
        reply_lens: dict[str, int] | None = None,
        raw_replies: dict[str, str] | None = None,
        judge_raw: str | None = None,
        fail_persona: str = "",
        generated_topic: str = "",
    ) -> None:
        self.reply_len = reply_len
        self.reply_lens = reply_lens or {}
        self.raw_replies = raw_replies or {}
        self.judge_raw = judge_raw
        self.fail_persona = fail_persona
        self.generated_topic = generated_topic
        self.persona_calls: list[str] = []

    def invoke(self, messages, **_kwargs):
        system = messages[0].content
        if "你是辩手 P1" in system or "你是辩手 P2" in system:
            persona = "P1" if "你是辩手 P1" in system else "P2"
            self.persona_calls.append(persona)
            if persona == self.fail_persona:
                raise RuntimeError("invalid request payload")
            if persona in self.raw_replies:
                return _FakeResp(self.raw_replies[persona])
            body = (f"{persona}认为应当坚持本方立场" * 40)[: self.reply_lens.get(persona, self.reply_len)]
            return _FakeResp(json.dumps({"reply": body, "plan_update": [f"add: {persona}要点"]}, ensure_ascii=False))
        if "总评委" in system:
            return _FakeResp(_DEBATE_JSON)
        if "专业辩论评委" in system:
            return _FakeResp(_judge_json() if self.judge_raw is None else self.judge_raw)
        if "辩论题目生成助手" in system:
            return _FakeResp(json.dumps({"disagreement": "分歧", "new_topic": self.generated_topic}, ensure_ascii=False))
        raise AssertionError(f"unexpected prompt: {system[:40]}")


def _build(state_dir: Path, llm: _ScriptedLLM, **debate) -> RoundOrchestrator:
    settings = default_settings(
        storage=StorageSettings(state_dir=state_dir),
        debate=DebateSettings(**{"free_rounds": 1, **debate}),
        policy=PolicySettings(exploration=0.0),
    )
    client = ChatModelClient(llm, settings.llm, name="fake", sleep=lambda _s: None, rand=lambda: 0.0)
    personas = {p: PersonaAgent(settings.persona(p), client, settings.llm) for p in ("P1", "P2")}
    return RoundOrchestrator(
        settings,
        personas=personas,
        judge=JudgeAgent(client, settings.llm),
        chairman=ChairmanAgent(client),
        rng=random.Random(7),
    )


class TestRoundOrchestrator(unittest.TestCase):
    def test_single_round_commits_state(self):
        with tempfile.TemporaryDirectory() as tmp:
            state_dir = Path(tmp)
            orch = _build(state_dir, _ScriptedLLM())
            outcome = orch.run_once()

            self.assertTrue(outcome.committed)
            self.assertEqual(outcome.round, 1)
            self.assertEqual(outcome.stage_key, "opening")

            status = read_json(state_dir / "status.json")
            self.assertEqual(status["round"], 1)
            self.assertEqual(status["stage_pointer"], 1)
            self.assertEqual(status["topic"], FALLBACK_TOPICS[0])
            self.assertEqual(status["evaluated_rounds"], 1)
            self.assertEqual(status["stage_key"], "cross_1")
            self.assertEqual(status["token_stats"]["requests"], 3)

            speakers = [e.speaker for e in orch.conversation.entries() if e.round == 1]
            self.assertEqual(speakers, ["P1", "P2"])

            policy = read_json(state_dir / "policy.json")
            self.assertEqual(policy["last_updated_round"], 1)
            self.assertIn("P1要点", orch.plans.read("P1"))
            dynamics = read_json(state_dir / "dynamics.json")
            self.assertEqual(dynamics["session_id"], 1)

    def test_second_persona_transport_failure_keeps_round(self):
        with tempfile.TemporaryDirectory() as tmp:
            state_dir = Path(tmp)
            llm = _ScriptedLLM(fail_persona="P2")
            orch = _build(state_dir, llm)
            outcome = orch.run_once()

            self.assertFalse(outcome.committed)
            self.assertIn("P2", outcome.error)
            self.assertEqual(llm.persona_calls, ["P1", "P2"])

            status = read_json(state_dir / "status.json")
            self.assertEqual(status["round"], 0)
            self.assertEqual(status["stage_pointer"], 0)
            self.assertTrue(status["last_error"])

            entries = orch.conversation.entries()
            self.assertFalse([e for e in entries if e.speaker == "P2"])
            self.assertTrue([e for e in entries if e.speaker == "SYSTEM" and e.label == "round_retry"])
            self.assertIsNone(read_json(state_dir / "policy.json"))

    def test_session_rollover_archives_and_picks_new_topic(self):
        with tempfile.TemporaryDirectory() as tmp:
            state_dir = Path(tmp)
            # 主席总是给出已用过的题目，只能退回备选题
            orch = _build(state_dir, _ScriptedLLM(generated_topic=FALLBACK_TOPICS[0]))
            total = len(orch.flow)
            outcomes = [orch.run_once() for _ in range(total)]

            self.assertTrue(all(o.committed for o in outcomes))
            self.assertTrue(outcomes[-1].rolled_over)
            self.assertEqual(outcomes[-1].stage_key, "closing")
            self.assertEqual(orch.session.session_id, 2)
            self.assertEqual(orch.session.stage_pointer, 0)
            self.assertEqual(orch.session.round, total)
            self.assertEqual(orch.plans.read("P1"), "")

            archives = list((state_dir / "archives").glob("debate_1_*.log"))
            self.assertEqual(len(archives), 1)
            self.assertIn("debate_end", archives[0].read_text(encoding="utf-8"))
            self.assertIn("### 强化学习统计", (state_dir / "experience.md").read_text(encoding="utf-8"))

            orch.run_once()
            self.assertEqual(orch.session.topic, FALLBACK_TOPICS[1])
            self.assertEqual(orch.session.topic_history, [FALLBACK_TOPICS[0], FALLBACK_TOPICS[1]])

    def test_free_budget_exhaustion_jumps_to_closing(self):
        with tempfile.TemporaryDirectory() as tmp:
            state_dir = Path(tmp)
            orch = _build(state_dir, _ScriptedLLM(reply_len=200), free_rounds=4, free_debate_total_chars=100)
            free_first = next(i for i, s in enumerate(orch.flow) if s.is_free)
            for _ in range(free_first + 1):
                orch.run_once()

            self.assertEqual(orch.session.free_stage_usage, {"P1": 100, "P2": 100})
            self.assertEqual(orch.session.stage_pointer, len(orch.flow) - 1)
            labels = [e.label for e in orch.conversation.entries() if e.speaker == "SYSTEM"]
            self.assertIn("free_budget_exhausted", labels)

            outcome = orch.run_once()
            self.assertEqual(outcome.stage_key, "closing")
            self.assertTrue(outcome.rolled_over)

    def test_silent_persona_policy_is_not_updated(self):
        with tempfile.TemporaryDirectory() as tmp:
            state_dir = Path(tmp)
            llm = _ScriptedLLM(reply_lens={"P1": 200, "P2": 20})
            orch = _build(state_dir, llm, free_rounds=2, free_debate_total_chars=100)
            free_second = next(i for i, s in enumerate(orch.flow) if s.key == "free_2")
            for _ in range(free_second + 1):
                self.assertTrue(orch.run_once().committed)

            self.assertEqual(orch.session.free_stage_usage, {"P1": 100, "P2": 40})
            self.assertEqual(llm.persona_calls.count("P1"), llm.persona_calls.count("P2") - 1)

            free_entries = [e for e in orch.conversation.entries() if e.speaker == "P1" and e.round == free_second + 1]
            self.assertEqual(len(free_entries), 1)
            self.assertIn(BUDGET_EXHAUSTED_REPLY, free_entries[0].body)

            p1 = orch.policy.personas["P1"]
            p2 = orch.policy.personas["P2"]
            self.assertEqual(p1.step, llm.persona_calls.count("P1"))
            self.assertEqual(p2.step, llm.persona_calls.count("P2"))
            last = read_jsonl(state_dir / "policy_history.jsonl")[-1]
            self.assertEqual(last["round"], free_second + 1)
            self.assertEqual(last["skipped"], ["P1"])
            self.assertEqual(last["actions"]["P1"], [])

    def test_judge_unavailable_commits_without_policy_update(self):
        with tempfile.TemporaryDirectory() as tmp:
            state_dir = Path(tmp)
            orch = _build(state_dir, _ScriptedLLM(judge_raw="评委暂时无法给出结构化评分"))
            outcome = orch.run_once()

            self.assertTrue(outcome.committed)
            status = read_json(state_dir / "status.json")
            self.assertEqual(status["round"], 1)
            self.assertEqual(status["stage_pointer"], 1)
            self.assertEqual(status["evaluated_rounds"], 0)
            self.assertIsNone(status["current_evaluation"])
            self.assertIsNone(read_json(state_dir / "policy.json"))
            self.assertIsNone(orch.policy.last_updated_round)

            labels = [e.label for e in orch.conversation.entries() if e.speaker == "SYSTEM"]
            self.assertIn("judge_unavailable", labels)
            self.assertNotIn("round_retry", labels)

    def test_unparseable_persona_output_uses_placeholder(self):
        with tempfile.TemporaryDirectory() as tmp:
            state_dir = Path(tmp)
            llm = _ScriptedLLM(raw_replies={"P2": "随便说点什么，没有任何结构"})
            orch = _build(state_dir, llm)
            outcome = orch.run_once()

            self.assertTrue(outcome.committed)
            self.assertEqual(outcome.round, 1)
            self.assertEqual(llm.persona_calls, ["P1", "P2"])

            entries = orch.conversation.entries()
            p2 = [e for e in entries if e.speaker == "P2"]
            self.assertEqual(len(p2), 1)
            self.assertIn(PARSE_FAILURE_REPLY, p2[0].body)
            labels = [e.label for e in entries if e.speaker == "SYSTEM"]
            self.assertIn("persona_parse_error", labels)
            self.assertNotIn("round_retry", labels)
            self.assertEqual(read_json(state_dir / "status.json")["round"], 1)

    def test_topic_history_survives_restart_in_full(self):
        with tempfile.TemporaryDirectory() as tmp:
            state_dir = Path(tmp)
            orch = _build(state_dir, _ScriptedLLM())
            topics = [f"辩题{i}" for i in range(80)]
            for t in topics:
                orch.session.record_topic(t)
            orch.save_status()

            reloaded = SessionState.from_dict(read_json(state_dir / "status.json"))
            self.assertEqual(reloaded.topic_history, topics)
            self.assertEqual(_build(state_dir, _ScriptedLLM()).session.topic_history, topics)

    def test_restart_resumes_from_persisted_state(self):
        with tempfile.TemporaryDirectory() as tmp:
            state_dir = Path(tmp)
            _build(state_dir, _ScriptedLLM()).run_once()

            resumed = _build(state_dir, _ScriptedLLM())
            self.assertEqual(resumed.session.round, 1)
            self.assertEqual(resumed.policy.last_updated_round, 1)
            outcome = resumed.run_once()
            self.assertEqual(outcome.round, 2)
            self.assertEqual(outcome.stage_key, "cross_1")


if __name__ == "__main__":
    unittest.main()
