import json
import unittest


from duel_arena.agents.judge import JudgeAgent, parse_round_evaluation
from duel_arena.config_loader import LlmSettings
from duel_arena.llm_factory import ChatModelClient


class _FakeResp:
    def __init__(self, content: str) -> None:
        self.content = content


class _FakeLLM:
    def __init__(self, output) -> None:
        self._output = output

    def invoke(self, _messages, **_kwargs):
        if isinstance(self._output, Exception):
            raise self._output
        return _FakeResp(self._output)


def _judge(output) -> JudgeAgent:
    settings = LlmSettings(max_retries=0)
    return JudgeAgent(ChatModelClient(_FakeLLM(output), settings, sleep=lambda _s: None), settings)


def _round_kwargs():
    return dict(topic="T", stage_label="陈词", stage_key="opening", stage_rule="", replies={"P1": "a", "P2": "b"}, round_num=1)


class TestParseRoundEvaluation(unittest.TestCase):
    def test_clamps_and_recomputes_averages(self):
        data = {
            "scores": {
                "A": {"logic": 12, "evidence": 8, "responsiveness": 7, "expression": "6", "rule_compliance": 9},
                "反方": {"logic": 0, "evidence": 5, "responsiveness": 5, "expression": 5, "rule_compliance": 5},
            },
            "averages": {"P1": 1, "P2": 10},
            "round_winner": "正方",
            "highlights": {"P1": ["a", "b", "c", "d"]},
        }
        ev = parse_round_evaluation(data)
        self.assertEqual(ev.scores["P1"]["logic"], 10.0)
        self.assertEqual(ev.scores["P2"]["logic"], 1.0)
        self.assertEqual(ev.averages, {"P1": 8.0, "P2": 4.2})
        self.assertEqual(ev.round_winner, "P1")
        self.assertEqual(ev.highlights["P1"], ["a", "b", "c"])
        self.assertEqual(ev.suggestions["P2"], [])

    def test_winner_falls_back_to_averages(self):
        dims = {"logic": 5, "evidence": 5, "responsiveness": 5, "expression": 5, "rule_compliance": 5}
        ev = parse_round_evaluation({"scores": {"P1": dims, "P2": {**dims, "logic": 9}}, "round_winner": "?"})
        self.assertEqual(ev.round_winner, "P2")

    def test_missing_dimension_is_rejected(self):
        data = {"scores": {"P1": {"logic": 5}, "P2": {"logic": 5}}}
        self.assertIsNone(parse_round_evaluation(data))
        self.assertIsNone(parse_round_evaluation(None))


class TestJudgeAgent(unittest.TestCase):
    def test_unavailable_judge_returns_none(self):
        self.assertIsNone(_judge(TimeoutError("timeout")).evaluate_round(**_round_kwargs()))
        self.assertIsNone(_judge("我觉得正方更好").evaluate_round(**_round_kwargs()))

    def test_round_evaluation(self):
        dims = {"logic": 7, "evidence": 7, "responsiveness": 7, "expression": 7, "rule_compliance": 7}
        output = json.dumps({"scores": {"P1": dims, "P2": dims}, "round_winner": "tie", "core_conflict": "X"})
        ev = _judge(output).evaluate_round(**_round_kwargs())
        self.assertEqual(ev.round_winner, "tie")
        self.assertEqual(ev.core_conflict, "X")

    def test_debate_evaluation(self):
        output = json.dumps({"winner": "反方", "final_scores": {"P1": 70, "P2": 120}, "overall_comment": "ok"}, ensure_ascii=False)
        result = _judge(output).evaluate_debate(topic="T", history="...")
        self.assertEqual(result["winner"], "P2")
        self.assertEqual(result["final_scores"], {"P1": 70.0, "P2": 100.0})
        self.assertIsNone(_judge("{}").evaluate_debate(topic="T", history="..."))


if __name__ == "__main__":
    unittest.main()
