import random
import tempfile
import unittest
from pathlib import Path

from duel_arena.agents.judge import parse_round_evaluation
from duel_arena.config_loader import PolicySettings
from duel_arena.policy import TACTICS, TacticPolicy, normalize_probs, replies_duplicate
from duel_arena.state_store import read_jsonl


def _evaluation(p1: float, p2: float, rule: float | None = None):
    dims = ("logic", "evidence", "responsiveness", "expression")
    s1 = {d: p1 for d in dims}
    s2 = {d: p2 for d in dims}
    s1["rule_compliance"] = p1 if rule is None else rule
    s2["rule_compliance"] = p2 if rule is None else rule
    return parse_round_evaluation({"scores": {"P1": s1, "P2": s2}, "suggestions": {"P1": ["请补充数据证据"]}})


def _policy(tmp: str, **settings) -> TacticPolicy:
    base = Path(tmp)
    return TacticPolicy(
        PolicySettings(**settings),
        policy_path=base / "policy.json",
        history_path=base / "policy_history.jsonl",
        rng=random.Random(3),
    )


class TestNormalizeProbs(unittest.TestCase):
    def test_sum_and_floor(self):
        raw = {"a": 0.9, "b": 0.0, "c": 0.001, "d": 0.5}
        out = normalize_probs(raw, 0.05)
        self.assertAlmostEqual(sum(out.values()), 1.0)
        self.assertTrue(all(v >= 0.05 - 1e-12 for v in out.values()))
        self.assertGreater(out["a"], out["d"])

    def test_floor_larger_than_uniform(self):
        out = normalize_probs({"a": 1.0, "b": 0.0}, 0.7)
        self.assertAlmostEqual(out["a"], 0.5)
        self.assertAlmostEqual(out["b"], 0.5)


class TestTacticPolicy(unittest.TestCase):
    def test_selection_is_cached_within_round(self):
        with tempfile.TemporaryDirectory() as tmp:
            policy = _policy(tmp, action_count=2)
            first = policy.select_actions(1, "P1")
            self.assertEqual(len(first), 2)
            self.assertEqual(len(set(first)), 2)
            for _ in range(5):
                self.assertEqual(policy.select_actions(1, "P1"), first)

    def test_update_keeps_distribution_valid(self):
        with tempfile.TemporaryDirectory() as tmp:
            policy = _policy(tmp, min_prob=0.03, learning_rate=0.5)
            for round_num in range(1, 30):
                policy.select_actions(round_num, "P1")
                policy.select_actions(round_num, "P2")
                policy.update_from_evaluation(_evaluation(9, 3), round_num, {"P1": f"a{round_num}", "P2": "b"})
            for persona in ("P1", "P2"):
                probs = policy.personas[persona].tactic_probs
                self.assertEqual(len(probs), len(TACTICS))
                self.assertAlmostEqual(sum(probs.values()), 1.0)
                self.assertTrue(all(p >= 0.03 - 1e-9 for p in probs.values()))

    def test_same_round_is_applied_once(self):
        with tempfile.TemporaryDirectory() as tmp:
            policy = _policy(tmp)
            policy.select_actions(4, "P1")
            policy.select_actions(4, "P2")
            evaluation = _evaluation(7, 6)
            self.assertIsNotNone(policy.update_from_evaluation(evaluation, 4, {"P1": "x", "P2": "y"}))
            snapshot = dict(policy.personas["P1"].tactic_probs)
            self.assertIsNone(policy.update_from_evaluation(evaluation, 4, {"P1": "x", "P2": "y"}))
            self.assertEqual(policy.personas["P1"].tactic_probs, snapshot)
            self.assertEqual(policy.personas["P1"].step, 1)
            self.assertEqual(len(read_jsonl(Path(tmp) / "policy_history.jsonl")), 1)

            reloaded = _policy(tmp)
            self.assertEqual(reloaded.last_updated_round, 4)
            self.assertIsNone(reloaded.update_from_evaluation(evaluation, 4, {"P1": "x", "P2": "y"}))

    def test_persona_without_selection_this_round_is_not_updated(self):
        with tempfile.TemporaryDirectory() as tmp:
            policy = _policy(tmp)
            policy.select_actions(1, "P1")
            policy.select_actions(1, "P2")
            policy.update_from_evaluation(_evaluation(8, 5), 1, {"P1": "x", "P2": "y"})
            p1_before = policy.personas["P1"].to_dict()

            # 第 2 轮只有 P2 被询问
            chosen = policy.select_actions(2, "P2")
            self.assertIsNone(policy.actions_for_round(2, "P1"))
            record = policy.update_from_evaluation(_evaluation(9, 4), 2, {"P1": "占位", "P2": "z"})

            self.assertEqual(record["skipped"], ["P1"])
            self.assertEqual(record["actions"], {"P1": [], "P2": chosen})
            self.assertEqual(policy.personas["P1"].to_dict(), p1_before)
            self.assertEqual(policy.personas["P1"].step, 1)
            self.assertEqual(policy.personas["P2"].step, 2)
            self.assertEqual(policy.metrics["P1"].steps, 1)

    def test_missing_evaluation_skips_update(self):
        with tempfile.TemporaryDirectory() as tmp:
            policy = _policy(tmp)
            self.assertIsNone(policy.update_from_evaluation(None, 1, {"P1": "x", "P2": "y"}))
            self.assertIsNone(policy.last_updated_round)
            self.assertFalse((Path(tmp) / "policy.json").exists())

    def test_duplicate_penalty_is_exact(self):
        with tempfile.TemporaryDirectory() as tmp:
            policy = _policy(tmp, duplicate_penalty=0.15)
            evaluation = _evaluation(6, 6, rule=6)
            plain = policy.compute_reward(evaluation, "P1", duplicate=False)
            penalized = policy.compute_reward(evaluation, "P1", duplicate=True)
            self.assertAlmostEqual(plain - penalized, 0.15)

            record = policy.update_from_evaluation(evaluation, 1, {"P1": "同一段话", "P2": "同一段话"})
            self.assertTrue(record["duplicate_reply"])
            self.assertAlmostEqual(record["rewards"]["P1"], penalized)
            self.assertAlmostEqual(record["rewards"]["P2"], penalized)
            self.assertEqual(record["skipped"], ["P1", "P2"])

    def test_near_duplicate_detection(self):
        text = "我方认为城市应当限制私家车出行以改善空气质量并缓解拥堵"
        self.assertTrue(replies_duplicate(text, text + "。", 0.9))
        self.assertFalse(replies_duplicate(text, "反方认为限行损害个人出行自由", 0.9))
        self.assertFalse(replies_duplicate("", "", 0.9))

    def test_persisted_state_round_trip(self):
        with tempfile.TemporaryDirectory() as tmp:
            policy = _policy(tmp)
            for round_num in (1, 2, 3):
                policy.select_actions(round_num, "P1")
                policy.select_actions(round_num, "P2")
                policy.update_from_evaluation(_evaluation(8, 5), round_num, {"P1": "x", "P2": "y"})
            reloaded = _policy(tmp)
            for persona in ("P1", "P2"):
                for key, p in policy.personas[persona].tactic_probs.items():
                    self.assertAlmostEqual(reloaded.personas[persona].tactic_probs[key], p, places=12)
                self.assertEqual(reloaded.personas[persona].focus, policy.personas[persona].focus)
                self.assertEqual(reloaded.personas[persona].step, 3)

    def test_version_mismatch_resets(self):
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / "policy.json").write_text('{"version": 99, "last_updated_round": 8}', encoding="utf-8")
            policy = _policy(tmp)
            self.assertIsNone(policy.last_updated_round)
            self.assertAlmostEqual(policy.personas["P1"].tactic_probs["data_anchor"], 1 / len(TACTICS))

    def test_focus_moves_toward_weak_dimension(self):
        with tempfile.TemporaryDirectory() as tmp:
            policy = _policy(tmp)
            policy.select_actions(1, "P1")
            policy.select_actions(1, "P2")
            policy.update_from_evaluation(_evaluation(4, 8), 1, {"P1": "x", "P2": "y"})
            focus = policy.personas["P1"].focus
            self.assertGreater(focus["evidence"], 1.0)
            self.assertGreater(focus["evidence"], focus["expression"])
            context = policy.prompt_context("P2", 2, {"logic": 8, "evidence": 8}, {"logic": 4, "evidence": 9})
            self.assertEqual(len(context["focus"]), 3)
            self.assertTrue(any("逻辑性" in w for w in context["weaknesses"]))


if __name__ == "__main__":
    unittest.main()
