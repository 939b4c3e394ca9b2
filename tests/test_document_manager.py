import tempfile
import unittest
from pathlib import Path

from duel_arena.document_manager import ExperienceBook, PlanningDocuments, PlanOp, apply_plan_ops, parse_plan_ops


class TestPlanOps(unittest.TestCase):
    def test_parse_mixed_forms(self):
        ops = parse_plan_ops(
            [
                "add: 强调数据口径",
                "删除：旧论点",
                "change: 成本 => 长期成本",
                {"op": "修改", "from": "定义", "to": "收窄定义"},
                "直接写的一条",
                {"op": "unknown", "text": "忽略"},
            ]
        )
        self.assertEqual(
            ops,
            [
                PlanOp("add", text="强调数据口径"),
                PlanOp("del", text="旧论点"),
                PlanOp("change", text="长期成本", old="成本"),
                PlanOp("change", text="收窄定义", old="定义"),
                PlanOp("add", text="直接写的一条"),
            ],
        )

    def test_apply_ops(self):
        lines = ["- [t0] 旧论点一", "- [t0] 成本分析", "- [t0] 旧论点二"]
        ops = [PlanOp("del", text="旧论点"), PlanOp("change", text="长期成本", old="成本"), PlanOp("change", text="新增", old="不存在")]
        out, applied = apply_plan_ops(lines, ops, "t1")
        self.assertEqual(out, ["- [t1] 长期成本", "- [t1] 新增"])
        self.assertEqual(len(applied), 3)

    def test_unmatched_delete_is_not_reported(self):
        out, applied = apply_plan_ops(["- [t0] a"], [PlanOp("del", text="zzz")], "t1")
        self.assertEqual(out, ["- [t0] a"])
        self.assertEqual(applied, [])


class TestDocuments(unittest.TestCase):
    def test_plan_documents_apply_and_reset(self):
        with tempfile.TemporaryDirectory() as tmp:
            docs = PlanningDocuments(Path(tmp))
            self.assertEqual(docs.read("P1"), "")
            self.assertEqual(docs.apply("P1", "add: 先立定义"), ["add: 先立定义"])
            self.assertIn("先立定义", docs.read("P1"))
            self.assertEqual(docs.read("P2"), "")
            docs.reset()
            self.assertEqual(docs.read("P1"), "")

    def test_experience_summary(self):
        with tempfile.TemporaryDirectory() as tmp:
            book = ExperienceBook(Path(tmp) / "experience.md", max_chars=10000)
            text = book.append_session_summary(
                session_id=3,
                topic="题目",
                updates={"P1": ["先定义再论证"], "P2": []},
                evaluated_rounds=2,
                cumulative_scores={"P1": 15.0, "P2": 12.0},
                policy_summary={"P1": {"steps": 2, "avg_reward": 0.1, "baseline": 0.05}},
            )
            self.assertIn("Debate 3", text)
            self.assertIn("- P1: 先定义再论证", text)
            self.assertIn("正方平均分: 7.50/10", text)
            self.assertIn("正方领先", text)
            self.assertIn("P1 策略: 步数 2", text)
            self.assertEqual(book.read_tail(), text)


if __name__ == "__main__":
    unittest.main()
