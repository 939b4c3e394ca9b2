import tempfile
import unittest
from pathlib import Path

from duel_arena.state_store import read_jsonl
from duel_arena.transcript import (
    ConversationLog,
    append_and_trim,
    build_conversation_entry,
    parse_conversation,
)


def _log(tmp: str) -> ConversationLog:
    base = Path(tmp)
    return ConversationLog(base / "conversation.log", archive_dir=base / "archives", events_path=base / "events.jsonl")


class TestTranscript(unittest.TestCase):
    def test_entry_format(self):
        entry = build_conversation_entry("P1", "  正文  ", 3, "", "陈词阶段", timestamp="2026-01-01 12:00:00 UTC+8")
        self.assertEqual(entry, "[2026-01-01 12:00:00 UTC+8] P1 (Round 3)\nTopic: (待定)\nStage: 陈词阶段\n正文\n\n")

    def test_append_and_parse(self):
        with tempfile.TemporaryDirectory() as tmp:
            log = _log(tmp)
            log.append_reply("P1", "第一段\n第二段", 1, "题目A", "陈词阶段")
            log.append_system_event("judge_unavailable", "评委不可用")
            log.append_reply("P2", "回应", 1, "题目A", "陈词阶段")

            entries = log.entries()
            self.assertEqual([e.speaker for e in entries], ["P1", "SYSTEM", "P2"])
            self.assertEqual(entries[0].round, 1)
            self.assertEqual(entries[0].topic, "题目A")
            self.assertEqual(entries[0].body, "第一段\n第二段")
            self.assertEqual(entries[1].label, "judge_unavailable")
            self.assertIsNone(entries[1].round)

            types = [r["type"] for r in read_jsonl(Path(tmp) / "events.jsonl")]
            self.assertEqual(types, ["message", "system", "message"])

    def test_tail_drops_partial_head(self):
        text = build_conversation_entry("P1", "x" * 50, 1, "T", timestamp="t1") + build_conversation_entry(
            "P2", "tail", 1, "T", timestamp="t2"
        )
        entries = parse_conversation(text[20:])
        self.assertEqual([e.speaker for e in entries], ["P2"])

    def test_append_and_trim(self):
        self.assertEqual(append_and_trim("abc\n", "def", 4), "\ndef")
        self.assertEqual(append_and_trim("abc\n", "def", 5), "c\ndef")
        self.assertEqual(append_and_trim("abc", "def", 0), "abc\ndef")

    def test_archive_moves_and_truncates(self):
        with tempfile.TemporaryDirectory() as tmp:
            log = _log(tmp)
            self.assertIsNone(log.archive(1, "空"))
            log.append_reply("P1", "内容", 1, "城市/限行?", None)
            target = log.archive(1, "城市/限行?")
            self.assertIsNotNone(target)
            self.assertTrue(target.name.startswith("debate_1_"))
            self.assertTrue(target.name.endswith("城市_限行_.log"))
            self.assertIn("内容", target.read_text(encoding="utf-8"))
            self.assertEqual(log.read_full(), "")


if __name__ == "__main__":
    unittest.main()
