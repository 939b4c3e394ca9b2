import json
import logging
import tempfile
import unittest
from pathlib import Path

from duel_arena.config_loader import LoggingSettings
from duel_arena.logging_config import JSONFormatter, TextFormatter, configure_logging


def _record(fields=None) -> logging.LogRecord:
    record = logging.LogRecord("duel_arena.test", logging.INFO, __file__, 1, "round.committed", None, None)
    if fields is not None:
        record.fields = fields
    return record


class TestLoggingConfig(unittest.TestCase):
    def test_json_formatter_flattens_fields(self):
        line = JSONFormatter().format(_record({"round": 3, "persona": "P1", "raw": "x" * 3000}))
        data = json.loads(line)
        self.assertEqual(data["msg"], "round.committed")
        self.assertEqual(data["round"], 3)
        self.assertEqual(len(data["raw"]), 2003)

    def test_text_formatter(self):
        text = TextFormatter().format(_record({"round": 3}))
        self.assertIn("[INFO] round.committed round=3", text)

    def test_configure_writes_json_file(self):
        root = logging.getLogger()
        saved = (root.level, root.handlers[:])
        try:
            with tempfile.TemporaryDirectory() as tmp:
                path = Path(tmp) / "logs" / "arena.log"
                configure_logging(LoggingSettings(level="DEBUG", log_file=str(path)))
                logging.getLogger("duel_arena.test").info("lock.acquired", extra={"fields": {"pid": 1}})
                for handler in root.handlers:
                    handler.flush()
                last = path.read_text(encoding="utf-8").strip().splitlines()[-1]
                self.assertEqual(json.loads(last)["pid"], 1)
                for handler in root.handlers[:]:
                    handler.close()
                    root.removeHandler(handler)
        finally:
            root.setLevel(saved[0])
            for handler in saved[1]:
                root.addHandler(handler)


if __name__ == "__main__":
    unittest.main()
