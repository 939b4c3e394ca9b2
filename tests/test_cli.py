import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout
from unittest import mock

from duel_arena import cli


class TestCli(unittest.TestCase):
    def _run(self, argv, env=None) -> tuple[int, str]:
        out = io.StringIO()
        with mock.patch.object(cli, "configure_logging"), mock.patch.dict(os.environ, env or {}), redirect_stdout(out):
            with self.assertRaises(SystemExit) as ctx:
                cli.main(argv)
        return ctx.exception.code, out.getvalue()

    def test_flow_lists_stages(self):
        code, text = self._run(["flow"], {"DUEL_ARENA_FREE_ROUNDS": "2", "DUEL_ARENA_CONFIG_DIR": ""})
        self.assertEqual(code, 0)
        self.assertIn("[opening]", text)
        self.assertIn("[free_2]", text)
        self.assertNotIn("[free_3]", text)
        self.assertIn("[closing]", text)

    def test_status_prints_document(self):
        with tempfile.TemporaryDirectory() as tmp:
            env = {"DUEL_ARENA_STATE_DIR": tmp, "DUEL_ARENA_CONFIG_DIR": ""}
            code, text = self._run(["status"], env)
            self.assertEqual(code, 0)
            self.assertIn("尚无状态文件", text)

            with open(os.path.join(tmp, "status.json"), "w", encoding="utf-8") as f:
                json.dump({"round": 5}, f)
            code, text = self._run(["status"], env)
            self.assertEqual(json.loads(text)["round"], 5)


if __name__ == "__main__":
    unittest.main()
