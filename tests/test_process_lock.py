import json
import os
import tempfile
import unittest
from pathlib import Path

from duel_arena.process_lock import LockContentionError, PidLock, is_process_alive


def _dead_pid() -> int:
    pid = 999_999
    while is_process_alive(pid):
        pid -= 1
    return pid


class TestPidLock(unittest.TestCase):
    def test_acquire_and_release(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "agent.lock"
            with PidLock(path) as lock:
                self.assertTrue(lock.held)
                self.assertEqual(json.loads(path.read_text(encoding="utf-8"))["pid"], os.getpid())
            self.assertFalse(path.exists())

    def test_live_owner_blocks(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "agent.lock"
            # 当前测试进程自身是“存活的其他持有者”
            path.write_text(json.dumps({"pid": os.getpid()}), encoding="utf-8")
            with self.assertRaises(LockContentionError) as ctx:
                PidLock(path, pid=os.getpid() + 1).acquire()
            self.assertEqual(ctx.exception.pid, os.getpid())
            self.assertTrue(path.exists())

    def test_stale_lock_is_taken_over(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "agent.lock"
            path.write_text(json.dumps({"pid": _dead_pid()}), encoding="utf-8")
            lock = PidLock(path)
            lock.acquire()
            self.assertTrue(lock.held)
            self.assertEqual(json.loads(path.read_text(encoding="utf-8"))["pid"], os.getpid())
            lock.release()
            self.assertFalse(path.exists())

    def test_garbage_lock_file_is_taken_over(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "agent.lock"
            path.write_text("not json", encoding="utf-8")
            with PidLock(path) as lock:
                self.assertTrue(lock.held)

    def test_release_keeps_foreign_lock(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "agent.lock"
            lock = PidLock(path)
            lock.acquire()
            path.write_text(json.dumps({"pid": 12345}), encoding="utf-8")
            lock.release()
            self.assertTrue(path.exists())


if __name__ == "__main__":
    unittest.main()
