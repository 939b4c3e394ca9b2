"""
命令行入口。

- run：在单实例锁下无限循环推进辩论（SIGINT / SIGTERM 优雅退出）
- once：只推进一轮
- status：打印当前会话状态文档
- flow：打印赛程阶段表
"""

from __future__ import annotations

import argparse
import os
import signal
import sys
import threading

from duel_arena.config_loader import ArenaSettings, load_settings
from duel_arena.llm_factory import load_env
from duel_arena.logging_config import configure_logging
from duel_arena.process_lock import LockContentionError, PidLock
from duel_arena.stages import build_debate_flow, format_stage_length_guide
from duel_arena.state_store import StatePaths, read_json
from duel_arena.utils.json_utils import dumps_pretty


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="duel-arena", add_help=True)

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("run", help="在单实例锁下持续进行 P1/P2 自我对弈辩论")
    subparsers.add_parser("once", help="只推进一轮（一个赛程阶段）")
    subparsers.add_parser("status", help="打印 state/status.json")
    subparsers.add_parser("flow", help="打印赛程阶段表")
    return parser


def _print_flow(settings: ArenaSettings) -> None:
    debate = settings.debate
    flow = build_debate_flow(
        debate.free_rounds,
        free_debate_total_chars=debate.free_debate_total_chars,
        free_debate_max_rounds=debate.free_debate_max_rounds,
    )
    for i, stage in enumerate(flow, start=1):
        order = " → ".join(stage.speaker_order)
        print(f"{i:>2}. [{stage.key}] {stage.title}  {order}  {format_stage_length_guide(stage)}")


def _print_status(settings: ArenaSettings) -> None:
    storage = settings.storage
    paths = StatePaths(storage.state_dir, archive_dir_name=storage.archive_dir_name, lock_file=storage.lock_file)
    status = read_json(paths.status, default=None)
    if status is None:
        print(f"尚无状态文件：{paths.status}")
        return
    print(dumps_pretty(status))


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _handle(signum, _frame) -> None:
        print(f"收到信号 {signum}，当前轮结束后退出……", file=sys.stderr)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    load_env()
    try:
        settings = load_settings()
    except ValueError as e:
        print(f"配置错误：{e}", file=sys.stderr)
        sys.exit(2)
    configure_logging(settings.logging)

    if args.command == "flow":
        _print_flow(settings)
        sys.exit(0)
    if args.command == "status":
        _print_status(settings)
        sys.exit(0)

    from duel_arena.orchestration.graph import build_orchestrator

    storage = settings.storage
    lock_path = StatePaths(storage.state_dir, lock_file=storage.lock_file).lock
    try:
        with PidLock(lock_path):
            orchestrator = build_orchestrator(settings)
            if args.command == "once":
                outcome = orchestrator.run_once()
                if outcome.committed:
                    print(f"第 {outcome.round} 轮已提交（{outcome.stage_key}）")
                    sys.exit(0)
                print(f"本轮放弃：{outcome.error}", file=sys.stderr)
                sys.exit(1)

            stop_event = threading.Event()
            _install_signal_handlers(stop_event)
            orchestrator.run_forever(stop_event)
    except LockContentionError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        # 缺少 LLM_BASE_URL / LLM_MODEL 等
        print(f"配置错误：{e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        print(f"运行失败：{e}", file=sys.stderr)
        if os.getenv("DUEL_ARENA_DEBUG", "").strip() in {"1", "true", "yes"}:
            import traceback

            traceback.print_exc()
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
