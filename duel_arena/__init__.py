"""
duel_arena 包

无人值守的 LLM 自我对弈辩论引擎：
- 两位辩手（P1 正方 / P2 反方）按固定赛程逐阶段交锋
- 评委逐轮五维打分，战术策略按评分做在线更新
- 交锋状态机刻画压迫 / 防守 / 崩溃等对话态势
- 全部状态落盘（原子写），进程重启后可从上一轮继续
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
