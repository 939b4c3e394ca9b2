"""
主席（Moderator）Agent：只负责辩题，不参与辩论。

职责：
- 每场开始时确定辩题：沿用未用过的当前辩题 → 请模型从对话分歧中生成新题 → 固定备选题轮换；
- 保证新确定的辩题不在 topic_history 中（备选题耗尽后追加“（备选N）”后缀）。

生成失败（传输错误、输出无法解析、与历史重复）一律降级到备选题，不抛出。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from duel_arena.llm_factory import ChatModelClient, TransportError
from duel_arena.utils.json_utils import try_extract_json_object

logger = logging.getLogger(__name__)

FALLBACK_TOPICS: tuple[str, ...] = (
    "人工智能应否优先用于公共治理而非商业营销？",
    "高校招生应更看重综合素质而非统一考试成绩？",
    "城市应限制私家车出行以改善环境？",
    "短视频平台应承担用户成瘾的主要责任？",
    "企业远程办公应成为常态而非特例？",
    "未成年人应全面禁止网络直播打赏？",
    "应否对生成式 AI 内容强制标注来源？",
    "公共资源分配应优先效率还是公平？",
)
FALLBACK_BASE_TOPIC = "公共政策应更强调公平还是效率？"

_TOPIC_SYSTEM_PROMPT = (
    "你是一个辩论题目生成助手。分析给定的对话内容，找出核心分歧点，并基于此生成一个新的辩论题目。"
    "要求：1）题目必须可辩论，不能是事实陈述；2）题目不能与历史题目相同；3）题目应该引发对立观点；"
    "4）题目简洁明确，10-30字。"
    '输出严格JSON格式：{"disagreement":"核心分歧点","new_topic":"新辩论题目"}'
)


@dataclass(frozen=True)
class TopicDecision:
    """
    source: current / generated / fallback
    """

    topic: str
    source: str
    disagreement: str = ""


def pick_fallback_topic(history: list[str]) -> str:
    used = {t.strip() for t in history}
    for candidate in FALLBACK_TOPICS:
        if candidate not in used:
            return candidate
    candidate = FALLBACK_BASE_TOPIC
    index = 1
    while candidate in used:
        candidate = f"{FALLBACK_BASE_TOPIC}（备选{index}）"
        index += 1
    return candidate


class ChairmanAgent:
    def __init__(self, client: ChatModelClient | None) -> None:
        self._client = client

    @property
    def client(self) -> ChatModelClient | None:
        return self._client

    def generate_topic(self, *, conversation: str, current_topic: str, history: list[str], round_num: int) -> tuple[str, str]:
        """
        返回 (新辩题, 分歧点)；无法生成时返回 ("", "")。
        """

        if self._client is None or not conversation.strip():
            return "", ""
        history_text = "；".join(history[-20:]) if history else "(无)"
        user_prompt = "\n".join(
            [
                f"当前轮次：{round_num}",
                f"当前题目：{current_topic or '(未设定)'}",
                f"历史题目：{history_text}",
                "【对话内容】",
                conversation,
            ]
        )
        try:
            result = self._client.chat(_TOPIC_SYSTEM_PROMPT, user_prompt)
        except TransportError as e:
            logger.error("topic.generate.failed", extra={"fields": {"round": round_num, "error": str(e)}})
            return "", ""

        data = try_extract_json_object(result.content) or {}
        topic = str(data.get("new_topic") or "").strip()
        if not topic or topic in history:
            return "", ""
        return topic, str(data.get("disagreement") or "").strip()

    def resolve_topic(
        self,
        *,
        current_topic: str,
        history: list[str],
        conversation: str,
        round_num: int,
    ) -> TopicDecision:
        trimmed = (current_topic or "").strip()
        if trimmed and trimmed not in history:
            return TopicDecision(topic=trimmed, source="current")

        generated, disagreement = self.generate_topic(
            conversation=conversation, current_topic=trimmed, history=history, round_num=round_num
        )
        if generated:
            logger.info("topic.generated", extra={"fields": {"round": round_num, "topic": generated}})
            return TopicDecision(topic=generated, source="generated", disagreement=disagreement)

        fallback = pick_fallback_topic(history)
        logger.info("topic.fallback", extra={"fields": {"round": round_num, "topic": fallback}})
        return TopicDecision(topic=fallback, source="fallback")
