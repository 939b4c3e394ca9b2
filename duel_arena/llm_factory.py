"""
LLM 工厂：统一创建对话模型实例，并负责传输层重试。

约定：
- 使用 OpenAI 兼容接口（vLLM / 智谱 / DeepSeek 均可），通过 langchain_openai.ChatOpenAI 对接；
- LLM_API_KEY / LLM_BASE_URL / LLM_MODEL 由 .env 提供；本地 vLLM 可不填 key；
- ChatOpenAI 自身的重试关闭（max_retries=0），由 ChatModelClient 按配置做带抖动的指数退避，
  并区分可重试（超时、限流、5xx、连接被重置）与致命错误；
- 请不要在代码/日志中输出真实 API_KEY。
"""

from __future__ import annotations

import logging
import os
import random
import re
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Callable

import openai
from langchain_core.messages import HumanMessage, SystemMessage

from duel_arena.config_loader import LlmSettings

logger = logging.getLogger(__name__)

_RETRYABLE_KEYWORDS = (
    "timeout",
    "timed out",
    "rate limit",
    "try again",
    "overloaded",
    "temporar",
    "econnreset",
    "etimedout",
    "econnrefused",
    "connection reset",
    "connection refused",
)


def load_env() -> None:
    """
    加载本地环境变量（优先读取项目根目录 .env）。

    说明：
    - .env 不应提交到仓库
    - .env.example 作为模板
    """

    try:
        from dotenv import load_dotenv  # type: ignore
    except ModuleNotFoundError as e:
        raise RuntimeError("缺少依赖 python-dotenv。请先安装项目依赖后再运行。") from e

    load_dotenv(override=False)


class TransportError(RuntimeError):
    """
    模型通道的传输层失败（已按配置重试或判定为不可重试）。

    编排器捕获后放弃本轮、不推进轮次。
    """

    def __init__(self, message: str, *, retryable: bool, attempts: int) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.attempts = attempts


@dataclass(frozen=True)
class ChatResult:
    content: str
    usage: dict[str, int] | None = None


@dataclass
class TokenStats:
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    total_tokens: int = 0
    requests: int = 0
    last_updated: str | None = None

    def add(self, usage: dict[str, int] | None) -> None:
        if not usage:
            return
        self.total_prompt_tokens += int(usage.get("prompt_tokens", 0) or 0)
        self.total_completion_tokens += int(usage.get("completion_tokens", 0) or 0)
        self.total_tokens += int(usage.get("total_tokens", 0) or 0)
        self.requests += 1
        self.last_updated = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())

    def merge(self, other: "TokenStats") -> None:
        if not other.requests:
            return
        self.total_prompt_tokens += other.total_prompt_tokens
        self.total_completion_tokens += other.total_completion_tokens
        self.total_tokens += other.total_tokens
        self.requests += other.requests
        self.last_updated = other.last_updated or self.last_updated

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TokenStats":
        data = data or {}
        return cls(
            total_prompt_tokens=int(data.get("total_prompt_tokens", 0) or 0),
            total_completion_tokens=int(data.get("total_completion_tokens", 0) or 0),
            total_tokens=int(data.get("total_tokens", 0) or 0),
            requests=int(data.get("requests", 0) or 0),
            last_updated=data.get("last_updated"),
        )


def is_retryable_error(err: BaseException) -> bool:
    """
    判断一次调用失败是否值得重试。

    优先看 openai SDK 的异常类型，其次看 HTTP 状态码，最后退化为错误信息关键词。
    """

    if isinstance(err, (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)):
        return True
    if isinstance(err, (TimeoutError, ConnectionError)):
        return True

    status = getattr(err, "status_code", None) or getattr(err, "status", None)
    if isinstance(status, int):
        if status in (408, 429) or 500 <= status < 600:
            return True
        if 400 <= status < 500:
            return False

    message = str(err).lower()
    return any(kw in message for kw in _RETRYABLE_KEYWORDS)


def _extract_usage(resp: Any) -> dict[str, int] | None:
    meta = getattr(resp, "usage_metadata", None)
    if isinstance(meta, dict) and meta:
        return {
            "prompt_tokens": int(meta.get("input_tokens", 0) or 0),
            "completion_tokens": int(meta.get("output_tokens", 0) or 0),
            "total_tokens": int(meta.get("total_tokens", 0) or 0),
        }
    response_meta = getattr(resp, "response_metadata", None)
    if isinstance(response_meta, dict):
        usage = response_meta.get("token_usage")
        if isinstance(usage, dict) and usage:
            return {k: int(usage.get(k, 0) or 0) for k in ("prompt_tokens", "completion_tokens", "total_tokens")}
    return None


class ChatModelClient:
    """
    模型协作者：(system, user, 生成参数) -> ChatResult。

    llm 只需提供 .invoke(messages, **kwargs)（与 ChatOpenAI 兼容），测试中可传入假对象。
    """

    def __init__(
        self,
        llm,
        settings: LlmSettings,
        *,
        name: str = "default",
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self._llm = llm
        self._settings = settings
        self._name = name
        self._sleep = sleep
        self._rand = rand
        self.stats = TokenStats()

    @property
    def name(self) -> str:
        return self._name

    def backoff_seconds(self, attempt: int) -> float:
        s = self._settings
        delay = s.retry_base_seconds * (s.retry_backoff_multiplier ** max(0, attempt - 1))
        delay += self._rand() * s.retry_jitter_seconds
        return min(s.retry_max_seconds, delay)

    def chat(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> ChatResult:
        request_id = uuid.uuid4().hex[:8]
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]
        kwargs: dict[str, Any] = {}
        if max_tokens:
            kwargs["max_tokens"] = int(max_tokens)
        if temperature is not None:
            kwargs["temperature"] = float(temperature)

        logger.debug(
            "llm.request.start",
            extra={"fields": {"request_id": request_id, "model": self._name, "prompt_chars": len(system_prompt) + len(user_prompt)}},
        )
        attempt = 0
        started = time.monotonic()
        while True:
            try:
                resp = self._llm.invoke(messages, **kwargs)
                break
            except Exception as e:
                attempt += 1
                retryable = is_retryable_error(e)
                if not retryable or attempt > self._settings.max_retries:
                    logger.error(
                        "llm.request.failed",
                        extra={"fields": {"request_id": request_id, "attempt": attempt, "retryable": retryable, "error": str(e)}},
                    )
                    raise TransportError(
                        f"{type(e).__name__}: {e}", retryable=retryable, attempts=attempt
                    ) from e
                delay = self.backoff_seconds(attempt)
                logger.warning(
                    "llm.request.retry",
                    extra={"fields": {"request_id": request_id, "attempt": attempt, "sleep_seconds": round(delay, 2), "error": str(e)}},
                )
                self._sleep(delay)

        content = getattr(resp, "content", resp)
        if isinstance(content, list):
            content = "".join(str(part.get("text", "")) if isinstance(part, dict) else str(part) for part in content)
        usage = _extract_usage(resp)
        self.stats.add(usage)
        logger.info(
            "llm.request.success",
            extra={"fields": {
                "request_id": request_id,
                "model": self._name,
                "ms": int((time.monotonic() - started) * 1000),
                "tokens": (usage or {}).get("total_tokens"),
            }},
        )
        return ChatResult(content=str(content or ""), usage=usage)


_LOCAL_HOST_RE = re.compile(r"^(localhost|127\.|0\.0\.0\.0|10\.|192\.168\.|172\.(1[6-9]|2\d|3[01])\.|\[?::1\]?)", re.I)


def _is_local(base_url: str) -> bool:
    host = re.sub(r"^https?://", "", base_url, flags=re.I)
    return bool(_LOCAL_HOST_RE.match(host))


def make_chat_model(settings: LlmSettings, *, model: str = "") -> ChatModelClient:
    """
    创建带重试的 Chat 模型实例。

    model: 可选的模型名覆盖（按辩手区分模型时使用），为空时读取 LLM_MODEL。
    """

    try:
        from langchain_openai import ChatOpenAI  # type: ignore
    except ModuleNotFoundError as e:
        raise RuntimeError("缺少依赖 langchain-openai。请先安装项目依赖后再运行辩论。") from e

    base_url = os.getenv("LLM_BASE_URL", "").strip()
    if not base_url:
        raise ValueError("未配置 LLM_BASE_URL。请在 .env 中填写 OpenAI 兼容接口地址。")
    if not re.match(r"^https?://", base_url, flags=re.I):
        base_url = f"http://{base_url}"
    api_key = os.getenv("LLM_API_KEY", "").strip()
    if not api_key:
        if not _is_local(base_url):
            raise ValueError("未配置 LLM_API_KEY（非本地地址必须提供）。")
        api_key = "EMPTY"
    model_name = model.strip() or os.getenv("LLM_MODEL", "").strip()
    if not model_name:
        raise ValueError("未配置 LLM_MODEL。")

    client = ChatOpenAI(
        model=model_name,
        api_key=api_key,
        base_url=base_url.rstrip("/"),
        temperature=settings.temperature,
        top_p=settings.top_p,
        max_tokens=settings.max_tokens,
        max_retries=0,
        timeout=settings.request_timeout_seconds,
    )
    return ChatModelClient(client, settings, name=model_name)
