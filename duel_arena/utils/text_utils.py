"""
文本工具：长度裁剪、尾部读取、相似度与时间戳格式化。
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from pathlib import Path

_UTC8 = timezone(timedelta(hours=8))


def truncate_chars(text: str, max_chars: int) -> str:
    """
    将文本裁剪到最大字符数（超出时以省略号结尾）。

    说明：以 Python 字符计数（中文通常按一个字符计）。
    """

    text = (text or "").strip()
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 1].rstrip() + "…"


def clip_chars(text: str, max_chars: int | None) -> str:
    """
    硬裁剪：不追加省略号，保证结果长度严格不超过 max_chars。

    发言字数会计入自由辩论预算，因此这里不能多出任何字符。
    """

    text = (text or "").strip()
    if max_chars is None or max_chars <= 0:
        return text
    return text[:max_chars]


def tail_chars(text: str, max_chars: int) -> str:
    if not max_chars or len(text) <= max_chars:
        return text
    return text[-max_chars:]


def read_tail(path: Path, max_chars: int) -> str:
    """
    读取文件末尾 max_chars 个字符；文件不存在时返回空串。
    """

    if not path.exists():
        return ""
    return tail_chars(path.read_text(encoding="utf-8"), max_chars)


def _normalize_for_similarity(text: str) -> str:
    t = (text or "").lower()
    t = re.sub(r"\s+", "", t)
    return re.sub(r"[^\w\u4e00-\u9fff]+", "", t)


def _char_ngrams(text: str, n: int = 2, limit: int = 400) -> set[str]:
    source = _normalize_for_similarity(text)
    if len(source) < n:
        return set()
    grams: set[str] = set()
    for i in range(0, len(source) - n + 1):
        grams.add(source[i : i + n])
        if len(grams) >= limit:
            break
    return grams


def text_similarity(a: str, b: str) -> float:
    """
    字符 2-gram 的 Jaccard 相似度（0~1）。

    用于粗略判断双方发言是否“复读”。
    """

    ga = _char_ngrams(a)
    gb = _char_ngrams(b)
    if not ga or not gb:
        return 0.0
    inter = len(ga & gb)
    union = len(ga) + len(gb) - inter
    if union <= 0:
        return 0.0
    return inter / union


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_utc8(moment: datetime | None = None) -> str:
    """
    转录文件与计划文档使用的人类可读时间戳（固定 UTC+8）。
    """

    dt = (moment or datetime.now(timezone.utc)).astimezone(_UTC8)
    return dt.strftime("%Y-%m-%d %H:%M:%S") + " UTC+8"


def safe_filename(text: str, max_len: int = 50) -> str:
    cleaned = re.sub(r"[^\w\u4e00-\u9fff-]", "_", text or "untitled")
    return cleaned[:max_len] or "untitled"
