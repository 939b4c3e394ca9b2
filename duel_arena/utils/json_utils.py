"""
JSON 工具：从 LLM 输出中稳健提取 JSON。

现实问题：
- 模型有时会把 JSON 包在 ```json ... ``` 代码块里；
- 或者在 JSON 前后附加解释文字；
- 辩手与评委的输出都依赖这里，解析失败时上层会换成占位内容而不是中断回合。
"""

from __future__ import annotations

import json
from typing import Any


def _strip_fence(text: str) -> str:
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`").strip()
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:].strip()
    return cleaned


def extract_json_object(text: str) -> dict[str, Any]:
    """
    从文本中提取第一个 JSON 对象并解析为 dict。

    解析策略：
    1) 去掉常见代码块围栏（```json / ```）；
    2) 整体 json.loads 成功则直接返回；
    3) 否则在第一个 '{' 与最后一个 '}' 之间再试一次；失败抛出 ValueError。
    """

    cleaned = _strip_fence(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise ValueError("未在模型输出中找到 JSON 对象边界")
        try:
            data = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as e:
            raise ValueError(f"JSON 解析失败：{e.msg}") from e

    if not isinstance(data, dict):
        raise ValueError("模型输出的 JSON 顶层必须是对象(dict)")

    return data


def try_extract_json_object(text: str) -> dict[str, Any] | None:
    """
    宽容版本：解析失败返回 None。
    """

    try:
        return extract_json_object(text)
    except ValueError:
        return None


def dumps_pretty(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2)
