"""
结构化日志配置。

- 文件输出：JSON 行 + 按大小滚动（RotatingFileHandler）；
- 控制台输出：简短文本，便于无人值守运行时 tail；
- 业务模块统一使用 logging.getLogger(__name__)，事件名采用点分风格（如 llm.request.retry），
  结构化字段通过 extra={"fields": {...}} 传入。
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path

from duel_arena.config_loader import LoggingSettings


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            for key, value in fields.items():
                if isinstance(value, str) and len(value) > 2000:
                    value = value[:2000] + "..."
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.now().strftime("%H:%M:%S")
        parts = [stamp, f"[{record.levelname}]", record.getMessage()]
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict) and fields:
            parts.append(" ".join(f"{k}={v}" for k, v in fields.items()))
        text = " ".join(parts)
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


def configure_logging(settings: LoggingSettings) -> None:
    """
    在 CLI 入口调用一次。重复调用会替换已有 handler。
    """

    level = getattr(logging, settings.level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(TextFormatter())
    console.setLevel(level)
    root.addHandler(console)

    if settings.log_file:
        path = Path(settings.log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            path,
            maxBytes=settings.max_bytes,
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(JSONFormatter() if settings.json_output else TextFormatter())
        file_handler.setLevel(level)
        root.addHandler(file_handler)

    # 第三方 HTTP 客户端过于啰嗦
    for noisy in ("httpx", "httpcore", "openai"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))
