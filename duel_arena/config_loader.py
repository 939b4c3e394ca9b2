"""
配置加载模块（YAML + 环境变量）。

设计目标：
1. 赛制、策略超参、人设技能与状态机关键词放在 config/ 下独立的 YAML 文件中；
2. 默认配置路径为仓库根目录下的 config/，可用 DUEL_ARENA_CONFIG_DIR 覆盖；
3. 运行期只读取一次，得到冻结的 ArenaSettings，后续模块只依赖这个对象。
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

PERSONAS = ("P1", "P2")


def opponent_of(persona: str) -> str:
    return "P2" if persona == "P1" else "P1"


def _repo_root() -> Path:
    """
    推断仓库根目录。

    约定：duel_arena/ 与 config/ 同级放置在仓库根目录下。
    """

    here = Path(__file__).resolve()
    return here.parent.parent


@dataclass(frozen=True)
class ConfigPaths:
    """
    配置文件路径集合。
    """

    root: Path

    @property
    def config_dir(self) -> Path:
        override = os.getenv("DUEL_ARENA_CONFIG_DIR", "").strip()
        return Path(override) if override else self.root / "config"

    @property
    def arena(self) -> Path:
        return self.config_dir / "arena.yaml"

    @property
    def personas(self) -> Path:
        return self.config_dir / "personas.yaml"

    @property
    def dynamics_keywords(self) -> Path:
        return self.config_dir / "dynamics_keywords.yaml"


def default_paths() -> ConfigPaths:
    return ConfigPaths(root=_repo_root())


def load_yaml(path: Path) -> dict[str, Any]:
    """
    读取 YAML 文件并返回 dict。

    说明：
    - 若 YAML 为空，则返回空 dict；
    - 若文件不存在，抛出 FileNotFoundError，让上层明确感知配置缺失。
    """

    text = path.read_text(encoding="utf-8")
    data = yaml.safe_load(text)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"YAML 顶层必须是映射(dict)，但实际为: {type(data)} ({path})")
    return data


def _load_optional(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    return load_yaml(path)


@dataclass(frozen=True)
class DebateSettings:
    free_rounds: int = 4
    free_debate_total_chars: int = 0
    free_debate_max_rounds: int = 0
    context_max_chars: int = 6000
    experience_max_chars: int = 5000
    loop_sleep_seconds: float = 10.0
    retry_delay_seconds: float = 30.0


@dataclass(frozen=True)
class PolicySettings:
    enabled: bool = True
    learning_rate: float = 0.12
    focus_learning_rate: float = 0.08
    baseline_alpha: float = 0.1
    min_prob: float = 0.03
    exploration: float = 0.1
    action_count: int = 2
    duplicate_penalty: float = 0.15
    duplicate_similarity: float = 0.9
    quality_weight: float = 0.6
    margin_weight: float = 0.3
    rule_weight: float = 0.1
    dynamics_reward_weight: float = 0.0


@dataclass(frozen=True)
class LlmSettings:
    temperature: float = 0.4
    top_p: float = 0.9
    max_tokens: int = 1024
    judge_temperature: float = 0.3
    judge_max_tokens: int = 2048
    request_timeout_seconds: float = 60.0
    max_retries: int = 6
    retry_base_seconds: float = 2.0
    retry_backoff_multiplier: float = 2.0
    retry_max_seconds: float = 90.0
    retry_jitter_seconds: float = 1.5
    tokens_per_char: float = 1.5
    reply_token_overhead: int = 384


@dataclass(frozen=True)
class StorageSettings:
    state_dir: Path = Path("state")
    archive_dir_name: str = "archives"
    lock_file: str = "agent.lock"


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"
    json_output: bool = True
    log_file: str = "logs/duel_arena.log"
    max_bytes: int = 5 * 1024 * 1024
    backup_count: int = 5


@dataclass(frozen=True)
class PersonaProfile:
    """
    单个辩手的人设：展示名、阵营标签、可选模型覆盖与技能画像。
    """

    key: str
    name: str
    side_label: str
    style: str = ""
    model: str = ""
    skills: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class ArenaSettings:
    debate: DebateSettings
    policy: PolicySettings
    llm: LlmSettings
    storage: StorageSettings
    logging: LoggingSettings
    personas: dict[str, PersonaProfile]
    dynamics_keywords: dict[str, list[str]]

    def persona(self, key: str) -> PersonaProfile:
        return self.personas[key]


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"配置段 {name} 必须是映射(dict)")
    return value


def _build(cls, raw: dict[str, Any]):
    """
    用 YAML 段构造冻结 dataclass：未知键直接报错，已知键按默认值的类型转换。
    """

    defaults = cls()
    known = set(cls.__dataclass_fields__)
    unknown = set(raw) - known
    if unknown:
        raise ValueError(f"{cls.__name__} 存在未知配置项：{sorted(unknown)}")
    kwargs: dict[str, Any] = {}
    for key, value in raw.items():
        current = getattr(defaults, key)
        try:
            if isinstance(current, bool):
                kwargs[key] = _as_bool(value)
            elif isinstance(current, Path):
                kwargs[key] = Path(str(value))
            else:
                kwargs[key] = type(current)(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"{cls.__name__}.{key} 取值非法：{value!r}") from e
    return cls(**kwargs)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """
    环境变量覆盖少量常用项（便于在 .env 中临时调整）。
    """

    mapping = {
        "DUEL_ARENA_FREE_ROUNDS": ("debate", "free_rounds"),
        "DUEL_ARENA_FREE_TOTAL_CHARS": ("debate", "free_debate_total_chars"),
        "DUEL_ARENA_CONTEXT_MAX_CHARS": ("debate", "context_max_chars"),
        "DUEL_ARENA_LOOP_SLEEP_SECONDS": ("debate", "loop_sleep_seconds"),
        "DUEL_ARENA_STATE_DIR": ("storage", "state_dir"),
        "DUEL_ARENA_LOG_LEVEL": ("logging", "level"),
        "DUEL_ARENA_LOG_FILE": ("logging", "log_file"),
        "DUEL_ARENA_MAX_RETRIES": ("llm", "max_retries"),
    }
    merged = {k: dict(v) if isinstance(v, dict) else v for k, v in data.items()}
    for env_key, (section, key) in mapping.items():
        raw = os.getenv(env_key, "").strip()
        if not raw:
            continue
        merged.setdefault(section, {})
        merged[section][key] = raw
    return merged


def _build_personas(raw: dict[str, Any]) -> dict[str, PersonaProfile]:
    personas_raw = raw.get("personas") or {}
    defaults = {
        "P1": ("正方", "🔵 正方"),
        "P2": ("反方", "🔴 反方"),
    }
    out: dict[str, PersonaProfile] = {}
    for key in PERSONAS:
        item = personas_raw.get(key) or {}
        if not isinstance(item, dict):
            raise ValueError(f"personas.{key} 必须是映射(dict)")
        name, label = defaults[key]
        skills = item.get("skills") or {}
        if not isinstance(skills, dict):
            raise ValueError(f"personas.{key}.skills 必须是映射(dict)")
        out[key] = PersonaProfile(
            key=key,
            name=str(item.get("name") or name),
            side_label=str(item.get("side_label") or label),
            style=str(item.get("style") or ""),
            model=os.getenv(f"LLM_MODEL_{key}", "").strip() or str(item.get("model") or ""),
            skills={str(k): float(v) for k, v in skills.items()},
        )
    return out


def _build_keywords(raw: dict[str, Any]) -> dict[str, list[str]]:
    keywords = raw.get("keywords") or {}
    if not isinstance(keywords, dict):
        raise ValueError("dynamics_keywords.keywords 必须是映射(dict)")
    out: dict[str, list[str]] = {}
    for cat, words in keywords.items():
        if not isinstance(words, list):
            raise ValueError(f"关键词类别 {cat} 必须是列表")
        out[str(cat)] = [str(w) for w in words if str(w).strip()]
    return out


def load_settings(paths: ConfigPaths | None = None) -> ArenaSettings:
    """
    加载全部配置并做类型校验。

    arena.yaml 缺失时使用代码内默认值；其余两个文件为可选。
    """

    p = paths or default_paths()
    arena = _env_overrides(_load_optional(p.arena))

    debate = _build(DebateSettings, _section(arena, "debate"))
    if debate.free_rounds < 1:
        raise ValueError("debate.free_rounds 必须 >= 1")
    if debate.context_max_chars <= 0:
        raise ValueError("debate.context_max_chars 必须为正整数")

    policy = _build(PolicySettings, _section(arena, "policy"))
    if not 0.0 < policy.min_prob < 1.0:
        raise ValueError("policy.min_prob 必须位于 (0, 1)")
    if not 0.0 <= policy.exploration <= 1.0:
        raise ValueError("policy.exploration 必须位于 [0, 1]")
    if not 0.0 < policy.baseline_alpha <= 1.0:
        raise ValueError("policy.baseline_alpha 必须位于 (0, 1]")
    if policy.action_count < 1:
        raise ValueError("policy.action_count 必须 >= 1")

    return ArenaSettings(
        debate=debate,
        policy=policy,
        llm=_build(LlmSettings, _section(arena, "llm")),
        storage=_build(StorageSettings, _section(arena, "storage")),
        logging=_build(LoggingSettings, _section(arena, "logging")),
        personas=_build_personas(_load_optional(p.personas)),
        dynamics_keywords=_build_keywords(_load_optional(p.dynamics_keywords)),
    )


def default_settings(**overrides: Any) -> ArenaSettings:
    """
    不读文件的默认配置（测试与脚本使用）。

    overrides 的键为段名（debate/policy/llm/storage/logging），值为该段的 dataclass。
    """

    base = {
        "debate": DebateSettings(),
        "policy": PolicySettings(),
        "llm": LlmSettings(),
        "storage": StorageSettings(),
        "logging": LoggingSettings(),
        "personas": _build_personas({}),
        "dynamics_keywords": {},
    }
    base.update(overrides)
    return ArenaSettings(**base)
