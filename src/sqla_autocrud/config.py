from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any, Final


DEFAULT_ENV_PREFIX: Final[str] = "AUTOCRUD_"


def _env_str(env: Mapping[str, str], name: str, default: str | None) -> str | None:
    raw = env.get(name, "").strip()
    return raw or default


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass(slots=True, frozen=True)
class Settings:
    """Runtime knobs shared by the catalog, validator, analyzer and service.

    Every field can be overridden from the environment through
    :meth:`from_env`; the variable name is the upper-cased field name with the
    ``AUTOCRUD_`` prefix (``AUTOCRUD_SCHEMA``, ``AUTOCRUD_CACHE_TTL``, ...).
    """

    schema: str | None = None
    cache_ttl: float = 300.0
    cache_sweep_interval: float = 60.0
    max_limit: int = 1000
    max_offset: int = 1_000_000
    default_limit: int = 100
    max_value_length: int = 4096
    max_complexity_score: int = 1000
    max_depth: int = 10
    max_breadth: int = 50
    assumed_fanout: int = 10
    complexity_enabled: bool = True
    composite_key_delimiter: str = ","

    @classmethod
    def from_env(
        cls,
        prefix: str = DEFAULT_ENV_PREFIX,
        env: Mapping[str, str] | None = None,
    ) -> Settings:
        env = os.environ if env is None else env
        defaults = cls()
        values: dict[str, Any] = {}
        for f in fields(cls):
            name = f"{prefix}{f.name.upper()}"
            default = getattr(defaults, f.name)
            match default:
                case bool():
                    values[f.name] = _env_bool(env, name, default)
                case int():
                    values[f.name] = _env_int(env, name, default)
                case float():
                    values[f.name] = _env_float(env, name, default)
                case _:
                    values[f.name] = _env_str(env, name, default)

        return cls(**values)
