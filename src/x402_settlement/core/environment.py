"""
Layered environment lookup for gateway configuration.

Sources are merged as ``base`` (``os.environ`` by default), then a ``.env``
file filling only the keys that are still unset, then explicit overrides
that always win. The result is a read-only :class:`GatewayEnvironment` with
typed accessors used by :class:`x402_settlement.core.config.GatewayConfig`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from .errors import ConfigError

__all__ = [
    "GatewayEnvironment",
    "build_environment",
    "parse_env_file",
]

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def parse_env_file(path: Union[str, Path]) -> Dict[str, str]:
    """
    Read ``KEY=VALUE`` lines from ``path``.

    Blank lines and ``#`` comments are skipped, an ``export`` prefix is
    tolerated and matching surrounding quotes are removed. A missing file
    yields an empty mapping.
    """
    values: Dict[str, str] = {}
    try:
        data = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return values

    for raw_line in data.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):]
        key, value = line.split("=", 1)
        values[key.strip()] = _unquote(value.strip())
    return values


@dataclass(frozen=True)
class GatewayEnvironment:
    variables: Mapping[str, str]

    def get(self, *keys: str, default: Optional[str] = None) -> Optional[str]:
        """First non-empty value among ``keys``; later keys are fallbacks."""
        for key in keys:
            value = self.variables.get(key)
            if value is not None and value.strip():
                return value.strip()
        return default

    def get_bool(self, *keys: str, default: bool) -> bool:
        raw = self.get(*keys)
        if raw is None:
            return default
        lowered = raw.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ConfigError(f"{keys[0]} must be a boolean, got '{raw}'")

    def get_number(self, *keys: str, default: float) -> float:
        raw = self.get(*keys)
        if raw is None:
            return default
        try:
            return float(raw)
        except ValueError as exc:
            raise ConfigError(f"{keys[0]} must be a number, got '{raw}'") from exc


def build_environment(
    *,
    env_file: Optional[str] = ".env",
    base: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, str]] = None,
) -> GatewayEnvironment:
    """
    Assemble a :class:`GatewayEnvironment`.

    ``base`` defaults to :data:`os.environ`; set ``env_file`` to ``None`` to
    skip file loading.
    """
    merged: Dict[str, str] = dict(os.environ if base is None else base)
    if env_file is not None:
        for key, value in parse_env_file(env_file).items():
            merged.setdefault(key, value)

    if overrides:
        merged.update(overrides)

    return GatewayEnvironment(variables=merged)
