"""
Gateway configuration: where the facilitator lives and how to talk to it.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

from .environment import build_environment
from .errors import ConfigError

__all__ = [
    "COINBASE_FACILITATOR_URL",
    "ConfigError",
    "GatewayConfig",
    "PAYAI_FACILITATOR_URL",
    "load_gateway_config",
]

COINBASE_FACILITATOR_URL = "https://api.cdp.coinbase.com/platform/v2/x402"
PAYAI_FACILITATOR_URL = "https://facilitator.payai.network"

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_API_KEY_HEADER = "Authorization"

_PARAMETER_TO_ENV_KEY = {
    "facilitator_url": "X402_FACILITATOR_URL",
    "api_key": "X402_FACILITATOR_API_KEY",
    "timeout_seconds": "X402_TIMEOUT",
    "auto_settle": "X402_AUTO_SETTLE",
    "api_key_header": "X402_API_KEY_HEADER",
    "webhook_secret": "X402_WEBHOOK_SECRET",
}


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _normalize_facilitator_url(raw_url: Optional[str]) -> str:
    if not raw_url:
        raise ConfigError("X402_FACILITATOR_URL must be provided")
    parsed = urlparse(raw_url)
    if parsed.scheme.lower() != "https" or not parsed.netloc:
        raise ConfigError(
            f"X402_FACILITATOR_URL must be an absolute https URL, got '{raw_url}'"
        )
    return raw_url.rstrip("/")


@dataclass(frozen=True)
class GatewayConfig:
    facilitator_url: str
    api_key: Optional[str] = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    auto_settle: bool = True
    api_key_header: str = DEFAULT_API_KEY_HEADER
    webhook_secret: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"GatewayConfig(facilitator_url={self.facilitator_url!r}, "
            f"api_key={'***' if self.api_key else None}, "
            f"timeout_seconds={self.timeout_seconds}, auto_settle={self.auto_settle}, "
            f"api_key_header={self.api_key_header!r}, "
            f"webhook_secret={'***' if self.webhook_secret else None})"
        )

    def with_overrides(self, **changes: Any) -> "GatewayConfig":
        return replace(self, **changes)

    @classmethod
    def coinbase(cls, api_key: str, **changes: Any) -> "GatewayConfig":
        """Coinbase CDP facilitator; requires an API key."""
        if not api_key:
            raise ConfigError("The Coinbase facilitator requires an API key")
        return cls(facilitator_url=COINBASE_FACILITATOR_URL, api_key=api_key, **changes)

    @classmethod
    def payai(cls, api_key: Optional[str] = None, **changes: Any) -> "GatewayConfig":
        return cls(facilitator_url=PAYAI_FACILITATOR_URL, api_key=api_key, **changes)

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "GatewayConfig":
        """
        Build from environment-style keys.

        ``X402_FACILITATOR_URL`` and ``X402_FACILITATOR_API_KEY`` fall back to
        the unprefixed ``FACILITATOR_URL`` / ``FACILITATOR_API_KEY``.
        """
        environment = build_environment(env_file=None, base=values)

        facilitator_url = _normalize_facilitator_url(
            environment.get("X402_FACILITATOR_URL", "FACILITATOR_URL")
        )
        timeout_seconds = environment.get_number(
            "X402_TIMEOUT", default=DEFAULT_TIMEOUT_SECONDS
        )
        if timeout_seconds <= 0:
            raise ConfigError(f"X402_TIMEOUT must be positive, got {timeout_seconds}")

        return cls(
            facilitator_url=facilitator_url,
            api_key=environment.get("X402_FACILITATOR_API_KEY", "FACILITATOR_API_KEY"),
            timeout_seconds=timeout_seconds,
            auto_settle=environment.get_bool("X402_AUTO_SETTLE", default=True),
            api_key_header=environment.get(
                "X402_API_KEY_HEADER", default=DEFAULT_API_KEY_HEADER
            ),
            webhook_secret=environment.get("X402_WEBHOOK_SECRET"),
        )

    @classmethod
    def from_env(
        cls,
        *,
        env_file: Optional[str] = ".env",
        overrides: Optional[Mapping[str, str]] = None,
        base: Optional[Mapping[str, str]] = None,
        facilitator_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        auto_settle: Optional[bool] = None,
        api_key_header: Optional[str] = None,
        webhook_secret: Optional[str] = None,
    ) -> "GatewayConfig":
        explicit = {
            "facilitator_url": facilitator_url,
            "api_key": api_key,
            "timeout_seconds": timeout_seconds,
            "auto_settle": auto_settle,
            "api_key_header": api_key_header,
            "webhook_secret": webhook_secret,
        }
        merged_overrides = dict(overrides or {})
        for name, value in explicit.items():
            if value is not None:
                merged_overrides[_PARAMETER_TO_ENV_KEY[name]] = _stringify(value)

        environment = build_environment(
            env_file=env_file,
            base=base,
            overrides=merged_overrides,
        )
        return cls.from_mapping(environment.variables)


def load_gateway_config(
    *,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
    facilitator_url: Optional[str] = None,
    api_key: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
    auto_settle: Optional[bool] = None,
    api_key_header: Optional[str] = None,
    webhook_secret: Optional[str] = None,
) -> GatewayConfig:
    """
    Convenience wrapper around :meth:`GatewayConfig.from_env`.

    Settings may come from the process environment, a ``.env`` file, keyword
    arguments or any mix; keyword arguments win.
    """
    return GatewayConfig.from_env(
        env_file=env_file,
        overrides=overrides,
        base=base,
        facilitator_url=facilitator_url,
        api_key=api_key,
        timeout_seconds=timeout_seconds,
        auto_settle=auto_settle,
        api_key_header=api_key_header,
        webhook_secret=webhook_secret,
    )
