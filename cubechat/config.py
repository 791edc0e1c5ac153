"""Environment-driven configuration for the upstream Cube service."""

from __future__ import annotations

from dataclasses import dataclass
import os

from ._exceptions import ConfigurationError

DEFAULT_TIMEOUT = 300
DEFAULT_PORT = 4000


@dataclass
class CubeConfig:
    """Upstream endpoint, credential and local service settings.

    Usage:
        config = CubeConfig.from_env()
        config.require()  # raises ConfigurationError before any stream opens
        print(config.chat_url)
    """

    api_base: str | None = None
    chat_path: str | None = None
    api_key: str | None = None
    chat_base: str | None = None
    timeout: int = DEFAULT_TIMEOUT
    database_url: str | None = None
    port: int = DEFAULT_PORT

    @classmethod
    def from_env(cls, **overrides: object) -> CubeConfig:
        """Build config from CUBE_* / CUBECHAT_* environment variables.

        Keyword arguments that are not None take precedence over the environment.
        """
        values: dict[str, object] = {
            "api_base": os.environ.get("CUBE_API_BASE") or None,
            "chat_path": os.environ.get("CUBE_CHAT_PATH") or None,
            "api_key": os.environ.get("CUBE_API_KEY") or None,
            "chat_base": os.environ.get("CUBE_CHAT_BASE") or None,
            "timeout": _int_env("CUBECHAT_TIMEOUT", DEFAULT_TIMEOUT),
            "database_url": os.environ.get("CUBECHAT_DATABASE_URL") or None,
            "port": _int_env("CUBECHAT_PORT", DEFAULT_PORT),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)  # type: ignore[arg-type]

    def missing(self) -> list[str]:
        """Names of required environment variables that are unset."""
        required = {
            "CUBE_API_BASE": self.api_base,
            "CUBE_CHAT_PATH": self.chat_path,
            "CUBE_API_KEY": self.api_key,
        }
        return [name for name, value in required.items() if not value]

    def require(self) -> CubeConfig:
        """Fail fast when the upstream is not configured."""
        missing = self.missing()
        if missing:
            raise ConfigurationError(
                f"Cube API not configured: set {', '.join(missing)}", missing=missing
            )
        return self

    @property
    def chat_url(self) -> str:
        """Absolute URL of the streaming chat endpoint."""
        self.require()
        base = (self.chat_base or self.api_base or "").rstrip("/")
        return f"{base}/{(self.chat_path or '').lstrip('/')}"


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(
            f"{name} must be an integer, got {raw!r}", missing=[name]
        ) from None
