import json
import logging
import math
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from gateway.schemas import Limits

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "config", "gateway.yaml"
)


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class Settings:
    rate_limit_window_ms: int = 60_000
    rate_limit_max: int = 30
    rate_limit_storage_uri: str = "memory://"
    user_daily_quota: int = 100
    max_prompt_chars: int = 4000
    log_prompts: bool = True
    port: int = 5000
    host: str = "0.0.0.0"
    max_body_bytes: int = 200 * 1024
    gemini_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    upstream_timeout: float = 30.0
    firebase_service_account: Optional[Dict[str, Any]] = field(default=None, repr=False)
    mongodb_uri: Optional[str] = None
    quota_max_attempts: int = 5
    forwarded_allow_ips: str = "127.0.0.1"
    cors_origins: Tuple[str, ...] = ("*",)
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        for name in (
            "rate_limit_window_ms",
            "rate_limit_max",
            "user_daily_quota",
            "max_prompt_chars",
            "max_body_bytes",
            "quota_max_attempts",
        ):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be a positive integer")

    @property
    def retry_after_seconds(self) -> int:
        return math.ceil(self.rate_limit_window_ms / 1000)

    @property
    def rate_limit_value(self) -> str:
        """slowapi/limits notation, e.g. '30 per 60 second'."""
        return f"{self.rate_limit_max} per {max(1, self.retry_after_seconds)} second"

    def limits_view(self) -> Limits:
        return Limits(
            window_ms=self.rate_limit_window_ms,
            max_per_window=self.rate_limit_max,
            daily_quota=self.user_daily_quota,
            max_prompt_chars=self.max_prompt_chars,
        )

    def require_identity_credentials(self) -> Dict[str, Any]:
        if not self.firebase_service_account:
            raise ConfigError("Missing FIREBASE_SERVICE_ACCOUNT environment variable.")
        return self.firebase_service_account


# setting name -> environment variable
_ENV_VARS = {
    "rate_limit_window_ms": "RATE_LIMIT_WINDOW_MS",
    "rate_limit_max": "RATE_LIMIT_MAX",
    "rate_limit_storage_uri": "RATE_LIMIT_STORAGE_URI",
    "user_daily_quota": "USER_DAILY_QUOTA",
    "max_prompt_chars": "MAX_PROMPT_CHARS",
    "log_prompts": "LOG_PROMPTS",
    "port": "PORT",
    "host": "HOST",
    "max_body_bytes": "MAX_BODY_BYTES",
    "gemini_key": "GEMINI_KEY",
    "gemini_model": "GEMINI_MODEL",
    "gemini_base_url": "GEMINI_BASE_URL",
    "upstream_timeout": "UPSTREAM_TIMEOUT_SECONDS",
    "firebase_service_account": "FIREBASE_SERVICE_ACCOUNT",
    "mongodb_uri": "MONGODB_URI",
    "quota_max_attempts": "QUOTA_MAX_ATTEMPTS",
    "forwarded_allow_ips": "FORWARDED_ALLOW_IPS",
    "cors_origins": "CORS_ORIGINS",
    "log_level": "LOG_LEVEL",
}


def _load_file(config_path: Optional[str]) -> Dict[str, Any]:
    path = config_path or DEFAULT_CONFIG_PATH
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.info("Gateway config file not found at %s; using environment and defaults", path)
        return {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping of settings")
    unknown = set(data) - set(_ENV_VARS)
    if unknown:
        logger.warning("Ignoring unknown settings in %s: %s", path, ", ".join(sorted(unknown)))
    return {k: v for k, v in data.items() if k in _ENV_VARS}


def _coerce(name: str, raw: Any, target: Any) -> Any:
    if raw is None:
        return None
    try:
        if name == "log_prompts":
            # only the literal "true" turns prompt logging on
            return raw if isinstance(raw, bool) else str(raw).strip().lower() == "true"
        if name == "firebase_service_account":
            if isinstance(raw, dict):
                return raw
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("expected a JSON object")
            return data
        if name == "cors_origins":
            items = raw if isinstance(raw, (list, tuple)) else str(raw).split(",")
            return tuple(o.strip() for o in items if str(o).strip())
        if target is int:
            return int(raw)
        if target is float:
            return float(raw)
        value = str(raw).strip()
        return value or None
    except (TypeError, ValueError) as e:
        if name == "firebase_service_account":
            raise ConfigError("Invalid FIREBASE_SERVICE_ACCOUNT JSON.") from e
        raise ConfigError(f"Invalid value for {_ENV_VARS[name]}: {raw!r}") from e


def load_settings(environ: Optional[Mapping[str, str]] = None, config_path: Optional[str] = None) -> Settings:
    """Build settings from the optional YAML file, then environment overrides."""
    env = os.environ if environ is None else environ
    values: Dict[str, Any] = _load_file(config_path or env.get("GATEWAY_CONFIG_PATH"))
    for name, var in _ENV_VARS.items():
        if var in env and env[var] != "":
            values[name] = env[var]

    types = {f.name: type(f.default) for f in fields(Settings)}
    kwargs = {name: _coerce(name, raw, types.get(name)) for name, raw in values.items()}
    # keep dataclass defaults for blanked optional strings
    kwargs = {k: v for k, v in kwargs.items() if v is not None or k in ("gemini_key", "mongodb_uri")}
    return Settings(**kwargs)
