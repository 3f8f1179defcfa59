import os
from typing import Mapping, Optional

from pydantic import BaseModel, ValidationError


DEFAULT_PORT = 8080
DEFAULT_CACHE_TTL_SECONDS = 300.0
DEFAULT_REQUEST_TIMEOUT = 10.0


class ConfigError(Exception):
    """Raised when the environment does not describe a usable gateway"""


class Settings(BaseModel):
    """Runtime settings for the gateway, usually read from the environment"""
    owner_address: str
    rpc_url: str
    entity_type: Optional[str] = None  # matched against the "type" attribute
    app_name: Optional[str] = None  # matched against the "app" attribute
    port: int = DEFAULT_PORT
    cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables"""
        env = os.environ if environ is None else environ

        missing = [name for name in ("ACCOUNT_ADR", "RPC_URL") if not env.get(name)]
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

        values = {
            "owner_address": env["ACCOUNT_ADR"],
            "rpc_url": env["RPC_URL"],
            "entity_type": env.get("ENTITY_TYPE") or None,
            "app_name": env.get("APP_NAME") or None,
            "port": env.get("PORT", DEFAULT_PORT),
            "cache_ttl_seconds": env.get("CACHE_TTL_SECONDS", DEFAULT_CACHE_TTL_SECONDS),
            "request_timeout": env.get("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
            "log_level": env.get("LOG_LEVEL", "INFO").upper(),
        }
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigError(f"Invalid gateway configuration: {exc}") from exc
