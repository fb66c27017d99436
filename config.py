"""Config management for idam-simulator."""
import json
import os
from pathlib import Path
from typing import Optional


CONFIG_FILE_ENV = "IDAM_SIMULATOR_CONFIG"

# Config key -> (environment variable, default)
DEFAULTS = {
    "host": ("SIMULATOR_HOST", "0.0.0.0"),
    "port": ("SIMULATOR_PORT", "5000"),
    "issuer": ("SIMULATOR_ISSUER", "http://localhost:5000/o"),
    "access_token_ttl": ("ACCESS_TOKEN_TTL", "28800"),
    "refresh_token_ttl": ("REFRESH_TOKEN_TTL", "86400"),
    "auth_code_ttl": ("AUTH_CODE_TTL", "600"),
    "pin_ttl": ("PIN_TTL", "1800"),
    "signing_key_file": ("SIGNING_KEY_FILE", None),
    "signing_key_id": ("SIGNING_KEY_ID", "23456789"),
    "seed_file": ("SEED_FILE", None),
    "log_format": ("LOG_FORMAT", "plain"),
    "log_level": ("LOG_LEVEL", "INFO"),
}


class Config:
    """Configuration container."""

    def __init__(self, data: dict = None):
        self.data = data or {}

    def _int(self, key: str) -> int:
        value = self.data.get(key, DEFAULTS[key][1])
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"Config value '{key}' must be an integer, got {value!r}")

    @property
    def host(self) -> str:
        return self.data.get("host", DEFAULTS["host"][1])

    @property
    def port(self) -> int:
        return self._int("port")

    @property
    def issuer(self) -> str:
        return self.data.get("issuer", DEFAULTS["issuer"][1]).rstrip("/")

    @property
    def access_token_ttl(self) -> int:
        return self._int("access_token_ttl")

    @property
    def refresh_token_ttl(self) -> int:
        return self._int("refresh_token_ttl")

    @property
    def auth_code_ttl(self) -> int:
        return self._int("auth_code_ttl")

    @property
    def pin_ttl(self) -> int:
        return self._int("pin_ttl")

    @property
    def signing_key_file(self) -> Optional[str]:
        return self.data.get("signing_key_file")

    @property
    def signing_key_id(self) -> str:
        return self.data.get("signing_key_id", DEFAULTS["signing_key_id"][1])

    @property
    def seed_file(self) -> Optional[str]:
        return self.data.get("seed_file")

    @property
    def json_logs(self) -> bool:
        return self.data.get("log_format", "plain").lower() == "json"

    @property
    def log_level(self) -> str:
        return self.data.get("log_level", DEFAULTS["log_level"][1]).upper()

    def validate(self) -> None:
        """Fail fast on malformed numeric values."""
        for key in ("port", "access_token_ttl", "refresh_token_ttl", "auth_code_ttl", "pin_ttl"):
            if self._int(key) <= 0:
                raise ValueError(f"Config value '{key}' must be positive")


def load_config(path: Optional[str] = None, **overrides) -> Config:
    """Load config from the environment, an optional JSON file and overrides.

    Later sources win: defaults < environment < JSON file < ``overrides``.
    """
    data = {}
    for key, (env_var, default) in DEFAULTS.items():
        value = os.getenv(env_var, default)
        if value is not None:
            data[key] = value

    path = path or os.getenv(CONFIG_FILE_ENV)
    if path:
        with open(Path(path), "r") as f:
            data.update(json.load(f))

    data.update({k: v for k, v in overrides.items() if v is not None})

    config = Config(data)
    config.validate()
    return config
