"""
Config loader for thinkline.
Reads config.yaml (or $THINKLINE_CONFIG) and builds typed configs from it.
Nothing here is cached globally: callers load once and pass the result down.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

import yaml
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_MODEL = "qwen3:14b"

# Built-in generation defaults, lowest layer of the parameter override chain.
DEFAULT_PARAMS = {
    "temperature": 0.7,
    "top_p": 0.9,
    "top_k": 40,
    "repeat_penalty": 1.1,
    "max_tokens": 2048,
}

# Per-model defaults, middle layer.
MODEL_PARAMS = {
    "qwen3:14b": {
        "temperature": 0.6,
        "top_p": 0.85,
        "max_tokens": 2048,
    },
}


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def config_path() -> Path:
    """Config file location, honouring $THINKLINE_CONFIG."""
    override = os.environ.get("THINKLINE_CONFIG")
    return Path(override) if override else _CONFIG_PATH


def load_config(path: Path | str | None = None) -> dict:
    """
    Load config from a YAML file.
    A missing file yields an empty dict, so every typed config falls back
    to its defaults.
    """
    path = Path(path) if path else config_path()
    if not path.exists():
        logging.getLogger(__name__).info("No config at %s, using defaults", path)
        return {}

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return _walk_and_resolve(raw)


@dataclass
class ClientConfig:
    """
    Connection settings for the model server.

    base_url:        server root, e.g. http://localhost:11434
    default_model:   model used when a call names none
    timeout:         seconds for ordinary requests (and stream reads)
    connect_timeout: seconds for the liveness probe in test_connection()
    default_params:  generation parameters applied to every request
    model_params:    per-model parameter overrides, keyed by model name
    """
    base_url: str = DEFAULT_BASE_URL
    default_model: str = DEFAULT_MODEL
    timeout: float = 30.0
    connect_timeout: float = 5.0
    default_params: dict = field(default_factory=lambda: dict(DEFAULT_PARAMS))
    model_params: dict = field(default_factory=lambda: {k: dict(v) for k, v in MODEL_PARAMS.items()})

    def __post_init__(self):
        self.base_url = self.base_url.rstrip("/")

    @classmethod
    def from_config(cls, cfg: dict) -> "ClientConfig":
        backend = cfg.get("backend", {}) or {}
        params = dict(DEFAULT_PARAMS)
        params.update(backend.get("default_params", {}) or {})
        model_params = {k: dict(v) for k, v in MODEL_PARAMS.items()}
        for model, overrides in (backend.get("model_params", {}) or {}).items():
            model_params.setdefault(model, {}).update(overrides or {})
        return cls(
            base_url=backend.get("url") or DEFAULT_BASE_URL,
            default_model=backend.get("default_model") or DEFAULT_MODEL,
            timeout=float(backend.get("timeout", 30)),
            connect_timeout=float(backend.get("connect_timeout", 5)),
            default_params=params,
            model_params=model_params,
        )

    def params_for(self, model: str, overrides: dict | None = None) -> dict:
        """Layered generation parameters: defaults < per-model < per-call."""
        merged = dict(self.default_params)
        merged.update(self.model_params.get(model, {}))
        if overrides:
            merged.update(overrides)
        return merged


@dataclass
class StorageConfig:
    """Where chat data lives and how much of it the substrate accepts."""
    backend: str = "sqlite"
    path: str = "./data/thinkline.db"
    max_bytes: int = 5 * 1024 * 1024

    @classmethod
    def from_config(cls, cfg: dict) -> "StorageConfig":
        storage = cfg.get("storage", {}) or {}
        return cls(
            backend=storage.get("backend") or cls.backend,
            path=storage.get("path") or cls.path,
            max_bytes=int(storage.get("max_bytes", cls.max_bytes)),
        )


def validate_client_config(config: ClientConfig) -> list[str]:
    """Return a list of problems with a client config; empty means valid."""
    errors = []
    if not config.base_url:
        errors.append("Base URL is required")
    if not config.default_model:
        errors.append("Default model is required")
    if config.base_url:
        parsed = urlparse(config.base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            errors.append(f"Invalid base URL format: {config.base_url!r}")
    return errors


def setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {}) or {}
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
