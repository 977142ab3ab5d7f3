"""Configuration loader for quorum."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List
import os
import yaml

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default.yaml"
USER_CONFIG_PATH = Path.home() / ".config" / "quorum" / "config.yaml"


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _int_env(name: str) -> int | None:
    value = os.getenv(name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def load_config(path: Path | None = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    if DEFAULT_CONFIG_PATH.exists():
        data = yaml.safe_load(DEFAULT_CONFIG_PATH.read_text()) or {}
    user_path = path or USER_CONFIG_PATH
    if user_path.exists():
        override = yaml.safe_load(user_path.read_text()) or {}
        data = _deep_merge(data, override)

    # Environment overrides - Server
    host = os.getenv("QUORUM_HOST")
    if host:
        data.setdefault("server", {})["host"] = host
    port = _int_env("QUORUM_PORT")
    if port is not None:
        data.setdefault("server", {})["port"] = port

    # Environment overrides - Data directory
    data_dir = os.getenv("QUORUM_DATA_DIR")
    if data_dir:
        data["data_dir"] = data_dir

    # Environment overrides - Workflow
    mapper = os.getenv("QUORUM_MAPPER")
    if mapper:
        data.setdefault("workflow", {})["mapper"] = mapper
    timeout = _int_env("QUORUM_PROVIDER_TIMEOUT")
    if timeout is not None:
        data.setdefault("workflow", {})["provider_timeout_seconds"] = timeout
    retries = _int_env("QUORUM_MAX_RETRIES")
    if retries is not None:
        data.setdefault("workflow", {})["max_retries"] = retries

    # Environment overrides - Concierge
    concierge_provider = os.getenv("QUORUM_CONCIERGE_PROVIDER")
    if concierge_provider:
        data.setdefault("concierge", {})["provider"] = concierge_provider

    return data


@dataclass
class Config:
    raw: Dict[str, Any]

    @property
    def server(self) -> Dict[str, Any]:
        return self.raw.get("server", {})

    @property
    def data_dir(self) -> Path:
        default = str(Path.home() / ".quorum")
        return Path(self.raw.get("data_dir", default)).expanduser()

    @property
    def providers(self) -> List[Dict[str, Any]]:
        return list(self.raw.get("providers", []) or [])

    @property
    def provider_ids(self) -> List[str]:
        return [str(item["id"]) for item in self.providers if item.get("id")]

    @property
    def workflow(self) -> Dict[str, Any]:
        return self.raw.get("workflow", {})

    @property
    def concierge(self) -> Dict[str, Any]:
        return self.raw.get("concierge", {})

    @property
    def circuit_breaker(self) -> Dict[str, Any]:
        return self.raw.get("circuit_breaker", {})

    @property
    def mapper(self) -> str | None:
        return self.workflow.get("mapper")

    @property
    def provider_timeout_seconds(self) -> float:
        """Timeout for a single provider call. Default 2 minutes."""
        return float(self.workflow.get("provider_timeout_seconds", 120))

    @property
    def max_retries(self) -> int:
        return int(self.workflow.get("max_retries", 2))

    @property
    def retry_delay_seconds(self) -> float:
        return float(self.workflow.get("retry_delay_seconds", 2.0))

    @property
    def retry_backoff(self) -> float:
        return float(self.workflow.get("retry_backoff", 2.0))

    @property
    def max_retry_wait_seconds(self) -> float:
        """Upper bound on a rate-limit wait before a retry is given up."""
        return float(self.workflow.get("max_retry_wait_seconds", 90))

    def provider_limits(self) -> Dict[str, int]:
        limits: Dict[str, int] = {}
        for item in self.providers:
            if item.get("id") and item.get("max_input_chars"):
                limits[str(item["id"])] = int(item["max_input_chars"])
        return limits


def get_config() -> Config:
    return Config(load_config())
