from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from timeledger.models import AppConfig, default_app_config


ENV_OVERRIDES = {
    "OUTLOOK_CLIENT_ID": ("outlook", "client_id"),
    "OUTLOOK_CLIENT_SECRET": ("outlook", "client_secret"),
    "OUTLOOK_TENANT_ID": ("outlook", "tenant_id"),
    "OUTLOOK_REFRESH_TOKEN": ("outlook", "refresh_token"),
    "CLICKUP_API_TOKEN": ("clickup", "api_token"),
    "CLICKUP_TEAM_ID": ("clickup", "team_id"),
    "LOG_LEVEL": ("logging", "level"),
}

SECRET_FIELDS = (
    ("outlook", "client_secret"),
    ("outlook", "refresh_token"),
    ("clickup", "api_token"),
)


class ConfigError(ValueError):
    pass


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name, "").strip()
        if value:
            overrides.setdefault(section, {})[key] = value
    return overrides


def require_outlook_credentials(config: AppConfig) -> None:
    missing = config.outlook.missing_fields()
    if missing:
        raise ConfigError(f"Missing required Outlook settings: {', '.join(missing)}")


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str], environ: Mapping[str, str] | None = None) -> None:
        self.config_path = Path(config_path)
        self.environ = os.environ if environ is None else environ
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def _load_file(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"{self.config_path} must contain a mapping at the top level")
        return data

    def load(self) -> AppConfig:
        """File settings with environment overrides applied on top."""
        with self._lock:
            data = _deep_merge(self._load_file(), _env_overrides(self.environ))
            return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(
                    config_dict,
                    handle,
                    sort_keys=False,
                    allow_unicode=True,
                    default_flow_style=False,
                )
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Some bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                with self.config_path.open("w", encoding="utf-8") as handle:
                    yaml.safe_dump(
                        config_dict,
                        handle,
                        sort_keys=False,
                        allow_unicode=True,
                        default_flow_style=False,
                    )
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        # Environment values are never written back to the file.
        with self._lock:
            current = AppConfig.from_dict(self._load_file()).to_dict()
            merged = _deep_merge(current, payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return self.load()

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = "***"
        return config
