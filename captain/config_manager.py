from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from captain.log import get_logger
from captain.models import AppConfig, default_app_config

log = get_logger(__name__)

MASK = "***"

# Secret fields and the environment variables that override them at load time.
SECRET_FIELDS: dict[tuple[str, str], str] = {
    ("ai", "api_key"): "CAPTAIN_AI_API_KEY",
    ("remote", "api_key"): "CAPTAIN_REMOTE_API_KEY",
}


class ConfigError(RuntimeError):
    pass


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _without_placeholder_secrets(payload: dict[str, Any], stored: dict[str, Any]) -> dict[str, Any]:
    """Drop blank or masked secrets from ``payload`` when a real value is already stored."""
    cleaned = copy.deepcopy(payload)
    for section, key in SECRET_FIELDS:
        block = cleaned.get(section)
        if not isinstance(block, dict) or key not in block:
            continue
        if str(block[key] or "").strip() in {"", MASK} and stored.get(section, {}).get(key):
            block.pop(key)
    return cleaned


def _changed_sections(before: dict[str, Any], after: dict[str, Any]) -> list[str]:
    return sorted(name for name in after if before.get(name) != after.get(name))


class ConfigManager:
    """YAML-backed settings for the AI client, remote store and local storage.

    The file holds what the user saved through the API. Secrets may also come
    from ``CAPTAIN_AI_API_KEY`` / ``CAPTAIN_REMOTE_API_KEY``; those win at load
    time and are never written back to disk.
    """

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())
            log.info("Wrote default config to %s", self.config_path)

    def _read(self) -> dict[str, Any]:
        try:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Config file {self.config_path} is not valid YAML: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {self.config_path} must hold a mapping")
        return data

    def _write(self, data: dict[str, Any], path: Path) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)

    def stored(self) -> AppConfig:
        """Config exactly as saved in the file, without environment overrides."""
        with self._lock:
            return AppConfig.from_dict(self._read())

    def load(self) -> AppConfig:
        with self._lock:
            data = self._read()
        for (section, key), env_name in SECRET_FIELDS.items():
            value = os.getenv(env_name, "").strip()
            if value:
                block = data.get(section) if isinstance(data.get(section), dict) else {}
                data[section] = {**block, key: value}
        return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            data = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._write(data, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                self._write(data, self.config_path)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Deep-merge ``payload`` into the stored config; blank or masked secrets keep their value."""
        with self._lock:
            before = self.stored().to_dict()
            merged = _deep_merge(before, _without_placeholder_secrets(payload, before))
            config = AppConfig.from_dict(merged)
            self.save(config)
        changed = _changed_sections(before, config.to_dict())
        log.info("Config sections updated: %s", ", ".join(changed) or "none")
        return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = MASK
        return config
