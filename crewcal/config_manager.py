from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from crewcal.models import AppConfig, default_app_config


logger = logging.getLogger(__name__)

MASK = "***"

# (section, key) pairs never returned in clear text by the admin API.
SECRET_FIELDS: tuple[tuple[str, str], ...] = (("microsoft", "client_secret"),)


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _render(config: AppConfig) -> str:
    return yaml.safe_dump(
        config.to_dict(),
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )


def strip_masked_secrets(payload: dict[str, Any]) -> dict[str, Any]:
    """Drop echoed masks and blank secrets from an update so stored values survive."""
    sanitized = copy.deepcopy(payload)
    for section_name, key in SECRET_FIELDS:
        section = sanitized.get(section_name)
        if not isinstance(section, dict) or key not in section:
            continue
        if str(section.get(key) or "").strip() in {"", MASK}:
            section.pop(key)
        if not section:
            sanitized.pop(section_name)
    return sanitized


class ConfigManager:
    """YAML-backed settings for the booking service.

    Reads are cheap enough to repeat on every operation, so components call
    ``load()`` instead of caching a snapshot and pick up admin edits immediately.
    """

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            logger.info("Writing default config to %s", self.config_path)
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            raw = self.config_path.read_text(encoding="utf-8")
        return AppConfig.from_dict(yaml.safe_load(raw) or {})

    def save(self, config: AppConfig) -> None:
        text = _render(config)
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.config_path.with_name(self.config_path.name + ".tmp")
            tmp_path.write_text(text, encoding="utf-8")
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                self.config_path.write_text(text, encoding="utf-8")
                tmp_path.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            merged = _deep_merge(self.load().to_dict(), strip_masked_secrets(payload))
            config = AppConfig.from_dict(merged)
            self.save(config)
        return config

    def masked(self) -> dict[str, Any]:
        data = self.load().to_dict()
        for section_name, key in SECRET_FIELDS:
            section = data.get(section_name) or {}
            if section.get(key):
                section[key] = MASK
        return data
