from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml

from icalsync.models import AppConfig, default_app_config


logger = logging.getLogger(__name__)

MASK = "***"


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def mask_feed_url(url: str) -> str:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return MASK
    return f"{parsed.scheme}://{parsed.netloc}/{MASK}"


def _restore_masked_calendars(incoming: Any, current: list[dict[str, Any]]) -> Any:
    if not isinstance(incoming, list):
        return incoming
    current_by_name = {str(item.get("name", "")): str(item.get("url", "")) for item in current}
    restored: list[Any] = []
    for item in incoming:
        if isinstance(item, dict) and MASK in str(item.get("url", "")):
            stored_url = current_by_name.get(str(item.get("name", "")))
            if not stored_url:
                logger.warning("Dropping masked calendar %r with no stored URL", item.get("name"))
                continue
            item = {**item, "url": stored_url}
        restored.append(item)
    return restored


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            return AppConfig.from_dict(data)

    def _dump(self, config_dict: dict[str, Any], path: Path) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(
                config_dict,
                handle,
                sort_keys=False,
                allow_unicode=True,
                default_flow_style=False,
            )

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._dump(config_dict, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                self._dump(config_dict, self.config_path)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            current = self.load().to_dict()
            if "calendars" in payload:
                payload = dict(payload)
                payload["calendars"] = _restore_masked_calendars(payload["calendars"], current["calendars"])
            merged = _deep_merge(current, payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        config["calendars"] = [
            {"name": item["name"], "url": mask_feed_url(item["url"])} for item in config.get("calendars", [])
        ]
        return config
