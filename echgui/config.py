import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional

CONFIG_ENV = "ECHGUI_CONFIG"

DEFAULTS: Dict[str, Any] = {
    "backend_url": "http://127.0.0.1:17890",
    "request_timeout": 5,
    "event_poll_timeout": 25,
    "event_retry_seconds": 3,
    "save_ack_seconds": 1.0,
    "reconcile_seconds": 2.0,
    "shutdown_wait_seconds": 5.0,
    "log_max_lines": 500,
    "log_level": "INFO",
}


def default_config_path() -> Path:
    return Path(os.environ.get(CONFIG_ENV) or "config.json")


class ConfigManager:
    def __init__(self, path: Optional[Path] = None):
        self._path = path or default_config_path()
        self._lock = threading.RLock()
        self._data: Dict[str, Any] = {}
        self._ensure_default()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_default(self) -> None:
        if not self._path.exists():
            self._data = dict(DEFAULTS)
            self.save()
        else:
            self.reload()
            # Fill in keys added since the file was written
            with self._lock:
                missing = [k for k in DEFAULTS if k not in self._data]
                for key in missing:
                    self._data[key] = DEFAULTS[key]
                if missing:
                    self.save()

    def reload(self) -> None:
        with self._lock:
            with self._path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError(f"{self._path}: expected a JSON object")
            self._data = data

    def save(self) -> None:
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("w", encoding="utf-8") as f:
                json.dump(self._data, f, ensure_ascii=False, indent=2)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if default is None:
                default = DEFAULTS.get(key)
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self.save()

    def get_all(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._data)
