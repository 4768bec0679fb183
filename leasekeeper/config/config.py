from copy import deepcopy
from os import environ
from pathlib import Path
from threading import RLock
from typing import Any

from yaml import safe_load

from leasekeeper.config.config_yaml_schema import ConfigSchema

DEFAULT_CONFIG_PATH = Path(environ.get("LEASEKEEPER_CONFIG", Path(__file__).parent / "config.yaml"))


class Config:
    """Application config read from YAML and validated against ConfigSchema.

    A reload that fails validation raises and keeps the previous values.
    `get` hands out deep copies.
    """

    def __init__(self, path: Path = DEFAULT_CONFIG_PATH):
        self._lock = RLock()
        self._path: Path = Path(path)
        self._config: dict = {}
        self._load()

    def _load(self):
        with open(self._path, mode="r", encoding="utf-8") as _file_handle:
            _raw = safe_load(_file_handle)
        if not isinstance(_raw, dict):
            raise ValueError(f"Config {self._path} is not a mapping.")
        ConfigSchema.model_validate(_raw)
        with self._lock:
            self._config = _raw

    def reload(self):
        """Reload config"""
        self._load()

    def get(self, key: str) -> Any:
        """Copy of one top level section"""

        if not isinstance(key, str) or not key:
            raise ValueError("Key must be a non-empty str.")

        with self._lock:
            if key not in self._config:
                raise RuntimeError(f"Unknown key {key}.")
            return deepcopy(self._config[key])


config = Config()
