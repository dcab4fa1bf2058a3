"""YAML configuration merged over built-in defaults and checked against a JSON schema."""

import copy
import json
import logging
import os
from pathlib import Path

import jsonschema
import yaml

from apex_trace.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "APEX_TRACE_CONFIG"
SCHEMA_PATH = Path(__file__).parent / "schemas" / "config_schema.json"


class Config:
    """Configuration manager that loads from YAML and merges with defaults."""

    DEFAULTS = {
        "parser": {
            "max_lines": 100_000,
            "truncation_tail_chars": 5000,
        },
        "budgets": {
            "soqlQueries": 80,
            "dmlStatements": 80,
            "cpuTime": 70,
            "heapSize": 70,
        },
        "baselines": {
            "capacity": 10,
        },
        "workers": {
            "max_workers": 4,
        },
        "watch": {
            "debounce_seconds": 1.0,
        },
    }

    def __init__(self, config_path=None):
        self._config = copy.deepcopy(self.DEFAULTS)

        if config_path is not None:
            try:
                with open(config_path, "r") as f:
                    user_config = yaml.safe_load(f)
            except FileNotFoundError:
                logger.warning("Config file %s not found, using defaults", config_path)
                user_config = None
            except yaml.YAMLError as exc:
                raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

            if user_config is not None and not isinstance(user_config, dict):
                raise ConfigError(f"Config root in {config_path} must be a mapping")
            if user_config:
                self._config = self._deep_merge(self._config, user_config)

        self._validate()

    @classmethod
    def from_env(cls):
        """Load the file named by APEX_TRACE_CONFIG, or defaults when unset."""
        return cls(os.environ.get(CONFIG_ENV_VAR) or None)

    @staticmethod
    def _deep_merge(base, override):
        """Recursively merge override dict into base dict."""
        result = copy.deepcopy(base)
        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = Config._deep_merge(result[key], value)
            else:
                result[key] = copy.deepcopy(value)
        return result

    def _validate(self):
        with open(SCHEMA_PATH, "r") as f:
            schema = json.load(f)
        validator = jsonschema.Draft202012Validator(schema)
        errors = sorted(validator.iter_errors(self._config), key=lambda e: list(e.path))
        if errors:
            messages = "; ".join(
                f"{'.'.join(str(p) for p in e.path) or '<root>'}: {e.message}" for e in errors
            )
            raise ConfigError(f"Invalid configuration: {messages}")

    def get(self, key, default=None):
        """Get a top-level config key."""
        return self._config.get(key, default)

    def __getitem__(self, key):
        return self._config[key]

    def __contains__(self, key):
        return key in self._config

    @property
    def max_lines(self) -> int:
        return self._config["parser"]["max_lines"]

    @property
    def truncation_tail_chars(self) -> int:
        return self._config["parser"]["truncation_tail_chars"]

    @property
    def budgets(self) -> dict[str, float]:
        return dict(self._config["budgets"])
