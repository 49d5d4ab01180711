"""Configuration Management for CLI Settings"""

import copy
import os
from pathlib import Path
from typing import Any

import yaml
from rich.console import Console

console = Console()

DEFAULT_CONFIG: dict[str, Any] = {
    "api": {
        "base_url": "http://localhost:8000",
        "timeout": 30,
    },
    "jobs": {
        "poll_interval": 1.0,
        "wait_timeout": 300,
    },
}


def _coerce(value: Any) -> Any:
    """Store numeric strings from the command line as numbers"""
    if not isinstance(value, str):
        return value
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            continue
    return value


class ConfigManager:
    """
    YAML-backed CLI settings addressed with dotted keys.

    The directory defaults to ``~/.offload`` and can be moved with
    ``OFFLOAD_CONFIG_DIR``; ``OFFLOAD_API_URL`` overrides the default API URL.
    """

    def __init__(self, config_dir: Path | None = None):
        self.config_dir = config_dir or Path(
            os.getenv("OFFLOAD_CONFIG_DIR", Path.home() / ".offload")
        )
        self.config_file = self.config_dir / "config.yaml"
        self.config_dir.mkdir(parents=True, exist_ok=True)

    def get_default_config(self) -> dict[str, Any]:
        defaults = copy.deepcopy(DEFAULT_CONFIG)
        if api_url := os.getenv("OFFLOAD_API_URL"):
            defaults["api"]["base_url"] = api_url
        return defaults

    def load_config(self) -> dict[str, Any]:
        """Load the file merged over defaults; a broken file falls back to defaults"""
        merged = self.get_default_config()
        if not self.config_file.exists():
            return merged

        try:
            with open(self.config_file) as f:
                stored = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            console.print(f"[red]Error loading config: {e}[/red]")
            return merged

        for section, values in stored.items():
            if isinstance(values, dict) and isinstance(merged.get(section), dict):
                merged[section].update(values)
            else:
                merged[section] = values
        return merged

    def save_config(self, config: dict[str, Any]):
        with open(self.config_file, "w") as f:
            yaml.safe_dump(config, f, default_flow_style=False)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation (e.g., 'api.base_url')"""
        node: Any = self.load_config()
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any):
        """Set configuration value using dot notation"""
        config = self.load_config()
        *parents, leaf = key.split(".")

        node = config
        for part in parents:
            if not isinstance(node.get(part), dict):
                node[part] = {}
            node = node[part]

        node[leaf] = _coerce(value)
        self.save_config(config)

    def reset(self):
        """Reset configuration to defaults"""
        self.save_config(self.get_default_config())


# Global config manager instance
config = ConfigManager()
