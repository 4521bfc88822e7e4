"""
Configuration management for Gleaner.

This module handles loading and accessing configuration values from a YAML
file. The file location defaults to gleaner.yaml and can be changed with the
GLEANER_CONFIG environment variable, so separate knowledge bases can keep
separate configurations.
"""

import copy
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError
from .models import HierarchySpec, SortSpec


CONFIG_ENV_VAR = "GLEANER_CONFIG"
DEFAULT_CONFIG_FILE = "gleaner.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "hypothesis": {
        "base_url": "https://api.hypothes.is/api",
        "username": None,
        "key": None,
        "group": "__world__",
        "page_size": 200,
        "timeout": 30.0
    },
    "database": {
        "filename": "gleaner.duckdb"
    },
    "knowledge_base": {
        "directory": "kb",
        "file_extension": "md",
        "index_name": "_index",
        "hierarchy": ["Tag"],
        "sort": ["Created"],
        "nested_tag": None,
        "max_filename_length": 150,
        "ignore_tag": "gleaner_ignore",
        "templates": {}
    },
    "git": {
        "auto_commit": False,
        "commit_message": "Gleaner: rebuild knowledge base ({page_count} pages, {annotation_count} annotations)"
    },
    "logging": {
        "level": "INFO",
        "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        "file": None
    }
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively overlay override onto a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def default_config_path() -> Path:
    """Config file named by GLEANER_CONFIG, else gleaner.yaml."""
    return Path(os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE)


class ConfigManager:
    """
    Manages configuration loading and access for Gleaner.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the configuration manager.

        Args:
            config_path: Path to the configuration file (defaults to $GLEANER_CONFIG
                or gleaner.yaml)
        """
        self.config_path = Path(config_path) if config_path else default_config_path()
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from YAML file, on top of the defaults."""
        try:
            if not self.config_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

            with open(self.config_path, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f) or {}

            if not isinstance(loaded, dict):
                raise ValueError(f"Configuration file {self.config_path} is not a mapping")

            self._config = _merge(DEFAULT_CONFIG, loaded)
            logging.info(f"Configuration loaded from {self.config_path}")

        except (OSError, ValueError, yaml.YAMLError) as e:
            logging.warning(f"Using default configuration: {e}")
            self._config = copy.deepcopy(DEFAULT_CONFIG)

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get a configuration value using dot notation.

        Args:
            key_path: Dot-separated path to the configuration value (e.g., "hypothesis.group")
            default: Default value if key is not found

        Returns:
            The configuration value

        Examples:
            config.get("knowledge_base.file_extension")  # Returns "md"
            config.get("hypothesis.page_size")  # Returns 200
        """
        keys = key_path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_section(self, section: str) -> Dict[str, Any]:
        """
        Get an entire configuration section.

        Args:
            section: Name of the configuration section

        Returns:
            Dictionary containing the section configuration
        """
        return self._config.get(section, {})

    def set(self, key_path: str, value: Any) -> None:
        """Set a configuration value using dot notation."""
        keys = key_path.split('.')
        section = self._config
        for key in keys[:-1]:
            section = section.setdefault(key, {})
        section[keys[-1]] = value

    def reload(self) -> None:
        """Reload configuration from file."""
        self._load_config()

    def to_yaml(self) -> str:
        return yaml.safe_dump(self._config, sort_keys=False, allow_unicode=True)

    def store(self) -> None:
        """Write the current configuration back to its file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w', encoding='utf-8') as f:
            f.write(self.to_yaml())
        logging.info(f"Configuration written to {self.config_path}")

    @staticmethod
    def default_yaml() -> str:
        """The default configuration as YAML text."""
        return yaml.safe_dump(DEFAULT_CONFIG, sort_keys=False)

    # Convenience properties for commonly used values

    @property
    def hypothesis_username(self) -> Optional[str]:
        """Hypothesis username, falling back to $HYPOTHESIS_NAME."""
        return self.get("hypothesis.username") or os.environ.get("HYPOTHESIS_NAME")

    @property
    def hypothesis_key(self) -> Optional[str]:
        """Hypothesis developer key, falling back to $HYPOTHESIS_KEY."""
        return self.get("hypothesis.key") or os.environ.get("HYPOTHESIS_KEY")

    @property
    def hypothesis_group(self) -> str:
        return self.get("hypothesis.group", "__world__")

    @property
    def hypothesis_base_url(self) -> str:
        return self.get("hypothesis.base_url", "https://api.hypothes.is/api")

    @property
    def page_size(self) -> int:
        return int(self.get("hypothesis.page_size", 200))

    @property
    def timeout(self) -> float:
        return float(self.get("hypothesis.timeout", 30.0))

    @property
    def database_filename(self) -> str:
        return self.get("database.filename", "gleaner.duckdb")

    @property
    def kb_directory(self) -> str:
        return self.get("knowledge_base.directory", "kb")

    @property
    def file_extension(self) -> str:
        return str(self.get("knowledge_base.file_extension", "md")).lstrip(".")

    @property
    def index_name(self) -> str:
        return self.get("knowledge_base.index_name", "_index")

    @property
    def nested_tag(self) -> Optional[str]:
        return self.get("knowledge_base.nested_tag")

    @property
    def max_filename_length(self) -> int:
        return int(self.get("knowledge_base.max_filename_length", 150))

    @property
    def ignore_tag(self) -> str:
        return self.get("knowledge_base.ignore_tag", "gleaner_ignore")

    @property
    def templates(self) -> Dict[str, str]:
        return self.get("knowledge_base.templates") or {}

    @property
    def hierarchy(self) -> HierarchySpec:
        """Hierarchy levels from the configuration; raises InvalidSpec if malformed."""
        return HierarchySpec.from_names(
            self.get("knowledge_base.hierarchy") or [],
            nested_delimiter=self.nested_tag
        )

    @property
    def sort(self) -> SortSpec:
        """Sort keys from the configuration; raises InvalidSpec if malformed."""
        return SortSpec.from_names(self.get("knowledge_base.sort") or ["Created"])


@dataclass(frozen=True)
class GleanerContext:
    """
    Configuration and tracked group for one command.

    Passed explicitly to the sync engine, knowledge base writer and CLI
    handlers instead of living in module state.
    """

    config: ConfigManager
    group: str
    hierarchy: HierarchySpec
    sort: SortSpec

    @classmethod
    def from_config(cls, config: ConfigManager, group: Optional[str] = None) -> "GleanerContext":
        """Build a context, validating hierarchy and sort specs up front."""
        return cls(
            config=config,
            group=group or config.hypothesis_group,
            hierarchy=config.hierarchy,
            sort=config.sort
        )

    def require_credentials(self) -> tuple:
        """
        Hypothesis username and key.

        Raises:
            ConfigError: If either is missing
        """
        username = self.config.hypothesis_username
        key = self.config.hypothesis_key
        if not username or not key:
            raise ConfigError(
                "Hypothesis username and developer key are not configured. "
                "Set hypothesis.username/hypothesis.key in "
                f"{self.config.config_path} or $HYPOTHESIS_NAME/$HYPOTHESIS_KEY"
            )
        return username, key
