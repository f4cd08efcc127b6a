# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Configuration loading and validation for the incremental execution engine."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration validation fails critically."""

    pass


class DependencyCycleError(ConfigurationError):
    """Raised when target-set projects form a dependency cycle.

    Attributes:
        waiting: Maps each stuck project (or job) to the items it is waiting on.
    """

    def __init__(self, waiting: Dict[str, List[str]]):
        self.waiting = {key: sorted(value) for key, value in sorted(waiting.items())}
        lines = [
            f"{stuck} waiting on {', '.join(deps)}" for stuck, deps in self.waiting.items()
        ]
        super().__init__("Dependency cycle detected:\n  " + "\n  ".join(lines))


class Config:
    """Configuration for the incremental execution engine.

    Loads configuration from .dotnet_incremental.yml with validation and defaults.
    """

    DEFAULTS = {
        "parallel": 0,  # 0 = logical CPU count
        "keep_going": False,
        "solution": "auto",
        "heuristics": "default",
        "full_build": False,
        "force": False,
        "coverage": False,
        "print_output": False,
        "cache_dir": ".donotnet",
        "coverage_granularity": "class",
        "coverage_max_age_hours": 0,
        "watch_debounce_ms": 300,
        "ignore_patterns": [],
        "progress_queue_size": 256,
        "cache_max_age_days": 0,
    }

    SOLUTION_POLICIES = ("auto", "force", "never")
    COVERAGE_GRANULARITIES = ("method", "class")

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration.

        Args:
            config_path: Path to configuration file. If None, uses default location.
        """
        if config_path is None:
            config_path = Path.cwd() / ".dotnet_incremental.yml"

        self.config_path = config_path
        self._config: Dict[str, Any] = {}
        self._load_config()

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "Config":
        """Build a configuration from an in-memory mapping, validated like a file."""
        config = cls.__new__(cls)
        config.config_path = None
        config._config = cls.DEFAULTS.copy()
        config._validate_and_merge(values)
        return config

    def _load_config(self) -> None:
        """Load and validate configuration from file."""
        if not self.config_path.exists():
            logger.info(f"Configuration file not found at {self.config_path}, using defaults")
            self._config = self.DEFAULTS.copy()
            return

        try:
            with open(self.config_path, encoding="utf-8") as f:
                loaded_config = yaml.safe_load(f)

            if loaded_config is None:
                logger.warning("Configuration file is empty, using defaults")
                self._config = self.DEFAULTS.copy()
                return

            if not isinstance(loaded_config, dict):
                logger.warning(
                    f"Configuration file must contain a YAML dictionary, "
                    f"got {type(loaded_config)}, using defaults"
                )
                self._config = self.DEFAULTS.copy()
                return

            self._config = self.DEFAULTS.copy()
            self._validate_and_merge(loaded_config)

        except yaml.YAMLError as e:
            logger.warning(
                f"Error parsing configuration file {self.config_path}: {e}, using defaults"
            )
            self._config = self.DEFAULTS.copy()
        except OSError as e:
            logger.warning(
                f"Error reading configuration file {self.config_path}: {e}, using defaults"
            )
            self._config = self.DEFAULTS.copy()

    def _validate_and_merge(self, loaded_config: Dict[str, Any]) -> None:
        """Validate loaded configuration and merge with defaults.

        Invalid parameters are logged as warnings and defaults are used.
        """
        for key, value in loaded_config.items():
            if key not in self.DEFAULTS:
                logger.warning(f"Unknown configuration parameter '{key}', ignoring")
                continue

            if not self._validate_parameter(key, value):
                logger.warning(
                    f"Invalid value for '{key}': {value}, using default {self.DEFAULTS[key]}"
                )
                continue

            self._config[key] = value

    def _validate_parameter(self, key: str, value: Any) -> bool:
        """Validate a configuration parameter.

        Returns:
            True if valid, False if invalid
        """
        expected_type = type(self.DEFAULTS[key])
        # bool is a subclass of int; reject it for numeric settings
        if expected_type is int and isinstance(value, bool):
            return False
        if not isinstance(value, expected_type):
            return False

        if key in ("parallel", "coverage_max_age_hours", "cache_max_age_days"):
            return bool(value >= 0)
        elif key in ("watch_debounce_ms", "progress_queue_size"):
            return bool(value > 0)
        elif key == "solution":
            return value in self.SOLUTION_POLICIES
        elif key == "coverage_granularity":
            return value in self.COVERAGE_GRANULARITIES
        elif key == "cache_dir":
            return bool(value.strip())
        elif key == "ignore_patterns":
            return all(isinstance(pattern, str) for pattern in value)

        return True

    @property
    def parallel(self) -> int:
        """Worker count; 0 means one per logical CPU."""
        value = self._config["parallel"]
        assert isinstance(value, int)
        return value

    @property
    def keep_going(self) -> bool:
        """Whether to keep running independent jobs after a failure."""
        value = self._config["keep_going"]
        assert isinstance(value, bool)
        return value

    @property
    def solution(self) -> str:
        """Solution batching policy: auto, force or never."""
        value = self._config["solution"]
        assert isinstance(value, str)
        return value

    @property
    def heuristics(self) -> str:
        """Comma-separated heuristic selection, e.g. ``default,NameToNameTests``."""
        value = self._config["heuristics"]
        assert isinstance(value, str)
        return value

    @property
    def full_build(self) -> bool:
        """Whether skip-build/skip-restore detection is disabled."""
        value = self._config["full_build"]
        assert isinstance(value, bool)
        return value

    @property
    def force(self) -> bool:
        """Whether cache lookups are bypassed (results are still recorded)."""
        value = self._config["force"]
        assert isinstance(value, bool)
        return value

    @property
    def coverage(self) -> bool:
        """Whether test runs collect coverage."""
        value = self._config["coverage"]
        assert isinstance(value, bool)
        return value

    @property
    def print_output(self) -> bool:
        """Whether cached output must be replayable (empty cached output is a miss)."""
        value = self._config["print_output"]
        assert isinstance(value, bool)
        return value

    @property
    def cache_dir(self) -> str:
        """Cache directory, relative to the repository root."""
        value = self._config["cache_dir"]
        assert isinstance(value, str)
        return value

    @property
    def coverage_granularity(self) -> str:
        """How tests are grouped when building coverage maps."""
        value = self._config["coverage_granularity"]
        assert isinstance(value, str)
        return value

    @property
    def coverage_max_age_hours(self) -> int:
        """Age after which a coverage map is reported stale (0 disables)."""
        value = self._config["coverage_max_age_hours"]
        assert isinstance(value, int)
        return value

    @property
    def watch_debounce_ms(self) -> int:
        """Quiet period before a batch of file changes is delivered."""
        value = self._config["watch_debounce_ms"]
        assert isinstance(value, int)
        return value

    @property
    def ignore_patterns(self) -> List[str]:
        """Additional file patterns to ignore beyond .gitignore."""
        value = self._config["ignore_patterns"]
        assert isinstance(value, list)
        return value

    @property
    def progress_queue_size(self) -> int:
        """Capacity of the best-effort progress channel."""
        value = self._config["progress_queue_size"]
        assert isinstance(value, int)
        return value

    @property
    def cache_max_age_days(self) -> int:
        """Entries older than this are pruned when the engine opens (0 disables)."""
        value = self._config["cache_max_age_days"]
        assert isinstance(value, int)
        return value
