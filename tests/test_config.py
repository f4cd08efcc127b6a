# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Tests for configuration loading and validation."""

import yaml

from dotnet_incremental.config import Config, ConfigurationError, DependencyCycleError


def _write(path, data):
    with open(path, "w") as f:
        yaml.dump(data, f)


def test_default_config_when_file_missing(tmp_path):
    """Test that defaults are used when config file is missing."""
    config = Config(config_path=tmp_path / "nonexistent.yml")

    assert config.parallel == 0
    assert config.keep_going is False
    assert config.solution == "auto"
    assert config.heuristics == "default"
    assert config.full_build is False
    assert config.force is False
    assert config.coverage is False
    assert config.print_output is False
    assert config.cache_dir == ".donotnet"
    assert config.coverage_granularity == "class"
    assert config.coverage_max_age_hours == 0
    assert config.watch_debounce_ms == 300
    assert config.ignore_patterns == []
    assert config.progress_queue_size == 256
    assert config.cache_max_age_days == 0


def test_valid_config_loading(tmp_path):
    """Test loading a valid configuration file."""
    config_path = tmp_path / "config.yml"
    _write(
        config_path,
        {
            "parallel": 4,
            "keep_going": True,
            "solution": "force",
            "heuristics": "default,NameToNameTests",
            "cache_dir": ".cache/incremental",
            "ignore_patterns": ["*.generated.cs", "docs/"],
        },
    )

    config = Config(config_path=config_path)

    assert config.parallel == 4
    assert config.keep_going is True
    assert config.solution == "force"
    assert config.heuristics == "default,NameToNameTests"
    assert config.cache_dir == ".cache/incremental"
    assert config.ignore_patterns == ["*.generated.cs", "docs/"]
    # Defaults for unspecified values
    assert config.watch_debounce_ms == 300


def test_invalid_parameter_values(tmp_path):
    """Test that invalid parameter values are rejected and defaults used."""
    config_path = tmp_path / "config.yml"
    _write(
        config_path,
        {
            "parallel": -1,  # Invalid: must be >= 0
            "solution": "sometimes",  # Invalid: not a policy
            "coverage_granularity": "file",  # Invalid: method or class
            "watch_debounce_ms": 0,  # Invalid: must be > 0
            "progress_queue_size": 0,  # Invalid: must be > 0
            "cache_dir": "  ",  # Invalid: blank
            "ignore_patterns": ["ok", 3],  # Invalid: non-string entry
        },
    )

    config = Config(config_path=config_path)

    assert config.parallel == 0
    assert config.solution == "auto"
    assert config.coverage_granularity == "class"
    assert config.watch_debounce_ms == 300
    assert config.progress_queue_size == 256
    assert config.cache_dir == ".donotnet"
    assert config.ignore_patterns == []


def test_invalid_parameter_types(tmp_path):
    """Test that wrong types fall back to defaults, including bool-for-int."""
    config_path = tmp_path / "config.yml"
    _write(config_path, {"parallel": True, "keep_going": "yes", "heuristics": 5})

    config = Config(config_path=config_path)

    assert config.parallel == 0
    assert config.keep_going is False
    assert config.heuristics == "default"


def test_unknown_parameters_ignored(tmp_path):
    config_path = tmp_path / "config.yml"
    _write(config_path, {"unknown_param": 1, "parallel": 2})

    config = Config(config_path=config_path)

    assert config.parallel == 2
    assert "unknown_param" not in config._config


def test_empty_config_file(tmp_path):
    """Test handling of empty configuration file."""
    config_path = tmp_path / "config.yml"
    config_path.write_text("")

    config = Config(config_path=config_path)

    assert config.parallel == 0


def test_non_mapping_config_file(tmp_path):
    config_path = tmp_path / "config.yml"
    config_path.write_text("- just\n- a list\n")

    config = Config(config_path=config_path)

    assert config.solution == "auto"


def test_malformed_yaml(tmp_path):
    """Test handling of malformed YAML file."""
    config_path = tmp_path / "config.yml"
    config_path.write_text("parallel: [unclosed\n")

    config = Config(config_path=config_path)

    assert config.parallel == 0


def test_from_dict_validates_like_a_file():
    config = Config.from_dict({"parallel": 3, "solution": "bogus"})

    assert config.config_path is None
    assert config.parallel == 3
    assert config.solution == "auto"


def test_dependency_cycle_error_message():
    error = DependencyCycleError({"B.csproj": ["A.csproj"], "A.csproj": ["B.csproj"]})

    assert isinstance(error, ConfigurationError)
    assert error.waiting == {"A.csproj": ["B.csproj"], "B.csproj": ["A.csproj"]}
    assert "A.csproj waiting on B.csproj" in str(error)
    assert "B.csproj waiting on A.csproj" in str(error)
