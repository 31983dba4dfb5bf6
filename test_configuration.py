#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
Test script for configuration handling.

This script validates:
- Configuration loading and deep merge
- Environment (GitHub Actions input) overrides
- Command line overrides
- Configuration validation
- Basic logging setup
"""

import logging
import sys
import tempfile
from pathlib import Path

# Add the project root to Python path to import our module
sys.path.insert(0, str(Path(__file__).parent))

try:
    from timesheet_reports import (
        DEFAULT_CONFIG,
        GITHUB_GRAPHQL_ENDPOINT,
        ConfigurationError,
        apply_argument_overrides,
        deep_merge_dicts,
        load_configuration,
        parse_arguments,
        setup_logging,
        split_repositories,
        validate_configuration,
    )
except ImportError as e:
    print(f"ERROR: Failed to import from timesheet_reports.py: {e}")
    sys.exit(1)


def write_config(directory, content):
    path = Path(directory) / "timesheet.config"
    path.write_text(content, encoding="utf-8")
    return path


def test_deep_merge():
    """Test the deep merge functionality."""
    print("Testing deep merge functionality...")

    base = {"api": {"endpoint": "a", "timeout": 30.0}, "timezone": "UTC", "repositories": ["x/y"]}
    override = {"api": {"timeout": 5}, "repositories": ["a/b"]}

    result = deep_merge_dicts(base, override)
    assert result["api"] == {"endpoint": "a", "timeout": 5}, "Nested keys should merge"
    assert result["repositories"] == ["a/b"], "Lists should be replaced, not merged"
    assert result["timezone"] == "UTC"
    assert base["api"]["timeout"] == 30.0, "Base should not be mutated"

    print("  ✅ Deep merge works correctly")


def test_defaults():
    """Test loading without a configuration file."""
    print("Testing defaults...")

    config = load_configuration(None, environ={})
    assert config["timezone"] == "UTC"
    assert config["duration_format_pattern"] == "hh:mm"
    assert config["repositories"] == []
    assert config["users_aliases"] == {}
    assert config["api"]["endpoint"] == GITHUB_GRAPHQL_ENDPOINT

    missing = load_configuration(Path("/nonexistent/timesheet.config"), environ={})
    assert missing == config, "A missing file means defaults only"
    assert DEFAULT_CONFIG["repositories"] == [], "Defaults are never mutated"

    print("  ✅ Defaults loaded")


def test_yaml_file():
    """Test merging a YAML configuration file over the defaults."""
    print("Testing YAML configuration...")

    with tempfile.TemporaryDirectory() as temp_dir:
        path = write_config(
            temp_dir,
            """
timezone: Europe/Lisbon
repositories:
  - https://github.com/acme/api
  - acme/web
users_aliases:
  alice: [al, alice-dev]
api:
  timeout: 10
""",
        )
        config = load_configuration(path, environ={})

    assert config["timezone"] == "Europe/Lisbon"
    assert config["repositories"] == ["https://github.com/acme/api", "acme/web"]
    assert config["users_aliases"] == {"alice": ["al", "alice-dev"]}
    assert config["api"]["timeout"] == 10
    assert config["api"]["endpoint"] == GITHUB_GRAPHQL_ENDPOINT, "Unset nested keys keep defaults"

    print("  ✅ YAML merged over defaults")


def test_invalid_files():
    """Test that malformed configuration files are rejected."""
    print("Testing invalid configuration files...")

    with tempfile.TemporaryDirectory() as temp_dir:
        for content in ("timezone: [unclosed", "- just\n- a list\n"):
            path = write_config(temp_dir, content)
            try:
                load_configuration(path, environ={})
                assert False, f"Expected ConfigurationError for {content!r}"
            except ConfigurationError:
                pass

    print("  ✅ Invalid files rejected")


def test_environment_overrides():
    """Test action inputs and GITHUB_TOKEN overrides."""
    print("Testing environment overrides...")

    environ = {
        "GITHUB_TOKEN": "ghs_token",
        "INPUT_REPOSITORIES": "https://github.com/acme/api\n  acme/web ",
        "INPUT_USERSALIASES": '{"alice": ["al"]}',
        "INPUT_TIMEZONE": "America/New_York",
        "INPUT_DURATIONFORMATPATTERN": "h'h' mm'm'",
        "INPUT_TEMPLATE": ".github/report.md",
        "INPUT_TRACKERREPOSITORY": "acme/timesheets",
        "INPUT_MASTERTEMPLATE": "   ",
    }
    config = load_configuration(None, environ=environ)

    assert config["token"] == "ghs_token"
    assert config["repositories"] == ["https://github.com/acme/api", "acme/web"]
    assert config["users_aliases"] == {"alice": ["al"]}
    assert config["timezone"] == "America/New_York"
    assert config["duration_format_pattern"] == "h'h' mm'm'"
    assert config["template_path"] == ".github/report.md"
    assert config["tracker_repository"] == "acme/timesheets"
    assert config["master_template_path"] == "templates/master.md", "Blank inputs are ignored"

    assert load_configuration(None, environ={"INPUT_TOKEN": "input"})["token"] == "input"

    try:
        load_configuration(None, environ={"INPUT_USERSALIASES": "{broken"})
        assert False, "Expected ConfigurationError for broken aliases JSON"
    except ConfigurationError:
        pass

    print("  ✅ Environment overrides applied")


def test_argument_overrides():
    """Test command line overrides."""
    print("Testing command line overrides...")

    base = load_configuration(None, environ={})

    args = parse_arguments(
        ["--repositories", "acme/api acme/web", "--timezone", "Asia/Tokyo", "--verbose", "--no-push"]
    )
    config = apply_argument_overrides(base, args)
    assert config["repositories"] == ["acme/api", "acme/web"]
    assert config["timezone"] == "Asia/Tokyo"
    assert config["logging"]["level"] == "DEBUG"
    assert args.no_push and not args.no_close_issues
    assert base["logging"]["level"] == "INFO", "Loaded config is not mutated"

    args = parse_arguments(["--verbose", "--log-level", "WARNING", "--duration-format", "hh"])
    config = apply_argument_overrides(base, args)
    assert config["logging"]["level"] == "WARNING", "Explicit level wins over --verbose"
    assert config["duration_format_pattern"] == "hh"

    assert split_repositories(None) == []
    assert split_repositories(" a/b \t c/d ") == ["a/b", "c/d"]
    assert split_repositories(["a/b", " ", "c/d "]) == ["a/b", "c/d"]

    print("  ✅ Command line overrides applied")


def test_validation():
    """Test configuration validation."""
    print("Testing validation...")

    valid = load_configuration(
        None, environ={"GITHUB_TOKEN": "t", "INPUT_REPOSITORIES": "acme/api"}
    )
    validate_configuration(valid)

    broken_configs = [
        dict(valid, token=""),
        dict(valid, timezone="Mars/Olympus_Mons"),
        dict(valid, repositories=[]),
        dict(valid, users_aliases=["alice"]),
    ]
    for config in broken_configs:
        try:
            validate_configuration(config)
            assert False, "Expected ConfigurationError"
        except ConfigurationError:
            pass

    print("  ✅ Validation rejects unusable configurations")

    with tempfile.TemporaryDirectory() as temp_dir:
        path = write_config(temp_dir, "repositories: [acme/api]\nusers_aliases:\n  alice: al\n")
        config = load_configuration(path, environ={"GITHUB_TOKEN": "t"})
        try:
            validate_configuration(config)
            assert False, "A plain string alias must be rejected"
        except ConfigurationError:
            pass

        path = write_config(temp_dir, "repositories: [acme/api]\nusers_aliases:\n  alice: [al]\n")
        validate_configuration(load_configuration(path, environ={"GITHUB_TOKEN": "t"}))

    print("  ✅ Alias values must be lists")


def test_logging_setup():
    """Test logging setup."""
    print("Testing logging setup...")

    logger = setup_logging("DEBUG", include_timestamps=False)
    assert isinstance(logger, logging.Logger)
    assert logger.name == "timesheet_reports"

    print("  ✅ Logging setup works")


def run_all_tests():
    """Run all configuration tests."""
    print("🧪 Running Configuration Tests")
    print("-" * 60)

    tests = [
        test_deep_merge,
        test_defaults,
        test_yaml_file,
        test_invalid_files,
        test_environment_overrides,
        test_argument_overrides,
        test_validation,
        test_logging_setup,
    ]

    passed = 0
    failed = 0

    for test_func in tests:
        try:
            test_func()
            passed += 1
        except Exception as e:
            print(f"  ❌ {test_func.__name__} failed: {e}")
            failed += 1
            import traceback
            traceback.print_exc()

    print("-" * 60)
    print(f"📊 Test Results: {passed} passed, {failed} failed")
    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
