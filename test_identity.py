#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
Test script for contributor alias mapping and repository reference parsing.
"""

import sys
from pathlib import Path

# Add the project root to Python path to import our module
sys.path.insert(0, str(Path(__file__).parent))

try:
    from timesheet_reports import (
        ConfigurationError,
        RepositoryRef,
        UsernameMapper,
        parse_repository_url,
    )
except ImportError as e:
    print(f"ERROR: Failed to import from timesheet_reports.py: {e}")
    sys.exit(1)


def test_map_username():
    """Test alias resolution."""
    print("Testing alias resolution...")

    mapper = UsernameMapper({"alice": ["alice-dev", "al"]})
    assert mapper.map_username("al") == "alice"
    assert mapper.map_username("alice-dev") == "alice"
    assert mapper.map_username("bob") == "bob", "Unknown handles pass through unchanged"
    assert mapper.map_username("alice") == "alice"

    print("  ✅ Aliases resolved")


def test_first_match_wins():
    """Test that the first configured name claiming a handle wins."""
    print("Testing overlapping aliases...")

    mapper = UsernameMapper({"first": ["shared"], "second": ["shared"]})
    assert mapper.map_username("shared") == "first"

    print("  ✅ First match wins")


def test_from_json():
    """Test building the mapper from the JSON action input."""
    print("Testing JSON aliases...")

    mapper = UsernameMapper.from_json('{"alice": ["al"], "bob": []}')
    assert mapper.map_username("al") == "alice"
    assert UsernameMapper.from_json("").aliases == {}
    assert UsernameMapper.from_json("   ").aliases == {}

    for document in ("{not json", '["alice"]', '{"alice": "al"}'):
        try:
            UsernameMapper.from_json(document)
            assert False, f"Expected ConfigurationError for {document!r}"
        except ConfigurationError:
            pass

    print("  ✅ JSON aliases parsed and validated")


def test_parse_repository_url():
    """Test repository reference decomposition."""
    print("Testing repository references...")

    expected = RepositoryRef(owner="acme", name="api")
    for reference in (
        "https://github.com/acme/api",
        "https://github.com/acme/api.git",
        "https://github.com/acme/api/",
        "git@github.com:acme/api.git",
        "ssh://git@github.com/acme/api.git",
        "github.com/acme/api",
        "acme/api",
        "  acme/api  ",
    ):
        assert parse_repository_url(reference) == expected, f"Failed to parse {reference!r}"

    assert expected.path == "acme/api"
    assert expected.url == "https://github.com/acme/api"
    print("  ✅ Repository references parsed")

    for reference in ("", "not-a-repo", "https://github.com/acme"):
        assert parse_repository_url(reference) is None, f"{reference!r} should not parse"

    print("  ✅ Unparseable references rejected")


def run_all_tests():
    """Run all identity tests."""
    print("🧪 Running Identity Tests")
    print("-" * 60)

    tests = [
        test_map_username,
        test_first_match_wins,
        test_from_json,
        test_parse_repository_url,
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
