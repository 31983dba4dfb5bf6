#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
Test script for API statistics tracking.

This script tests the APIStatistics class to ensure proper tracking and reporting
of GitHub GraphQL calls, including the GitHub Step Summary output.
"""

import concurrent.futures
import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import patch

# Add parent directory to path to import timesheet_reports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from timesheet_reports import APIStatistics


def test_api_statistics():
    """Test API statistics tracking."""
    print("🧪 Testing API Statistics Tracker\n")

    stats = APIStatistics()

    # Test 1: Initial state
    print("Test 1: Initial state")
    assert stats.get_total_calls("github") == 0
    assert stats.get_total_errors("github") == 0
    assert not stats.has_errors()
    print("✅ Initial state is correct\n")

    # Test 2: Record GitHub success
    print("Test 2: Recording GitHub successes")
    stats.record_success("github")
    stats.record_success("github")
    stats.record_success("github")
    assert stats.get_total_calls("github") == 3
    assert stats.stats["github"]["success"] == 3
    assert stats.get_total_errors("github") == 0
    print("✅ GitHub successes recorded correctly\n")

    # Test 3: Record GitHub errors
    print("Test 3: Recording GitHub errors")
    stats.record_error("github", 401)
    stats.record_error("github", 502)
    stats.record_error("github", 502)
    stats.record_exception("github")
    stats.record_error("github", "graphql")
    assert stats.get_total_errors("github") == 5
    assert stats.stats["github"]["errors"][401] == 1
    assert stats.stats["github"]["errors"][502] == 2
    assert stats.stats["github"]["errors"]["exception"] == 1
    assert stats.stats["github"]["errors"]["graphql"] == 1
    assert stats.get_total_calls("github") == 8  # 3 success + 5 errors
    assert stats.has_errors()
    print("✅ GitHub errors recorded correctly\n")

    # Test 4: Unknown API types are ignored
    print("Test 4: Unknown API types")
    stats.record_success("rest")
    stats.record_error("rest", 404)
    assert stats.get_total_calls("rest") == 0
    assert stats.get_total_errors("rest") == 0
    print("✅ Unknown API types ignored\n")

    # Test 5: Console output formatting
    print("Test 5: Testing console output formatting")
    output = stats.format_console_output()
    assert "GitHub API Statistics" in output
    assert "Successful calls: 3" in output
    assert "Failed calls: 5" in output
    assert "Error 401: 1" in output
    assert "Error 502: 2" in output
    assert "Error graphql: 1" in output
    print("✅ Console output formatted correctly\n")

    # Test 6: Empty statistics
    print("Test 6: Testing empty statistics")
    stats_empty = APIStatistics()
    assert stats_empty.format_console_output() == ""
    print("✅ Empty statistics handled correctly\n")

    print("\n🎉 All tests passed!")


def test_step_summary():
    """Test writing statistics to the GitHub Step Summary file."""
    print("Testing step summary output...")

    stats = APIStatistics()
    stats.record_success("github")
    stats.record_error("github", 502)

    with tempfile.TemporaryDirectory() as temp_dir:
        summary_path = Path(temp_dir) / "summary.md"
        summary_path.write_text("# Existing\n", encoding="utf-8")

        with patch.dict(os.environ, {"GITHUB_STEP_SUMMARY": str(summary_path)}):
            stats.write_to_step_summary()

        content = summary_path.read_text(encoding="utf-8")
        assert content.startswith("# Existing\n"), "Summary should be appended to"
        assert "GitHub API Statistics" in content
        assert "Successful calls: 1" in content
        assert "`502`: 1 call(s)" in content

    # Nothing is written without the variable
    with patch.dict(os.environ, {}, clear=True):
        stats.write_to_step_summary()

    print("  ✅ Step summary written correctly")


def test_concurrent_recording():
    """Test that calls recorded from worker threads are all counted."""
    print("Testing concurrent recording...")

    stats = APIStatistics()

    def record(index):
        for _ in range(200):
            if index % 2:
                stats.record_error("github", 502)
            else:
                stats.record_success("github")

    with concurrent.futures.ThreadPoolExecutor(max_workers=8) as executor:
        list(executor.map(record, range(8)))

    assert stats.stats["github"]["success"] == 800
    assert stats.stats["github"]["errors"][502] == 800
    assert stats.get_total_calls("github") == 1600

    print("  ✅ Concurrent calls counted")


if __name__ == "__main__":
    try:
        test_api_statistics()
        test_step_summary()
        test_concurrent_recording()
        sys.exit(0)
    except Exception as e:
        print(f"\n❌ Test failed with exception: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
