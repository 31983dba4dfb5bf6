#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
Timesheet Reporting System - Monthly Time Tracking Across GitHub Repositories

This script walks the GitHub GraphQL API for every configured repository and
builds monthly time reports:
- Commits on the default branch since the start of the month
- Pull requests reached from those commits, with their commits and comments
- Issues labelled with the repository path in the tracker repository
- Per-contributor duration and activity breakdowns

Durations are parsed out of free text ("fixed parser 2h30m", "1 day") and
rolled up per item, per contributor and per repository.

Architecture:
- Single script with modular internal structure
- One accumulator per entity type, sharing a small duration ledger
- Commit and comment time attributed to the owning pull request
- Markdown reports rendered from user templates with {{ token }} placeholders
- Configuration-driven with YAML defaults + environment/CLI overrides
"""

import argparse
import concurrent.futures
import copy
import datetime
import json
import logging
import os
import re
import subprocess
import sys
import threading
from dataclasses import dataclass
from email.utils import format_datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union
from urllib.parse import quote, urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

try:
    import yaml  # type: ignore
except ImportError:
    print(
        "ERROR: PyYAML is required. Install with: pip install PyYAML", file=sys.stderr
    )
    sys.exit(1)

try:
    import httpx  # type: ignore
except ImportError:
    print("ERROR: httpx is required. Install with: pip install httpx", file=sys.stderr)
    sys.exit(1)

# =============================================================================
# CONSTANTS
# =============================================================================

SCRIPT_VERSION = "1.0.0"
DEFAULT_CONFIG_PATH = "configuration/template.config"
GITHUB_GRAPHQL_ENDPOINT = "https://api.github.com/graphql"

GITHUB_ACTIONS_BOT_NAME = "github-actions[bot]"
GITHUB_ACTIONS_BOT_EMAIL = "41898282+github-actions[bot]@users.noreply.github.com"

# Pull requests resolved per aliased node() lookup
PULL_REQUEST_BATCH_SIZE = 50

DEFAULT_CONFIG: Dict[str, Any] = {
    "token": "",
    "template_path": "templates/repository.md",
    "master_template_path": "templates/master.md",
    "timezone": "UTC",
    "duration_format_pattern": "hh:mm",
    "users_aliases": {},
    "repositories": [],
    "tracker_repository": "",
    "output_dir": ".",
    "api": {
        "endpoint": GITHUB_GRAPHQL_ENDPOINT,
        "timeout": 30.0,
        "max_workers": 8,
    },
    "git": {
        "commit_message": "Update Files",
        "remote": "origin",
        "branch": "",
    },
    "logging": {
        "level": "INFO",
        "include_timestamps": True,
    },
}

# Environment variables recognised on top of the YAML configuration. The
# INPUT_* names are what GitHub Actions exports for action inputs.
ENVIRONMENT_OVERRIDES = {
    "token": ("GITHUB_TOKEN", "INPUT_TOKEN"),
    "template_path": ("INPUT_TEMPLATE",),
    "master_template_path": ("INPUT_MASTERTEMPLATE",),
    "timezone": ("INPUT_TIMEZONE",),
    "duration_format_pattern": ("INPUT_DURATIONFORMATPATTERN",),
    "users_aliases": ("INPUT_USERSALIASES",),
    "repositories": ("INPUT_REPOSITORIES",),
    "tracker_repository": ("INPUT_TRACKERREPOSITORY",),
}

BREAKDOWN_COUNTERS = ("commits", "pullRequests", "issues", "comments")

# =============================================================================
# EXCEPTIONS
# =============================================================================


class ReportsError(Exception):
    """Base exception for timesheet report failures."""

    pass


class ConfigurationError(ReportsError):
    """Raised when the configuration is missing or invalid."""

    pass


class GitHubAPIError(ReportsError):
    """Raised when a GitHub GraphQL call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class IssueCloseError(ReportsError):
    """Raised after a bulk close when one or more issues could not be closed."""

    def __init__(self, failures: List[Dict[str, Any]]):
        numbers = ", ".join(f"#{failure['number']}" for failure in failures)
        super().__init__(f"Failed to close {len(failures)} issue(s): {numbers}")
        self.failures = failures


class GitError(ReportsError):
    """Raised when committing or pushing the generated reports fails."""

    pass


# =============================================================================
# API STATISTICS TRACKING
# =============================================================================


class APIStatistics:
    """Track statistics for GitHub GraphQL API calls."""

    def __init__(self):
        """Initialize statistics tracker."""
        self.stats = {
            "github": {"success": 0, "errors": {}},
        }
        # Issue closing records from worker threads
        self._lock = threading.Lock()

    def record_success(self, api_type: str) -> None:
        """Record a successful API call."""
        if api_type in self.stats:
            with self._lock:
                self.stats[api_type]["success"] += 1

    def record_error(self, api_type: str, status_code: Union[int, str]) -> None:
        """Record an API error by status code."""
        if api_type in self.stats:
            with self._lock:
                errors = self.stats[api_type]["errors"]
                errors[status_code] = errors.get(status_code, 0) + 1

    def record_exception(self, api_type: str, error_type: str = "exception") -> None:
        """Record an API exception (non-HTTP error)."""
        self.record_error(api_type, error_type)

    def get_total_calls(self, api_type: str) -> int:
        """Get total number of API calls (success + errors)."""
        if api_type not in self.stats:
            return 0
        success = self.stats[api_type]["success"]
        errors = sum(self.stats[api_type]["errors"].values())
        return success + errors

    def get_total_errors(self, api_type: str) -> int:
        """Get total number of errors for an API."""
        if api_type not in self.stats:
            return 0
        return sum(self.stats[api_type]["errors"].values())

    def has_errors(self) -> bool:
        """Check if any API has errors."""
        return any(self.get_total_errors(api_type) > 0 for api_type in self.stats)

    def format_console_output(self) -> str:
        """Format statistics for console output."""
        if self.get_total_calls("github") == 0:
            return ""

        lines = ["\n📊 GitHub API Statistics:"]
        lines.append(f"   ✅ Successful calls: {self.stats['github']['success']}")
        total_errors = self.get_total_errors("github")
        if total_errors > 0:
            lines.append(f"   ❌ Failed calls: {total_errors}")
            for code, count in sorted(
                self.stats["github"]["errors"].items(), key=lambda x: str(x[0])
            ):
                lines.append(f"      • Error {code}: {count}")

        return "\n".join(lines)

    def write_to_step_summary(self) -> None:
        """Write statistics to GitHub Step Summary."""
        step_summary_file = os.environ.get("GITHUB_STEP_SUMMARY")
        if not step_summary_file or self.get_total_calls("github") == 0:
            return

        try:
            with open(step_summary_file, "a", encoding="utf-8") as f:
                f.write("\n## 📊 GitHub API Statistics\n\n")
                f.write(f"- ✅ Successful calls: {self.stats['github']['success']}\n")
                total_errors = self.get_total_errors("github")
                if total_errors > 0:
                    f.write(f"- ❌ Failed calls: {total_errors}\n")
                    f.write("\n**Error Breakdown:**\n\n")
                    for code, count in sorted(
                        self.stats["github"]["errors"].items(), key=lambda x: str(x[0])
                    ):
                        f.write(f"- `{code}`: {count} call(s)\n")
                f.write("\n")
        except OSError as e:
            logging.debug(f"Could not write API statistics to GITHUB_STEP_SUMMARY: {e}")


# =============================================================================
# LOGGING SETUP
# =============================================================================


def setup_logging(
    level: str = "INFO", include_timestamps: bool = True
) -> logging.Logger:
    """Configure logging with structured format."""
    log_format = "[%(levelname)s]"
    if include_timestamps:
        log_format = "[%(asctime)s] " + log_format
    log_format += " %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S" if include_timestamps else None,
    )

    logger = logging.getLogger("timesheet_reports")
    return logger


# =============================================================================
# CONFIGURATION LOADING AND DEEP MERGE
# =============================================================================


def deep_merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge two dictionaries, with override taking precedence."""
    result = copy.deepcopy(base)

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge_dicts(result[key], value)
        else:
            result[key] = copy.deepcopy(value)

    return result


def load_yaml_config(config_path: Path) -> Dict[str, Any]:
    """Load and parse a YAML configuration file."""
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")


def split_repositories(value: Union[str, Sequence[str], None]) -> list[str]:
    """Normalize the repositories option into a list of non-empty references."""
    if not value:
        return []
    if isinstance(value, str):
        return [entry for entry in re.split(r"\s+", value) if entry]
    return [str(entry).strip() for entry in value if str(entry).strip()]


def apply_environment_overrides(
    config: dict[str, Any], environ: Optional[Mapping[str, str]] = None
) -> dict[str, Any]:
    """Overlay environment variables (action inputs, GITHUB_TOKEN) onto config."""
    environ = os.environ if environ is None else environ
    result = copy.deepcopy(config)

    for key, names in ENVIRONMENT_OVERRIDES.items():
        for name in names:
            value = environ.get(name, "").strip()
            if value:
                result[key] = value
                break

    return result


def load_configuration(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> dict[str, Any]:
    """
    Load configuration with defaults + YAML file + environment merge strategy.

    Args:
        config_path: Optional YAML file; a missing file means defaults only
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Merged configuration dictionary with normalized repositories/aliases
    """
    file_config: Dict[str, Any] = {}
    if config_path is not None:
        file_config = load_yaml_config(config_path)
        if not isinstance(file_config, dict):
            raise ConfigurationError(
                f"Configuration file {config_path} must contain a mapping"
            )

    merged_config = deep_merge_dicts(DEFAULT_CONFIG, file_config)
    merged_config = apply_environment_overrides(merged_config, environ)

    merged_config["repositories"] = split_repositories(merged_config.get("repositories"))

    aliases = merged_config.get("users_aliases") or {}
    if isinstance(aliases, str):
        aliases = UsernameMapper.from_json(aliases).aliases
    merged_config["users_aliases"] = aliases

    return merged_config


def validate_configuration(config: dict[str, Any]) -> None:
    """Raise ConfigurationError when the configuration cannot drive a run."""
    if not config.get("token"):
        raise ConfigurationError(
            "A GitHub token is required (config 'token' or GITHUB_TOKEN)"
        )

    try:
        ZoneInfo(config.get("timezone") or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigurationError(f"Unknown timezone: {config.get('timezone')}")

    if not config.get("repositories"):
        raise ConfigurationError("No repositories configured")

    aliases = config.get("users_aliases")
    if not isinstance(aliases, dict) or not all(
        isinstance(handles, list) for handles in aliases.values()
    ):
        raise ConfigurationError("users_aliases must map names to alias lists")


# =============================================================================
# DURATION PARSING AND FORMATTING
# =============================================================================

# Scheme-less host.tld[/path] forms; stripped before parsing so tokens inside
# links ("/issue/2h") are not read as durations.
URL_PATTERN = re.compile(
    r"[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b([-a-zA-Z0-9()@:%_+.~#?&/=]*)"
)

DURATION_PATTERN = re.compile(
    r"((?:\d{1,16}(?:\.\d{1,16})?|\.\d{1,16})(?:[eE][-+]?\d{1,4})?)\s?([^\W\d_]{0,14})"
)

DIGIT_SEPARATOR_PATTERN = re.compile(r"(\d)[_,](\d)")

_SECOND = 1000
_MINUTE = _SECOND * 60
_HOUR = _MINUTE * 60
_DAY = _HOUR * 24
_YEAR = _DAY * 365.25

DURATION_UNITS: Dict[str, float] = {
    "nanosecond": 1 / 1e6,
    "ns": 1 / 1e6,
    "microsecond": 1 / 1e3,
    "us": 1 / 1e3,
    "µs": 1 / 1e3,
    "μs": 1 / 1e3,
    "millisecond": 1,
    "ms": 1,
    "second": _SECOND,
    "sec": _SECOND,
    "s": _SECOND,
    "minute": _MINUTE,
    "min": _MINUTE,
    "m": _MINUTE,
    "hour": _HOUR,
    "hr": _HOUR,
    "h": _HOUR,
    "day": _DAY,
    "d": _DAY,
    "week": _DAY * 7,
    "wk": _DAY * 7,
    "w": _DAY * 7,
    "month": _YEAR / 12,
    "mo": _YEAR / 12,
    "b": _YEAR / 12,
    "year": _YEAR,
    "yr": _YEAR,
    "y": _YEAR,
}


def _unit_ratio(unit: str) -> Optional[float]:
    """Resolve a unit word to milliseconds, accepting case and plural variants."""
    if unit in DURATION_UNITS:
        return DURATION_UNITS[unit]
    normalized = unit.lower()
    if normalized in DURATION_UNITS:
        return DURATION_UNITS[normalized]
    if normalized.endswith("s"):
        return DURATION_UNITS.get(normalized[:-1])
    return None


def strip_urls(text: str) -> str:
    """Remove link-like substrings from text."""
    return URL_PATTERN.sub("", text)


def parse_duration(text: str) -> float:
    """
    Parse every duration expression in text and return the sum in milliseconds.

    Numbers without a recognised unit contribute nothing; "2h30m" is read as
    two expressions.
    """
    text = DIGIT_SEPARATOR_PATTERN.sub(r"\1\2", text)
    total = 0.0

    for number, unit in DURATION_PATTERN.findall(text):
        if not unit:
            continue
        ratio = _unit_ratio(unit)
        if ratio is None:
            continue
        try:
            total += float(number) * ratio
        except ValueError:
            continue

    return total


def compute_duration(*texts: Optional[str]) -> int:
    """Sum the durations (milliseconds) found in all texts, ignoring links."""
    total = 0.0
    for text in texts:
        if not text:
            continue
        total += parse_duration(strip_urls(text))
    return int(round(total))


class DurationParser:
    """Computes durations and keeps the running total for the master report."""

    def __init__(self) -> None:
        self.total = 0

    def compute(self, *texts: Optional[str]) -> int:
        duration = compute_duration(*texts)
        self.total += duration
        return duration


# Luxon-style duration format tokens, shifted largest unit first.
DURATION_FORMAT_UNITS = {
    "y": _DAY * 365,
    "M": _DAY * 30,
    "w": _DAY * 7,
    "d": _DAY,
    "h": _HOUR,
    "m": _MINUTE,
    "s": _SECOND,
    "S": 1,
}


def _tokenize_duration_pattern(pattern: str) -> list[tuple[bool, str]]:
    """Split a format pattern into (is_literal, text) tokens."""
    tokens: list[tuple[bool, str]] = []
    position = 0

    while position < len(pattern):
        char = pattern[position]
        if char == "'":
            end = pattern.find("'", position + 1)
            if end == -1:
                end = len(pattern)
            tokens.append((True, pattern[position + 1 : end]))
            position = end + 1
            continue

        end = position
        while end < len(pattern) and pattern[end] == char:
            end += 1
        tokens.append((char not in DURATION_FORMAT_UNITS, pattern[position:end]))
        position = end

    return tokens


def format_duration(milliseconds: Union[int, float], pattern: str) -> str:
    """
    Render a duration with a token pattern such as "hh:mm" or "d'd' h'h'".

    The duration is broken down into the units present in the pattern only,
    so "hh:mm" for 26 hours gives "26:00".
    """
    tokens = _tokenize_duration_pattern(pattern)
    units = sorted(
        {text[0] for literal, text in tokens if not literal},
        key=lambda unit: -DURATION_FORMAT_UNITS[unit],
    )

    remaining = int(milliseconds)
    values: Dict[str, int] = {}
    for unit in units:
        size = int(DURATION_FORMAT_UNITS[unit])
        values[unit], remaining = divmod(remaining, size)

    parts = []
    for literal, text in tokens:
        if literal:
            parts.append(text)
        else:
            parts.append(str(values[text[0]]).zfill(len(text)))

    return "".join(parts)


# =============================================================================
# IDENTITY MAPPING
# =============================================================================


class UsernameMapper:
    """Resolves GitHub handles to canonical contributor names."""

    def __init__(self, aliases: Optional[Mapping[str, Sequence[str]]] = None) -> None:
        self.aliases: Dict[str, List[str]] = {
            name: list(handles) for name, handles in (aliases or {}).items()
        }

    @classmethod
    def from_json(cls, document: str) -> "UsernameMapper":
        """Build a mapper from a JSON object of canonical name -> aliases."""
        if not document or not document.strip():
            return cls()
        try:
            aliases = json.loads(document)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid users aliases JSON: {e}")
        if not isinstance(aliases, dict) or not all(
            isinstance(handles, list) for handles in aliases.values()
        ):
            raise ConfigurationError(
                "Users aliases must be a JSON object of name -> [aliases]"
            )
        return cls(aliases)

    def map_username(self, username: str) -> str:
        """Return the canonical name for username; first configured match wins."""
        for name, handles in self.aliases.items():
            if username in handles:
                return name
        return username


# =============================================================================
# REPOSITORY REFERENCES
# =============================================================================


@dataclass(frozen=True)
class RepositoryRef:
    """An owner/name pair identifying a GitHub repository."""

    owner: str
    name: str

    @property
    def path(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def url(self) -> str:
        return f"https://github.com/{self.path}"


def parse_repository_url(url: str) -> Optional[RepositoryRef]:
    """
    Decompose a repository reference into owner and name.

    Accepts https/ssh URLs, scp-like git@host:owner/name.git and bare
    owner/name forms. Returns None when owner and name cannot be derived.
    """
    candidate = (url or "").strip()
    if not candidate:
        return None

    if "://" in candidate:
        repo_path = urlparse(candidate).path
    elif re.match(r"^[\w.-]+@[\w.-]+:", candidate):
        repo_path = candidate.split(":", 1)[1]
    else:
        repo_path = candidate

    parts = [part for part in repo_path.strip("/").split("/") if part]
    # Scheme-less host prefix, e.g. github.com/owner/name
    if len(parts) >= 3 and "." in parts[0]:
        parts = parts[1:]
    if len(parts) < 2:
        return None

    owner, name = parts[0], parts[1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    if not owner or not name:
        return None

    return RepositoryRef(owner=owner, name=name)


# =============================================================================
# GRAPHQL QUERIES
# =============================================================================


def _connection(*fields: str) -> str:
    """Wrap node fields in the pageInfo/edges connection shape."""
    node_fields = "\n".join(fields)
    return f"""
        pageInfo {{
            hasNextPage
        }}
        edges {{
            cursor
            node {{
                {node_fields}
            }}
        }}
    """


COMMIT_FIELDS = """
    oid
    abbreviatedOid
    messageHeadline
    url
    author {
        name
        user {
            name
            login
            avatarUrl(size: 12)
        }
    }
"""

ASSOCIATED_PULL_REQUESTS_FIELDS = f"""
    associatedPullRequests(first: 100) {{
        {_connection("id")}
    }}
"""

COMMENT_FIELDS = """
    id
    url
    bodyText
    author {
        avatarUrl(size: 12)
        login
    }
"""

PULL_REQUEST_COMMIT_FIELDS = f"""
    commit {{
        {COMMIT_FIELDS}
    }}
"""

PULL_REQUEST_FIELDS = """
    id
    title
    bodyText
    state
    url
    number
    closedAt
    author {
        avatarUrl(size: 12)
        login
    }
"""

ISSUE_FIELDS = """
    id
    title
    bodyText
    createdAt
    url
    number
    state
    author {
        avatarUrl(size: 12)
        login
    }
    labels(first: 100) {
        nodes {
            name
        }
    }
"""

COMMITS_HISTORY_QUERY = f"""
query ($after: String, $name: String!, $owner: String!, $since: GitTimestamp!) {{
    repository(name: $name, owner: $owner) {{
        defaultBranchRef {{
            target {{
                ... on Commit {{
                    history(since: $since, after: $after, first: 100) {{
                        {_connection(COMMIT_FIELDS, ASSOCIATED_PULL_REQUESTS_FIELDS)}
                    }}
                }}
            }}
        }}
    }}
}}
"""

PULL_REQUEST_COMMITS_AND_COMMENTS_QUERY = f"""
query ($id: ID!) {{
    node(id: $id) {{
        ... on PullRequest {{
            commits(first: 100) {{
                {_connection(PULL_REQUEST_COMMIT_FIELDS)}
            }}
            comments(first: 100) {{
                {_connection(COMMENT_FIELDS)}
            }}
        }}
    }}
}}
"""

PULL_REQUEST_COMMITS_QUERY = f"""
query ($after: String, $id: ID!) {{
    node(id: $id) {{
        ... on PullRequest {{
            commits(first: 100, after: $after) {{
                {_connection(PULL_REQUEST_COMMIT_FIELDS)}
            }}
        }}
    }}
}}
"""

PULL_REQUEST_COMMENTS_QUERY = f"""
query ($after: String, $id: ID!) {{
    node(id: $id) {{
        ... on PullRequest {{
            comments(first: 100, after: $after) {{
                {_connection(COMMENT_FIELDS)}
            }}
        }}
    }}
}}
"""

# The month-window stop rule in IssueAccumulator relies on newest-first order.
ISSUES_QUERY = f"""
query ($after: String, $name: String!, $owner: String!, $labels: [String!]) {{
    repository(name: $name, owner: $owner) {{
        issues(first: 100, after: $after, labels: $labels, orderBy: {{field: CREATED_AT, direction: DESC}}) {{
            {_connection(ISSUE_FIELDS)}
        }}
    }}
}}
"""

CLOSE_ISSUE_MUTATION = """
mutation ($issueId: ID!, $body: String!) {
    addComment(input: {subjectId: $issueId, body: $body}) {
        __typename
    }
    closeIssue(input: {issueId: $issueId}) {
        __typename
    }
}
"""


def generate_pull_request_query(ids: Sequence[str]) -> str:
    """Build one query resolving every pull request id through an aliased node()."""
    items = []
    for index, pull_request_id in enumerate(ids):
        items.append(
            f"""
    pr{index}: node(id: {json.dumps(pull_request_id)}) {{
        ... on PullRequest {{
            {PULL_REQUEST_FIELDS}
        }}
    }}"""
        )
    return "query {" + "".join(items) + "\n}\n"


# =============================================================================
# GITHUB GRAPHQL API CLIENT
# =============================================================================


class GitHubGraphQLClient:
    """Client for the GitHub GraphQL API."""

    def __init__(
        self,
        token: str,
        endpoint: str = GITHUB_GRAPHQL_ENDPOINT,
        timeout: float = 30.0,
        stats: Optional[APIStatistics] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize GitHub GraphQL client with token."""
        self.endpoint = endpoint
        self.client = httpx.Client(
            timeout=httpx.Timeout(timeout, connect=10.0),
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "User-Agent": f"timesheet-reports/{SCRIPT_VERSION}",
            },
            transport=transport,
        )
        self.logger = logging.getLogger(__name__)
        self.stats = stats or APIStatistics()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def close(self):
        """Close the HTTP client."""
        self.client.close()

    def graphql(
        self, query: str, variables: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Execute a query or mutation and return its "data" object.

        Raises:
            GitHubAPIError: transport failure, non-200 status, undecodable body
                or a GraphQL "errors" payload
        """
        try:
            response = self.client.post(
                self.endpoint, json={"query": query, "variables": variables or {}}
            )
        except httpx.HTTPError as e:
            self.stats.record_exception("github")
            raise GitHubAPIError(f"GitHub GraphQL request failed: {e}") from e

        if response.status_code != 200:
            self.stats.record_error("github", response.status_code)
            if response.status_code == 401:
                message = "GitHub API authentication failed: token is invalid or expired"
            else:
                message = (
                    f"GitHub GraphQL query returned error code: {response.status_code}"
                )
            raise GitHubAPIError(message, status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as e:
            self.stats.record_exception("github", "invalid_json")
            raise GitHubAPIError(f"GitHub GraphQL returned invalid JSON: {e}") from e

        errors = payload.get("errors")
        if errors:
            self.stats.record_error("github", "graphql")
            messages = "; ".join(
                str(error.get("message", error)) if isinstance(error, dict) else str(error)
                for error in errors
            )
            raise GitHubAPIError(f"GitHub GraphQL errors: {messages}")

        self.stats.record_success("github")
        return payload.get("data") or {}


# =============================================================================
# PAGINATION
# =============================================================================

# Continuation: (last cursor, nodes of the page just walked) -> None to stop,
# a connection mapping to walk as the next page, or a list of nodes to append.
NextPage = Callable[[str, List[Any]], Union[None, Mapping[str, Any], List[Any]]]


def loop_edges(
    connection: Optional[Mapping[str, Any]],
    on_node: Optional[Callable[[Any], Any]] = None,
    on_next: Optional[NextPage] = None,
) -> list[Any]:
    """
    Flatten a paged GraphQL connection into its nodes, following pages.

    A page is only continued when it reports hasNextPage, yielded at least
    one cursor, and on_next is given.
    """
    nodes: list[Any] = []
    page = connection

    while page:
        page_nodes = []
        last_cursor = None

        for edge in page.get("edges") or []:
            if not edge:
                continue
            node = edge.get("node")
            if on_node is not None:
                node = on_node(node)
            page_nodes.append(node)
            last_cursor = edge.get("cursor")

        nodes.extend(page_nodes)

        has_next_page = (page.get("pageInfo") or {}).get("hasNextPage", False)
        if not (has_next_page and last_cursor and on_next is not None):
            break

        following = on_next(last_cursor, page_nodes)
        if following is None:
            break
        if isinstance(following, Mapping):
            page = following
            continue

        nodes.extend(following)
        break

    return nodes


def unwrap_edges(connection: Optional[Mapping[str, Any]]) -> list[Any]:
    """Return the non-null nodes of a single connection page."""
    if not connection:
        return []
    return [
        edge["node"]
        for edge in connection.get("edges") or []
        if edge and edge.get("node")
    ]


def parse_timestamp(value: str) -> datetime.datetime:
    """Parse a GitHub ISO8601 timestamp (trailing Z allowed)."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.datetime.fromisoformat(value)


def created_in_month(node: Mapping[str, Any], now: datetime.datetime) -> bool:
    """True when the node's createdAt falls in now's calendar month (now's zone)."""
    created_at = node.get("createdAt") if node else None
    if not created_at:
        return False
    created = parse_timestamp(created_at)
    if now.tzinfo is not None:
        created = created.astimezone(now.tzinfo)
    return (created.year, created.month) == (now.year, now.month)


def issues_in_window(nodes: Sequence[Mapping[str, Any]], now: datetime.datetime) -> bool:
    """
    Page continuation policy for issues: keep paging while the whole page is
    from the current month.

    Only sound when the query returns issues newest first (see ISSUES_QUERY).
    """
    return all(created_in_month(node, now) for node in nodes)


# =============================================================================
# ACCUMULATORS
# =============================================================================


class ReportContext:
    """Collaborators shared by every accumulator of a run."""

    def __init__(
        self,
        client: GitHubGraphQLClient,
        mapper: UsernameMapper,
        durations: DurationParser,
        now: datetime.datetime,
        duration_format_pattern: str,
        logger: logging.Logger,
        max_workers: int = 8,
    ) -> None:
        self.client = client
        self.mapper = mapper
        self.durations = durations
        self.now = now
        self.duration_format_pattern = duration_format_pattern
        self.logger = logger
        self.max_workers = max_workers

    @property
    def since(self) -> datetime.datetime:
        """Start of the reporting window: the first instant of the current month."""
        return self.now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    @property
    def month_long(self) -> str:
        return self.now.strftime("%B")


def new_user_breakdown(name: str, avatar: str) -> Dict[str, Any]:
    """Empty per-contributor summary row."""
    return {
        "name": name,
        "avatar": avatar,
        "duration": 0,
        "commits": 0,
        "pullRequests": 0,
        "issues": 0,
        "comments": 0,
    }


class DurationLedger:
    """
    Insertion-ordered items keyed by identity, with a duration per identity.

    Durations only grow. ensure_duration() initialises a missing entry to 0
    and is idempotent; reading a duration through it materialises the entry.
    """

    def __init__(self) -> None:
        self.items: Dict[str, Any] = {}
        self.durations: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self.items)

    def contains(self, identifier: str) -> bool:
        return identifier in self.items

    def add_item(self, identifier: str, item: Any) -> bool:
        """Store item unless its identity is known; returns whether it was added."""
        if identifier in self.items:
            return False
        self.items[identifier] = item
        return True

    def ensure_duration(self, identifier: str) -> int:
        return self.durations.setdefault(identifier, 0)

    def increment(self, identifier: str, amount: int) -> None:
        self.durations[identifier] = self.ensure_duration(identifier) + amount

    def values(self) -> list[Any]:
        return list(self.items.values())

    def total(self) -> int:
        return sum(self.durations.values())


class Accumulator:
    """
    Deduplicated collection of one entity type with per-item durations.

    Subclasses define identity, author extraction, the text fields parsed
    for durations, and the breakdown counter they feed (category).
    """

    category = ""

    def __init__(self, repository: RepositoryRef, context: ReportContext) -> None:
        self.repository = repository
        self.context = context
        self.client = context.client
        self.logger = context.logger
        self.ledger = DurationLedger()

    # Entity-specific hooks

    def resolve_item_identifier(self, item: Any) -> str:
        raise NotImplementedError

    def get_author(self, item: Any) -> Optional[Dict[str, str]]:
        raise NotImplementedError

    def get_duration_parsable_fields(self, item: Any) -> list[Optional[str]]:
        raise NotImplementedError

    def get_table(self) -> list[list[str]]:
        raise NotImplementedError

    # Shared bookkeeping

    def compute_duration(self, *texts: Optional[str]) -> int:
        return self.context.durations.compute(*texts)

    def add(self, *items: Any) -> None:
        """Append unseen items and seed their duration from their text fields."""
        for item in items:
            identifier = self.resolve_item_identifier(item)
            if self.ledger.add_item(identifier, item):
                self.ledger.ensure_duration(identifier)
                self.add_duration(
                    item, self.compute_duration(*self.get_duration_parsable_fields(item))
                )

    def exists(self, item: Any) -> bool:
        return self.ledger.contains(self.resolve_item_identifier(item))

    def get_items(self) -> list[Any]:
        return self.ledger.values()

    def get_filtered_items(self) -> list[Any]:
        return self.get_items()

    def get_duration(self, item: Any) -> int:
        return self.ledger.ensure_duration(self.resolve_item_identifier(item))

    def add_duration(self, item: Any, duration: int) -> None:
        self.ledger.increment(self.resolve_item_identifier(item), duration)

    def get_total_duration(self) -> int:
        return self.ledger.total()

    def format_duration_for_item(self, item: Any, pattern: Optional[str] = None) -> str:
        return format_duration(
            self.get_duration(item), pattern or self.context.duration_format_pattern
        )

    def map_author(self, login: Optional[str], avatar: Optional[str]) -> Optional[Dict[str, str]]:
        """Author record for a GitHub actor, or None when there is no login."""
        if not login:
            return None
        return {"name": self.context.mapper.map_username(login), "avatar": avatar or ""}

    def calculate(self) -> list[Dict[str, Any]]:
        """Fold items into per-contributor rows; authorless items are skipped."""
        users: Dict[str, Dict[str, Any]] = {}

        for item in self.get_items():
            author = self.get_author(item)
            if author is None:
                continue

            user = users.get(author["name"])
            if user is None:
                user = users[author["name"]] = new_user_breakdown(
                    author["name"], author["avatar"]
                )

            user["duration"] += self.get_duration(item)
            user[self.category] += 1

        return list(users.values())

    def _fetch_node_connection(
        self, query: str, field: str, variables: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Fetch one page of a connection hanging off node(id:)."""
        self.logger.debug(f"Fetching {field} page for node {variables.get('id')}")
        node = self.client.graphql(query, variables).get("node") or {}
        return node.get(field) or {}

    @staticmethod
    def merge(*accumulators: "Accumulator") -> list[Dict[str, Any]]:
        """Union calculate() rows by contributor, summing duration and counters."""
        users: Dict[str, Dict[str, Any]] = {}

        for accumulator in accumulators:
            for user in accumulator.calculate():
                existing = users.get(user["name"])
                if existing is None:
                    users[user["name"]] = dict(user)
                    continue
                existing["duration"] += user["duration"]
                for counter in BREAKDOWN_COUNTERS:
                    existing[counter] += user[counter]

        return list(users.values())

    @staticmethod
    def get_formatted_total_duration(
        accumulators: Sequence["Accumulator"], pattern: str
    ) -> str:
        total = sum(accumulator.get_total_duration() for accumulator in accumulators)
        return format_duration(total, pattern)


class CommitAccumulator(Accumulator):
    """Default-branch commits since the start of the month."""

    category = "commits"

    def resolve_item_identifier(self, item: Dict[str, Any]) -> str:
        return item["oid"]

    def get_duration_parsable_fields(self, item: Dict[str, Any]) -> list[Optional[str]]:
        return [item.get("messageHeadline")]

    def get_author(self, item: Dict[str, Any]) -> Optional[Dict[str, str]]:
        """Prefer the linked GitHub login, then its display name, then the git name."""
        author = item.get("author")
        if not author:
            return None

        user = author.get("user") or {}
        raw_name = user.get("login") or user.get("name") or author.get("name")
        if not raw_name:
            return None

        name = self.context.mapper.map_username(raw_name)
        avatar = user.get("avatarUrl") or f"https://github.com/identicons/{quote(name)}.png"
        return {"name": name, "avatar": avatar}

    @staticmethod
    def associated_pull_request_count(item: Dict[str, Any]) -> int:
        return len(unwrap_edges(item.get("associatedPullRequests")))

    def add_duration(self, item: Dict[str, Any], duration: int) -> None:
        # Time of commits that belong to a pull request is counted on the pull request
        if self.associated_pull_request_count(item) == 0:
            super().add_duration(item, duration)

    def get_filtered_items(self) -> list[Dict[str, Any]]:
        """Commits outside pull requests that carry a non-zero duration."""
        return [
            commit
            for commit in self.get_items()
            if self.associated_pull_request_count(commit) == 0
            and self.get_duration(commit) != 0
        ]

    def get_table(self) -> list[list[str]]:
        rows = [["#", "Title", "Duration", "Link"]]
        for item in self.get_filtered_items():
            author = self.get_author(item) or {"name": "", "avatar": ""}
            rows.append(
                [
                    image_field(author["name"], author["avatar"]),
                    item.get("messageHeadline", ""),
                    self.format_duration_for_item(item),
                    url_field(item.get("abbreviatedOid", ""), item.get("url", "")),
                ]
            )
        return rows

    def initialize(self) -> None:
        commits = self.fetch_commits(self.context.since.isoformat())
        self.add(*commits)
        self.logger.info(
            f"{self.repository.path}: {len(self.ledger)} commits since {self.context.since.date()}"
        )

    def fetch_commits(self, since: str) -> list[Dict[str, Any]]:
        """Walk the default branch history since the given ISO timestamp."""
        variables = {
            "owner": self.repository.owner,
            "name": self.repository.name,
            "since": since,
        }
        return loop_edges(
            self._fetch_history_page(variables),
            on_next=lambda cursor, _nodes: self._fetch_history_page(
                {**variables, "after": cursor}
            ),
        )

    def _fetch_history_page(self, variables: Dict[str, Any]) -> Dict[str, Any]:
        self.logger.debug(
            f"Fetching commit history for {self.repository.path} after {variables.get('after')}"
        )
        response = self.client.graphql(COMMITS_HISTORY_QUERY, variables)
        branch = (response.get("repository") or {}).get("defaultBranchRef")
        if not branch:
            self.logger.warning(f"{self.repository.path} has no default branch")
            return {}
        return (branch.get("target") or {}).get("history") or {}


class CommentAccumulator(Accumulator):
    """Pull request comments, filled in by PullRequestAccumulator."""

    category = "comments"

    def resolve_item_identifier(self, item: Dict[str, Any]) -> str:
        return item["id"]

    def get_duration_parsable_fields(self, item: Dict[str, Any]) -> list[Optional[str]]:
        return [item.get("bodyText")]

    def get_author(self, item: Dict[str, Any]) -> Optional[Dict[str, str]]:
        author = item.get("author") or {}
        return self.map_author(author.get("login"), author.get("avatarUrl"))

    def get_table(self) -> list[list[str]]:
        rows = [["#", "Comment", "Duration"]]
        for item in self.get_items():
            if self.get_duration(item) == 0:
                continue
            author = self.get_author(item) or {"name": "", "avatar": ""}
            rows.append(
                [
                    image_field(author["name"], author["avatar"]),
                    url_field("comment", item.get("url", "")),
                    self.format_duration_for_item(item),
                ]
            )
        return rows


class PullRequestAccumulator(Accumulator):
    """Pull requests reached from this month's commits."""

    category = "pullRequests"

    def resolve_item_identifier(self, item: Dict[str, Any]) -> str:
        return item["id"]

    def get_duration_parsable_fields(self, item: Dict[str, Any]) -> list[Optional[str]]:
        return [item.get("bodyText")]

    def get_author(self, item: Dict[str, Any]) -> Optional[Dict[str, str]]:
        author = item.get("author") or {}
        return self.map_author(author.get("login"), author.get("avatarUrl"))

    def get_filtered_items(self) -> list[Dict[str, Any]]:
        return [item for item in self.get_items() if self.get_duration(item) != 0]

    def get_table(self) -> list[list[str]]:
        rows = [["#", "Pull Request", "Duration", "Link"]]
        for item in self.get_filtered_items():
            author = self.get_author(item) or {"name": "", "avatar": ""}
            rows.append(
                [
                    image_field(author["name"], author["avatar"]),
                    item.get("title", ""),
                    self.format_duration_for_item(item),
                    issue_or_pull_request_field(str(item.get("number", "")), item.get("url", "")),
                ]
            )
        return rows

    def initialize(
        self, commits: CommitAccumulator, comments: CommentAccumulator
    ) -> None:
        """
        Load the pull requests of the accumulated commits and attribute the
        time of their commits and comments to them.
        """
        self.add(*self.fetch_pull_requests(commits.get_items()))

        for pull_request in self.get_items():
            pull_request_commits, pull_request_comments = self.fetch_commits_and_comments(
                pull_request
            )

            for entry in pull_request_commits:
                commit = (entry or {}).get("commit") or {}
                self.add_duration(
                    pull_request,
                    self.compute_duration(*commits.get_duration_parsable_fields(commit)),
                )

            for comment in pull_request_comments:
                if not comment:
                    continue
                comments.add(comment)
                self.add_duration(pull_request, comments.get_duration(comment))

        self.logger.info(
            f"{self.repository.path}: {len(self.ledger)} pull requests, "
            f"{len(comments.ledger)} comments"
        )

    def fetch_pull_requests(self, commits: Sequence[Dict[str, Any]]) -> list[Dict[str, Any]]:
        """Resolve the distinct pull requests associated with the given commits."""
        pull_request_ids: list[str] = []
        for commit in commits:
            for pull_request in unwrap_edges(commit.get("associatedPullRequests")):
                if pull_request.get("id") and pull_request["id"] not in pull_request_ids:
                    pull_request_ids.append(pull_request["id"])

        pull_requests: list[Dict[str, Any]] = []
        for start in range(0, len(pull_request_ids), PULL_REQUEST_BATCH_SIZE):
            batch = pull_request_ids[start : start + PULL_REQUEST_BATCH_SIZE]
            response = self.client.graphql(generate_pull_request_query(batch))
            pull_requests.extend(node for node in response.values() if node)

        return pull_requests

    def fetch_commits_and_comments(
        self, pull_request: Dict[str, Any]
    ) -> tuple[list[Dict[str, Any]], list[Dict[str, Any]]]:
        """Fetch every commit and comment of a pull request."""
        variables = {"id": pull_request["id"]}
        node = (
            self.client.graphql(PULL_REQUEST_COMMITS_AND_COMMENTS_QUERY, variables).get("node")
            or {}
        )

        pull_request_commits = loop_edges(
            node.get("commits"),
            on_next=lambda cursor, _nodes: self._fetch_node_connection(
                PULL_REQUEST_COMMITS_QUERY, "commits", {**variables, "after": cursor}
            ),
        )
        pull_request_comments = loop_edges(
            node.get("comments"),
            on_next=lambda cursor, _nodes: self._fetch_node_connection(
                PULL_REQUEST_COMMENTS_QUERY, "comments", {**variables, "after": cursor}
            ),
        )

        return pull_request_commits, pull_request_comments


class IssueAccumulator(Accumulator):
    """Tracker issues labelled with the reported repository's path."""

    category = "issues"

    def resolve_item_identifier(self, item: Dict[str, Any]) -> str:
        return item["id"]

    def get_duration_parsable_fields(self, item: Dict[str, Any]) -> list[Optional[str]]:
        return [item.get("bodyText")]

    def get_author(self, item: Dict[str, Any]) -> Optional[Dict[str, str]]:
        author = item.get("author") or {}
        return self.map_author(author.get("login"), author.get("avatarUrl"))

    def get_table(self) -> list[list[str]]:
        rows = [["#", "Title", "Duration", "Link"]]
        for item in self.get_items():
            author = self.get_author(item) or {"name": "", "avatar": ""}
            rows.append(
                [
                    image_field(author["name"], author["avatar"]),
                    item.get("title", ""),
                    self.format_duration_for_item(item),
                    issue_or_pull_request_field(str(item.get("number", "")), item.get("url", "")),
                ]
            )
        return rows

    def initialize(self, tracker: RepositoryRef) -> None:
        # The last page fetched may reach into earlier months
        self.add(
            *[
                issue
                for issue in self.fetch_issues(tracker)
                if created_in_month(issue, self.context.now)
            ]
        )
        self.logger.info(
            f"{self.repository.path}: {len(self.ledger)} issues in {tracker.path}"
        )

    def fetch_issues(self, tracker: RepositoryRef) -> list[Dict[str, Any]]:
        """Page through labelled issues while each page stays inside this month."""
        variables = {
            "owner": tracker.owner,
            "name": tracker.name,
            "labels": [self.repository.path],
        }

        def next_page(cursor: str, page_nodes: list[Any]) -> Optional[Dict[str, Any]]:
            if not issues_in_window(page_nodes, self.context.now):
                return None
            return self._fetch_issue_page({**variables, "after": cursor})

        return loop_edges(self._fetch_issue_page(variables), on_next=next_page)

    def _fetch_issue_page(self, variables: Dict[str, Any]) -> Dict[str, Any]:
        self.logger.debug(
            f"Fetching issues labelled {variables['labels']} after {variables.get('after')}"
        )
        response = self.client.graphql(ISSUES_QUERY, variables)
        return (response.get("repository") or {}).get("issues") or {}

    def close_all(self) -> int:
        """
        Comment on and close every open issue, concurrently.

        Each issue is attempted independently. Failures are logged, and once
        every attempt has finished an IssueCloseError lists them.

        Returns:
            Number of issues closed
        """
        open_issues = [issue for issue in self.get_items() if issue.get("state") != "CLOSED"]
        if not open_issues:
            return 0

        body = (
            "This issue has been tracked and will be included in the "
            f"`{self.context.month_long.lower()}` report."
        )
        failures: list[Dict[str, Any]] = []

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, self.context.max_workers)
        ) as executor:
            future_to_issue = {
                executor.submit(
                    self.client.graphql,
                    CLOSE_ISSUE_MUTATION,
                    {"issueId": issue["id"], "body": body},
                ): issue
                for issue in open_issues
            }

            for future in concurrent.futures.as_completed(future_to_issue):
                issue = future_to_issue[future]
                try:
                    future.result()
                    self.logger.debug(f"Closed issue #{issue.get('number')}")
                except GitHubAPIError as e:
                    self.logger.error(f"Failed to close issue #{issue.get('number')}: {e}")
                    failures.append(
                        {"id": issue["id"], "number": issue.get("number"), "error": str(e)}
                    )

        closed = len(open_issues) - len(failures)
        self.logger.info(f"{self.repository.path}: closed {closed}/{len(open_issues)} issues")

        if failures:
            raise IssueCloseError(failures)

        return closed


class ContributorAggregator(Accumulator):
    """
    Per-contributor rows built straight from the commit, pull request and
    issue accumulators, reusing the durations they already accumulated.
    """

    def __init__(self, repository: RepositoryRef, context: ReportContext) -> None:
        super().__init__(repository, context)
        self.metrics: Dict[str, Dict[str, int]] = {}

    def resolve_item_identifier(self, item: Dict[str, str]) -> str:
        return item["name"]

    def get_duration_parsable_fields(self, item: Dict[str, str]) -> list[Optional[str]]:
        return []

    def get_author(self, item: Dict[str, str]) -> Dict[str, str]:
        return {**item, "name": self.context.mapper.map_username(item["name"])}

    def initialize(
        self,
        pull_requests: PullRequestAccumulator,
        commits: CommitAccumulator,
        issues: IssueAccumulator,
    ) -> None:
        self._add_accumulator(commits, "commits")
        self._add_accumulator(pull_requests, "pullRequests")
        self._add_accumulator(issues, "issues")

    def _add_accumulator(self, accumulator: Accumulator, metrics_key: str) -> None:
        for item in accumulator.get_items():
            author = accumulator.get_author(item)
            if author is None:
                continue

            if not self.exists(author):
                self.add(author)

            self.add_duration(author, accumulator.get_duration(item))

            metrics = self.metrics.setdefault(
                author["name"], {"commits": 0, "pullRequests": 0, "issues": 0}
            )
            metrics[metrics_key] += 1

    def calculate(self) -> list[Dict[str, Any]]:
        rows = []
        for user in self.get_items():
            row = new_user_breakdown(user["name"], user["avatar"])
            row["duration"] = self.get_duration(user)
            row.update(self.metrics.get(user["name"], {}))
            rows.append(row)
        return rows

    def get_table(self) -> list[list[str]]:
        rows = [["Author", "Duration", "Commits", "Pull Request", "Issues"]]
        for user in self.calculate():
            rows.append(
                [
                    image_field(user["name"], user["avatar"]) + f" {user['name']}",
                    format_duration(user["duration"], self.context.duration_format_pattern),
                    str(user["commits"]),
                    str(user["pullRequests"]),
                    str(user["issues"]),
                ]
            )
        return rows


# =============================================================================
# OUTPUT RENDERING
# =============================================================================


def image_field(label: str, url: str) -> str:
    return f'<img src="{url}" alt="{label}" width="12" height="12">'


def url_field(label: str, url: str) -> str:
    return f"[{label}]({url})"


def issue_or_pull_request_field(label: str, url: str) -> str:
    return f"[#{label}]({url})"


def _table_cell(value: Any) -> str:
    text = "" if value is None else str(value)
    return text.replace("\r", " ").replace("\n", " ").replace("|", "\\|")


def markdown_table(rows: Sequence[Sequence[Any]]) -> str:
    """Render rows (header first) as a padded GitHub-flavoured Markdown table."""
    if not rows:
        return ""

    cells = [[_table_cell(value) for value in row] for row in rows]
    column_count = max(len(row) for row in cells)
    for row in cells:
        row.extend([""] * (column_count - len(row)))

    widths = [
        max(3, max(len(row[column]) for row in cells)) for column in range(column_count)
    ]

    def format_row(row: list[str]) -> str:
        return "| " + " | ".join(cell.ljust(width) for cell, width in zip(row, widths)) + " |"

    lines = [format_row(cells[0])]
    lines.append("| " + " | ".join("-" * width for width in widths) + " |")
    lines.extend(format_row(row) for row in cells[1:])
    return "\n".join(lines)


def flatten_tokens(tokens: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten nested mappings into dotted keys (table.breakdown, date.object.year)."""
    flat: Dict[str, Any] = {}
    for key, value in tokens.items():
        dotted = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            flat.update(flatten_tokens(value, dotted))
        else:
            flat[dotted] = value
    return flat


def apply_tokens_to_template(tokens: Mapping[str, Any], template: str) -> str:
    """Replace every {{ key }} placeholder (whitespace tolerant) with its token."""
    for key, value in flatten_tokens(tokens).items():
        pattern = re.compile(r"\{\{\s*" + re.escape(key) + r"\s*\}\}")
        replacement = "" if value is None else str(value)
        template = pattern.sub(lambda _match: replacement, template)
    return template


def current_month_filename(now: datetime.datetime) -> str:
    return f"{now:%m} - {now:%B}.md"


def date_tokens(now: datetime.datetime) -> Dict[str, Any]:
    """Date placeholders shared by repository and master templates."""
    hour = now.hour % 12 or 12
    return {
        "now": f"{now:%B} {now.day}, {now.year} {hour}:{now.minute:02d} {now:%p}",
        "monthLong": now.strftime("%B"),
        "monthShort": now.strftime("%b"),
        "isoDate": now.date().isoformat(),
        "http": format_datetime(now.astimezone(datetime.timezone.utc), usegmt=True),
        "object": {
            "year": now.year,
            "month": now.month,
            "day": now.day,
            "hour": now.hour,
            "minute": now.minute,
            "second": now.second,
            "millisecond": now.microsecond // 1000,
        },
    }


class ReportRenderer:
    """Handles rendering of accumulated data into Markdown report files."""

    def __init__(self, config: dict[str, Any], context: ReportContext, logger: logging.Logger) -> None:
        self.config = config
        self.context = context
        self.logger = logger

    def get_tokens(self, repository_data: Dict[str, Any]) -> Dict[str, Any]:
        """Template tokens for one repository report."""
        repository: RepositoryRef = repository_data["repository"]
        pattern = self.context.duration_format_pattern

        return {
            "totalDuration": Accumulator.get_formatted_total_duration(
                [
                    repository_data["pull_requests"],
                    repository_data["commits"],
                    repository_data["issues"],
                ],
                pattern,
            ),
            "repository": {
                "owner": repository.owner,
                "name": repository.name,
                "path": repository.path,
                "url": repository.url,
            },
            "table": {
                "breakdown": markdown_table(repository_data["contributors"].get_table()),
                "pullRequests": markdown_table(repository_data["pull_requests"].get_table()),
                "issues": markdown_table(repository_data["issues"].get_table()),
                "commits": markdown_table(repository_data["commits"].get_table()),
                "comments": markdown_table(repository_data["comments"].get_table()),
            },
            "date": date_tokens(self.context.now),
        }

    def get_master_table(self, repositories_data: Sequence[Dict[str, Any]]) -> list[list[str]]:
        now = self.context.now
        rows = [["Repository", "Total", "Commits", "Pull Request", "Issues"]]
        for repository_data in repositories_data:
            repository: RepositoryRef = repository_data["repository"]
            link = quote(
                f"/repositories/{now.year}/{repository.name}/{current_month_filename(now)}"
            )
            rows.append(
                [
                    url_field(repository.name, link),
                    Accumulator.get_formatted_total_duration(
                        [
                            repository_data["pull_requests"],
                            repository_data["commits"],
                            repository_data["issues"],
                        ],
                        self.context.duration_format_pattern,
                    ),
                    str(len(repository_data["commits"].get_items())),
                    str(len(repository_data["pull_requests"].get_items())),
                    str(len(repository_data["issues"].get_items())),
                ]
            )
        return rows

    def get_contributors_table(
        self, repositories_data: Sequence[Dict[str, Any]]
    ) -> list[list[str]]:
        """Contributor totals across every repository, from commits and pull requests."""
        accumulators: list[Accumulator] = []
        for repository_data in repositories_data:
            accumulators.extend(
                [repository_data["commits"], repository_data["pull_requests"]]
            )

        rows = [["Author", "Duration", "Commits", "Pull Request"]]
        for user in Accumulator.merge(*accumulators):
            rows.append(
                [
                    image_field(user["name"], user["avatar"]) + f" {user['name']}",
                    format_duration(user["duration"], self.context.duration_format_pattern),
                    str(user["commits"]),
                    str(user["pullRequests"]),
                ]
            )
        return rows

    def get_master_tokens(self, repositories_data: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "totalDuration": format_duration(
                self.context.durations.total, self.context.duration_format_pattern
            ),
            "table": {
                "breakdown": markdown_table(self.get_master_table(repositories_data)),
                "contributors": markdown_table(self.get_contributors_table(repositories_data)),
            },
            "date": date_tokens(self.context.now),
        }

    def _read_template(self, template_path: str) -> str:
        path = Path(template_path)
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read template {path}: {e}")

    def render_repository_report(
        self, repository_data: Dict[str, Any], output_dir: Path
    ) -> Path:
        """Write repositories/<year>/<name>/<MM - Month>.md and return its path."""
        repository: RepositoryRef = repository_data["repository"]
        now = self.context.now

        template = self._read_template(self.config["template_path"])
        content = apply_tokens_to_template(self.get_tokens(repository_data), template)

        save_path = output_dir / "repositories" / str(now.year) / repository.name
        save_path.mkdir(parents=True, exist_ok=True)
        output_path = save_path / current_month_filename(now)

        self.logger.info(f"Writing report for {repository.path} to {output_path}")
        output_path.write_text(content, encoding="utf-8")
        return output_path

    def render_master_report(
        self, repositories_data: Sequence[Dict[str, Any]], output_dir: Path
    ) -> Path:
        template = self._read_template(self.config["master_template_path"])
        content = apply_tokens_to_template(self.get_master_tokens(repositories_data), template)

        output_dir.mkdir(parents=True, exist_ok=True)
        output_path = output_dir / "README.md"
        self.logger.info(f"Writing master report to {output_path}")
        output_path.write_text(content, encoding="utf-8")
        return output_path


# =============================================================================
# GIT INTEGRATION
# =============================================================================


def safe_git_command(
    cmd: list[str], cwd: Path | None, logger: logging.Logger
) -> tuple[bool, str]:
    """
    Execute a git command safely with error handling.

    Returns:
        (success: bool, output_or_error: str)
    """
    try:
        git_result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=300,  # 5 minute timeout
        )
        return (
            git_result.returncode == 0,
            git_result.stdout.strip() or git_result.stderr.strip(),
        )
    except subprocess.TimeoutExpired:
        logger.error(f"Git command timed out in {cwd}: {' '.join(cmd)}")
        return False, "Command timed out"
    except OSError as e:
        logger.error(f"Unexpected error running git command in {cwd}: {e}")
        return False, str(e)


def detect_tracker_repository(cwd: Path, logger: logging.Logger) -> Optional[RepositoryRef]:
    """Derive the tracker repository from the checkout's origin remote."""
    success, output = safe_git_command(
        ["git", "config", "--get", "remote.origin.url"], cwd, logger
    )
    if not success:
        logger.debug(f"Could not read remote.origin.url: {output}")
        return None
    return parse_repository_url(output)


def commit_and_push(
    files: Sequence[Path], cwd: Path, git_config: Mapping[str, Any], logger: logging.Logger
) -> None:
    """Commit the generated files as the GitHub Actions bot and push them."""
    remote = git_config.get("remote") or "origin"
    branch = git_config.get("branch") or "HEAD"
    message = git_config.get("commit_message") or "Update Files"
    author = f"{GITHUB_ACTIONS_BOT_NAME} <{GITHUB_ACTIONS_BOT_EMAIL}>"

    commands = [
        ["git", "config", "user.name", GITHUB_ACTIONS_BOT_NAME],
        ["git", "config", "user.email", GITHUB_ACTIONS_BOT_EMAIL],
        ["git", "add", "--force", *[str(path) for path in files]],
        ["git", "commit", "--message", message, "--author", author],
        ["git", "push", remote, branch],
    ]

    for cmd in commands:
        logger.debug(f"Running: {' '.join(cmd)}")
        success, output = safe_git_command(cmd, cwd, logger)
        if not success:
            raise GitError(f"{' '.join(cmd[:2])} failed: {output}")

    logger.info(f"Pushed {len(files)} report file(s) to {remote} {branch}")


# =============================================================================
# MAIN ORCHESTRATION AND CLI ENTRY POINT
# =============================================================================


class RepositoryReporter:
    """Main orchestrator for monthly timesheet reporting."""

    def __init__(
        self,
        config: dict[str, Any],
        logger: logging.Logger,
        client: Optional[GitHubGraphQLClient] = None,
        now: Optional[datetime.datetime] = None,
    ) -> None:
        self.config = config
        self.logger = logger
        self.stats = APIStatistics()

        api_config = config.get("api", {})
        self.client = client or GitHubGraphQLClient(
            config["token"],
            endpoint=api_config.get("endpoint", GITHUB_GRAPHQL_ENDPOINT),
            timeout=float(api_config.get("timeout", 30.0)),
            stats=self.stats,
        )

        timezone = ZoneInfo(config.get("timezone") or "UTC")
        self.context = ReportContext(
            client=self.client,
            mapper=UsernameMapper(config.get("users_aliases") or {}),
            durations=DurationParser(),
            now=now or datetime.datetime.now(timezone),
            duration_format_pattern=config.get("duration_format_pattern") or "hh:mm",
            logger=logger,
            max_workers=int(api_config.get("max_workers", 8)),
        )
        self.renderer = ReportRenderer(config, self.context, logger)

    def resolve_tracker_repository(self, cwd: Path) -> RepositoryRef:
        configured = self.config.get("tracker_repository")
        tracker = (
            parse_repository_url(configured)
            if configured
            else detect_tracker_repository(cwd, self.logger)
        )
        if tracker is None:
            raise ConfigurationError(
                "Could not determine the tracker repository; set tracker_repository"
            )
        return tracker

    def analyze_repository(
        self, repository: RepositoryRef, tracker: RepositoryRef
    ) -> Dict[str, Any]:
        """Populate every accumulator for one repository, strictly in order."""
        self.logger.info(f"Analyzing {repository.path}")

        commits = CommitAccumulator(repository, self.context)
        pull_requests = PullRequestAccumulator(repository, self.context)
        issues = IssueAccumulator(repository, self.context)
        comments = CommentAccumulator(repository, self.context)
        contributors = ContributorAggregator(repository, self.context)

        commits.initialize()
        pull_requests.initialize(commits, comments)
        issues.initialize(tracker)
        contributors.initialize(pull_requests, commits, issues)

        return {
            "repository": repository,
            "commits": commits,
            "pull_requests": pull_requests,
            "issues": issues,
            "comments": comments,
            "contributors": contributors,
        }

    def run(
        self,
        output_dir: Path,
        push: bool = True,
        close_issues: bool = True,
    ) -> list[Path]:
        """
        Generate every repository report plus the master README.

        Returns the list of written files.
        """
        tracker = self.resolve_tracker_repository(output_dir)
        self.logger.info(f"Tracker repository: {tracker.path}")

        added_files: list[Path] = []
        repositories_data: list[Dict[str, Any]] = []

        for repository_url in self.config.get("repositories", []):
            repository = parse_repository_url(repository_url)
            if repository is None:
                self.logger.warning(
                    f"Could not parse repository {repository_url}. Skipping..."
                )
                continue

            repository_data = self.analyze_repository(repository, tracker)
            added_files.append(
                self.renderer.render_repository_report(repository_data, output_dir)
            )
            repositories_data.append(repository_data)

            if close_issues:
                repository_data["issues"].close_all()

        added_files.append(self.renderer.render_master_report(repositories_data, output_dir))

        if push:
            commit_and_push(
                [path.relative_to(output_dir) for path in added_files],
                output_dir,
                self.config.get("git", {}),
                self.logger,
            )

        return added_files


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Generate monthly timesheet reports from GitHub activity",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --config configuration/template.config
  %(prog)s --repositories "acme/api acme/web" --no-push --no-close-issues
  %(prog)s --timezone Europe/Lisbon --duration-format "h'h' mm'm'" --verbose
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=Path(DEFAULT_CONFIG_PATH),
        help=f"YAML configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        help="Checkout where reports are written and committed (default: config output_dir)",
    )
    parser.add_argument(
        "--repositories", help="Whitespace separated repository URLs or owner/name"
    )
    parser.add_argument("--timezone", help="IANA timezone for the reporting month")
    parser.add_argument(
        "--duration-format", help="Duration format pattern, e.g. hh:mm"
    )

    parser.add_argument(
        "--no-push", action="store_true", help="Write reports without committing them"
    )
    parser.add_argument(
        "--no-close-issues",
        action="store_true",
        help="Leave tracked issues open",
    )
    parser.add_argument(
        "--validate-only", action="store_true", help="Validate configuration and exit"
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable verbose logging"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level from configuration",
    )

    return parser.parse_args(argv)


def apply_argument_overrides(
    config: dict[str, Any], args: argparse.Namespace
) -> dict[str, Any]:
    """Overlay explicit command line options onto the loaded configuration."""
    result = copy.deepcopy(config)

    if args.repositories:
        result["repositories"] = split_repositories(args.repositories)
    if args.timezone:
        result["timezone"] = args.timezone
    if args.duration_format:
        result["duration_format_pattern"] = args.duration_format
    if args.output_dir:
        result["output_dir"] = str(args.output_dir)

    if args.log_level:
        result.setdefault("logging", {})["level"] = args.log_level
    elif args.verbose:
        result.setdefault("logging", {})["level"] = "DEBUG"

    return result


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    logger = logging.getLogger("timesheet_reports")
    try:
        args = parse_arguments(argv)

        try:
            config = apply_argument_overrides(load_configuration(args.config), args)
        except ReportsError as e:
            print(f"ERROR: Failed to load configuration: {e}", file=sys.stderr)
            return 1

        log_config = config.get("logging", {})
        logger = setup_logging(
            level=log_config.get("level", "INFO"),
            include_timestamps=log_config.get("include_timestamps", True),
        )

        logger.info(f"Timesheet Reporting System v{SCRIPT_VERSION}")
        validate_configuration(config)

        if args.validate_only:
            logger.info("Configuration validation successful")
            print("✅ Configuration valid")
            print(f"   - Repositories: {len(config['repositories'])}")
            print(f"   - Timezone: {config['timezone']}")
            print(f"   - Duration format: {config['duration_format_pattern']}")
            return 0

        reporter = RepositoryReporter(config, logger)
        try:
            written = reporter.run(
                Path(config.get("output_dir") or "."),
                push=not args.no_push,
                close_issues=not args.no_close_issues,
            )
        finally:
            reporter.client.close()
            api_stats_output = reporter.stats.format_console_output()
            if api_stats_output:
                print(api_stats_output)
            reporter.stats.write_to_step_summary()

        print("\n✅ Report generation completed successfully!")
        print(f"   - Files written: {len(written)}")
        print(
            f"   - Total tracked: "
            f"{format_duration(reporter.context.durations.total, config['duration_format_pattern'])}"
        )
        return 0

    except KeyboardInterrupt:
        print("\n❌ Operation cancelled by user", file=sys.stderr)
        return 130
    except ReportsError as e:
        logger.error(f"❌ {e}")
        logger.debug("Run failed", exc_info=True)
        return 1
    except Exception as e:
        logger.debug("Unexpected failure", exc_info=True)
        print(f"❌ Unexpected error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
