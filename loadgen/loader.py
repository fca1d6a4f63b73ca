"""
Run-file loader.

A run file is the YAML description of one test run: the stage plan,
thresholds, target URL, pacing and fixture data.  Values in the file
override the defaults of the active configuration class; the
``BASE_URL`` environment variable overrides the file's ``base_url`` so
the same file can be pointed at different environments from CI.

Example::

    base_url: http://localhost:8080
    think_time: 1s
    stages:
      - {duration: 2m, target: 10}
      - {duration: 5m, target: 10}
    thresholds:
      http_req_duration: ["p(95)<500"]
      http_req_failed: ["rate<0.1"]
    fixtures:
      users:
        - {id: 1, username: john.doe}
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from loadgen.config import get_config
from loadgen.errors import ConfigurationError
from loadgen.runtime import RunOptions
from loadgen.stages import StagePlan, parse_duration
from loadgen.thresholds import ThresholdSpec, parse_thresholds

ALLOWED_KEYS = frozenset(
    {
        "base_url",
        "stages",
        "start_concurrency",
        "thresholds",
        "think_time",
        "request_timeout",
        "graceful_stop",
        "tick_interval",
        "threshold_interval",
        "no_data_policy",
        "seed",
        "headers",
        "fixtures",
    }
)

_DURATION_KEYS = ("think_time", "request_timeout", "graceful_stop", "tick_interval", "threshold_interval")


@dataclass(frozen=True)
class RunConfig:
    """Everything the engine needs before the first user starts."""

    plan: StagePlan
    thresholds: tuple[ThresholdSpec, ...]
    options: RunOptions


def _mapping(data: Mapping[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"'{key}' must be a mapping, got {type(value).__name__}")
    return dict(value)


def build_run_config(
    data: Mapping[str, Any],
    env: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> RunConfig:
    """
    Validate a parsed run file and turn it into a :class:`RunConfig`.

    Args:
        data: The parsed YAML document.
        env: Configuration environment providing defaults.
        environ: Environment variables consulted for ``BASE_URL``;
            defaults to ``os.environ``.

    Raises:
        ConfigurationError: On any missing, unknown or invalid value.
    """
    if not isinstance(data, Mapping):
        raise ConfigurationError("Run file must contain a mapping at the top level")

    unknown = sorted(set(data) - ALLOWED_KEYS)
    if unknown:
        raise ConfigurationError(f"Unknown run file keys: {', '.join(unknown)}")
    if "stages" not in data:
        raise ConfigurationError("Run file must define 'stages'")

    start_concurrency = data.get("start_concurrency", 0)
    plan = StagePlan.from_config(data["stages"], start_concurrency=start_concurrency)
    thresholds = tuple(parse_thresholds(data.get("thresholds")))

    overrides: dict[str, Any] = {
        key: parse_duration(data[key]) for key in _DURATION_KEYS if data.get(key) is not None
    }
    environ = os.environ if environ is None else environ
    base_url = environ.get("BASE_URL") or data.get("base_url")
    if base_url is not None:
        overrides["base_url"] = str(base_url)
    if data.get("no_data_policy") is not None:
        overrides["no_data_policy"] = str(data["no_data_policy"])
    if data.get("seed") is not None:
        try:
            overrides["seed"] = int(data["seed"])
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"seed must be an integer, got {data['seed']!r}") from exc
    overrides["headers"] = {str(k): str(v) for k, v in _mapping(data, "headers").items()}
    overrides["fixtures"] = _mapping(data, "fixtures")

    options = RunOptions.from_config(get_config(env), **overrides)
    return RunConfig(plan=plan, thresholds=thresholds, options=options)


def load_run_config(path: str | Path, env: str | None = None) -> RunConfig:
    """
    Read a YAML run file from disk.

    Raises:
        ConfigurationError: If the file is missing, is not valid YAML, or
            describes an invalid run.
    """
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigurationError(f"Cannot read run file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Run file {path} is not valid YAML: {exc}") from exc
    return build_run_config(data, env=env)
