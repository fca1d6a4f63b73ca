"""
Load Generator: configuration.

Defines environment-specific configuration classes for the engine.
Each class captures the operational defaults of a run (target base URL,
per-request timeout, think time, control-loop cadence, graceful stop
window) that a YAML run file may later override.  The ``get_config``
factory selects the right class based on the ``LOADGEN_ENV``
environment variable (or an explicit key).

Key Concepts Demonstrated:
- Class-based configuration with inheritance for DRY defaults
- Environment-variable overrides for 12-factor deployability
- Separate testing configuration with a fast control loop and short grace
"""

from __future__ import annotations

import os


class Config:
    """
    Base (shared) configuration for the load generator.

    All environment-specific classes inherit from ``Config`` so that
    common defaults only need to be stated once.
    """

    # Root URL of the system under test.  Relative request paths in a
    # scenario are resolved against it.
    BASE_URL: str = os.environ.get("LOADGEN_BASE_URL", "http://localhost:8080")

    # Per-request timeout in seconds.  Mandatory for every call; k6 uses
    # the same 60 second default.
    REQUEST_TIMEOUT: float = float(os.environ.get("LOADGEN_REQUEST_TIMEOUT", "60"))

    # Pause between two iterations of the same virtual user.
    THINK_TIME: float = float(os.environ.get("LOADGEN_THINK_TIME", "0"))

    # Cadence of the scheduler / runtime control loop.
    TICK_INTERVAL: float = float(os.environ.get("LOADGEN_TICK_INTERVAL", "1"))

    # Seconds in-flight iterations may keep running after the plan ends.
    GRACEFUL_STOP: float = float(os.environ.get("LOADGEN_GRACEFUL_STOP", "30"))

    # How often abort-on-fail thresholds are evaluated during the run.
    THRESHOLD_INTERVAL: float = float(os.environ.get("LOADGEN_THRESHOLD_INTERVAL", "5"))

    # "skip" or "fail": what a threshold on a metric with no data means.
    NO_DATA_POLICY: str = os.environ.get("LOADGEN_NO_DATA_POLICY", "skip")

    # Seed for per-user random generators; empty means non-deterministic.
    SEED: int | None = int(os.environ["LOADGEN_SEED"]) if os.environ.get("LOADGEN_SEED") else None

    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")


class DevelopmentConfig(Config):
    """
    Local development overrides.

    Shortens the graceful stop window so an interrupted local run hands
    control back quickly; everything else comes from ``Config``.
    """

    GRACEFUL_STOP: float = float(os.environ.get("LOADGEN_GRACEFUL_STOP", "10"))


class TestingConfig(Config):
    """
    Test-suite overrides.

    Points the base URL at a non-routable host so that tests never leak
    real traffic, and shrinks the control loop, grace window and request
    timeout so simulated runs finish in a couple of seconds.
    """

    BASE_URL: str = os.environ.get("TEST_LOADGEN_BASE_URL", "http://mesh.test")
    REQUEST_TIMEOUT: float = float(os.environ.get("TEST_LOADGEN_REQUEST_TIMEOUT", "2"))
    TICK_INTERVAL: float = 0.05
    GRACEFUL_STOP: float = 0.5
    THRESHOLD_INTERVAL: float = 0.2
    SEED: int | None = 1234


class ProductionConfig(Config):
    """
    CI / production overrides.

    All values are expected to come from environment variables set by
    the pipeline; only the log level is pinned.
    """

    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")


# Lookup table mapping environment name strings to their config classes.
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Return the configuration class for the given environment.

    Args:
        env: One of ``"development"``, ``"testing"``, or
            ``"production"``.  When *None*, the ``LOADGEN_ENV``
            environment variable is consulted, falling back to
            ``"development"`` if unset.

    Returns:
        The ``Config`` subclass matching the requested environment,
        or ``DevelopmentConfig`` if the key is unrecognised.
    """
    if env is None:
        env = os.environ.get("LOADGEN_ENV", "development")
    return config.get(env, config["default"])
