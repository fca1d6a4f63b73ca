"""
Error taxonomy and process exit codes for the load generator.

Only two kinds of failure ever end a run early: a bad configuration,
detected before any traffic is generated, and an internal engine fault.
Everything that goes wrong *inside* the system under test (timeouts,
refused connections, 5xx responses) or inside one scenario iteration is
converted into metric observations and the run carries on.

Exit codes follow a three-state convention so that CI can tell
"the target failed its SLA" from "the load generator itself broke":

- ``0`` -- all thresholds passed
- ``1`` -- at least one threshold was breached
- ``2`` -- configuration, setup or engine failure
"""

from __future__ import annotations

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_ENGINE_ERROR = 2


class LoadGenError(Exception):
    """Base class for every error raised by the load generator."""


class ConfigurationError(LoadGenError):
    """Invalid stage plan, threshold, run file or option. Fatal before the run starts."""


class TransportError(LoadGenError):
    """
    A request that never produced an HTTP response.

    The executor does not raise this into scenarios; it is raised on
    demand by :meth:`loadgen.executor.RequestResult.raise_for_transport`.

    Attributes:
        kind: One of ``"timeout"``, ``"dns"``, ``"connection"``, ``"other"``.
        url: The URL that was being requested.
    """

    def __init__(self, message: str, *, kind: str, url: str):
        super().__init__(message)
        self.kind = kind
        self.url = url


class ScenarioError(LoadGenError):
    """An uncaught exception escaped a scenario iteration or its setup hook."""

    def __init__(self, message: str, *, vu_id: int | None = None, iteration: int | None = None):
        super().__init__(message)
        self.vu_id = vu_id
        self.iteration = iteration


class IterationAborted(LoadGenError):
    """Raised inside a virtual user when the hard cutoff abandons its iteration."""


class EngineError(LoadGenError):
    """Unrecoverable internal fault. Aborts the run."""
