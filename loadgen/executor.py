"""
HTTP executor used by virtual users.

Every request a scenario makes goes through :class:`HttpExecutor`, which
wraps a ``requests.Session`` (one per virtual user, so connection pools
are never shared between users) and turns each call into an immutable
:class:`RequestResult`.

Two rules shape the behaviour:

  * **Any HTTP response is a successful transport.**  A 500 or a 404 is
    returned with its real status code; judging it is the scenario's job,
    done through checks.
  * **Transport failures never raise.**  Timeouts, refused connections
    and DNS failures come back as a result with ``status=None`` and
    ``error`` set, so a flaky target can never crash a virtual user.

Key Concepts Demonstrated:
- Mandatory per-call timeouts so a hanging target cannot stall a user
- Classifying ``requests`` exceptions into timeout / dns / connection
- Wall-clock latency measured around the whole call
"""

from __future__ import annotations

import json as jsonlib
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urljoin

import requests

from loadgen.errors import ConfigurationError, TransportError

logger = logging.getLogger(__name__)

# Markers urllib3 puts in the message of a ConnectionError when the host
# name could not be resolved.
_DNS_FAILURE_MARKERS = (
    "NameResolutionError",
    "Name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "Temporary failure in name resolution",
    "No address associated with hostname",
)


@dataclass(frozen=True)
class RequestResult:
    """
    Outcome of one HTTP call.

    Attributes:
        method: HTTP method that was sent.
        url: Absolute URL that was requested.
        name: Optional step label used to tag metrics.
        status: Response status code, or ``None`` on transport failure.
        latency_ms: Wall-clock duration of the call in milliseconds.
        body: Raw response body (empty on transport failure).
        headers: Response headers.
        error: Human-readable transport error, or ``None``.
        error_kind: ``"timeout"``, ``"dns"``, ``"connection"`` or ``"other"``.
        sent_bytes: Size of the request body.
    """

    method: str
    url: str
    status: int | None
    latency_ms: float
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    error: str | None = None
    error_kind: str | None = None
    name: str | None = None
    sent_bytes: int = 0

    @property
    def body_bytes(self) -> int:
        return len(self.body)

    @property
    def ok(self) -> bool:
        """True when a response arrived with a non-error status (200-399)."""
        return self.error is None and self.status is not None and 200 <= self.status < 400

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self, path: str | None = None) -> Any:
        """
        Parse the body as JSON, optionally descending a dotted ``path``.

        Returns ``None`` when the body is not JSON or the path does not
        exist, so scenarios can write ``result.json("id")`` without
        guarding every step.
        """
        if not self.body:
            return None
        try:
            data = jsonlib.loads(self.body)
        except ValueError:
            return None

        if path is None:
            return data
        for key in path.split("."):
            if isinstance(data, dict):
                data = data.get(key)
            elif isinstance(data, list) and key.isdigit() and int(key) < len(data):
                data = data[int(key)]
            else:
                return None
        return data

    def raise_for_transport(self) -> None:
        """Raise :class:`TransportError` if no response was received."""
        if self.error is not None:
            raise TransportError(self.error, kind=self.error_kind or "other", url=self.url)


def _classify_connection_error(exc: requests.ConnectionError) -> str:
    message = repr(exc)
    if any(marker in message for marker in _DNS_FAILURE_MARKERS):
        return "dns"
    return "connection"


class HttpExecutor:
    """
    Issues HTTP requests on behalf of one virtual user.

    Args:
        base_url: Root URL relative request paths are resolved against.
        timeout: Default per-call timeout in seconds; must be positive.
        session: Session to send requests with.  Each virtual user gets
            its own; tests inject lightweight fakes here.
        default_headers: Headers added to every request.
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 60.0,
        session: requests.Session | None = None,
        default_headers: Mapping[str, str] | None = None,
    ):
        if timeout is None or timeout <= 0:
            raise ConfigurationError(f"Request timeout must be positive, got {timeout!r}")
        self.base_url = base_url
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        self.default_headers = dict(default_headers or {})

    def resolve(self, url: str) -> str:
        if not self.base_url or "://" in url:
            return url
        return urljoin(self.base_url.rstrip("/") + "/", url.lstrip("/"))

    def execute(
        self,
        method: str,
        url: str,
        body: bytes | str | None = None,
        headers: Mapping[str, str] | None = None,
        *,
        json: Any = None,
        timeout: float | None = None,
        name: str | None = None,
    ) -> RequestResult:
        """
        Send one request and return its :class:`RequestResult`.

        Args:
            method: HTTP method.
            url: Absolute URL or path relative to ``base_url``.
            body: Raw request body.
            headers: Extra headers for this call.
            json: JSON-serialisable payload; sets ``Content-Type``.
            timeout: Override of the default timeout for this call.
            name: Step label carried into the result.

        Returns:
            The result; never raises for transport failures.
        """
        call_timeout = self.timeout if timeout is None else timeout
        if call_timeout <= 0:
            raise ConfigurationError(f"Request timeout must be positive, got {call_timeout!r}")

        target_url = self.resolve(url)
        merged_headers = {**self.default_headers, **(headers or {})}
        if json is not None:
            body = jsonlib.dumps(json)
            merged_headers.setdefault("Content-Type", "application/json")
        if isinstance(body, str):
            body = body.encode("utf-8")
        sent_bytes = len(body) if body else 0
        method = method.upper()

        started = time.perf_counter()
        try:
            response = self.session.request(
                method=method,
                url=target_url,
                headers=merged_headers,
                data=body,
                timeout=call_timeout,
            )
        except requests.Timeout as exc:
            return self._failure(method, target_url, name, started, sent_bytes, "timeout", exc)
        except requests.ConnectionError as exc:
            kind = _classify_connection_error(exc)
            return self._failure(method, target_url, name, started, sent_bytes, kind, exc)
        except requests.RequestException as exc:
            # Invalid URL, too many redirects, TLS errors, ...
            return self._failure(method, target_url, name, started, sent_bytes, "other", exc)

        latency_ms = (time.perf_counter() - started) * 1000.0
        return RequestResult(
            method=method,
            url=target_url,
            status=response.status_code,
            latency_ms=latency_ms,
            body=response.content or b"",
            headers=dict(response.headers),
            name=name,
            sent_bytes=sent_bytes,
        )

    def _failure(
        self,
        method: str,
        url: str,
        name: str | None,
        started: float,
        sent_bytes: int,
        kind: str,
        exc: Exception,
    ) -> RequestResult:
        latency_ms = (time.perf_counter() - started) * 1000.0
        logger.debug("%s %s failed after %.1fms (%s): %s", method, url, latency_ms, kind, exc)
        return RequestResult(
            method=method,
            url=url,
            status=None,
            latency_ms=latency_ms,
            error=f"{kind}: {exc}",
            error_kind=kind,
            name=name,
            sent_bytes=sent_bytes,
        )

    def get(self, url: str, **kwargs: Any) -> RequestResult:
        return self.execute("GET", url, **kwargs)

    def post(self, url: str, body: bytes | str | None = None, **kwargs: Any) -> RequestResult:
        return self.execute("POST", url, body, **kwargs)

    def put(self, url: str, body: bytes | str | None = None, **kwargs: Any) -> RequestResult:
        return self.execute("PUT", url, body, **kwargs)

    def patch(self, url: str, body: bytes | str | None = None, **kwargs: Any) -> RequestResult:
        return self.execute("PATCH", url, body, **kwargs)

    def delete(self, url: str, **kwargs: Any) -> RequestResult:
        return self.execute("DELETE", url, **kwargs)

    def close(self) -> None:
        self.session.close()
