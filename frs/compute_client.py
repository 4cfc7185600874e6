# FILE: frs/compute_client.py
from __future__ import annotations

"""
Client for the confidential-compute provider.

Every call goes through a per-instance circuit breaker:

  closed     → calls pass; each failure (transient or permanent) is counted
  open       → calls fail fast with CircuitOpenError, no network I/O
  half_open  → cool-down elapsed; the next call is attempted. Success closes
               the breaker and resets the count, failure reopens it at once.

Failure classification:
  - request failure (connection, timeout, decoding,
    redirects), HTTP >= 500                       → TransientError
  - any other non-2xx, or a 2xx non-object body   → PermanentError
"""

import asyncio
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, Mapping, Optional

import httpx
from prometheus_client import Counter, Gauge

from .errors import CircuitOpenError, ComputeError, PermanentError, TransientError

_log = logging.getLogger(__name__)

# ---------- Metrics ----------

_BREAKER_OPEN = Gauge(
    "frs_compute_breaker_open",
    "1 while the compute circuit breaker is open",
)
_CALLS = Counter(
    "frs_compute_calls_total",
    "Compute provider calls by outcome",
    ["outcome"],  # ok|transient|permanent|circuit_open
)

_BODY_SNIPPET = 512


class CircuitBreaker:
    """
    Consecutive-failure breaker with a fixed cool-down.

    `clock` returns monotonic seconds; tests inject a fake one.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 5,
        open_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = int(failure_threshold)
        self.open_seconds = max(0.0, float(open_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._open_until: Optional[float] = None

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def state(self) -> str:
        with self._lock:
            return self._state_locked()

    def _state_locked(self) -> str:
        if self._open_until is None:
            return self.CLOSED
        if self._clock() < self._open_until:
            return self.OPEN
        return self.HALF_OPEN

    def retry_after(self) -> float:
        """Seconds until the cool-down ends (0 when not open)."""
        with self._lock:
            if self._open_until is None:
                return 0.0
            return max(0.0, self._open_until - self._clock())

    def before_call(self) -> None:
        with self._lock:
            if self._state_locked() == self.OPEN:
                raise CircuitOpenError(
                    f"compute circuit open, retry in {self._open_until - self._clock():.1f}s"
                )

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._open_until = None
        _BREAKER_OPEN.set(0)

    def record_failure(self) -> None:
        with self._lock:
            half_open = self._state_locked() == self.HALF_OPEN
            self._failures += 1
            if half_open or self._failures >= self.failure_threshold:
                self._open_until = self._clock() + self.open_seconds
                opened = True
            else:
                opened = False
            failures = self._failures
        if opened:
            _BREAKER_OPEN.set(1)
            _log.warning(
                "compute circuit opened",
                extra={"failures": failures, "open_s": self.open_seconds},
            )


class ComputeClient:
    """
    Async client for `POST {base_url}/compute`.

    The underlying httpx.AsyncClient is owned by this object; pass
    `transport=` to route requests elsewhere (httpx.MockTransport in tests).
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout_s: float = 30.0,
        breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        self._api_key = api_key or ""
        self.breaker = breaker or CircuitBreaker()
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_s,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> "ComputeClient":
        breaker = CircuitBreaker(
            settings.breaker_failure_threshold,
            settings.breaker_open_s,
        )
        return cls(
            settings.compute_base_url,
            api_key=settings.compute_api_key,
            timeout_s=settings.compute_timeout_s,
            breaker=breaker,
            transport=transport,
        )

    @property
    def state(self) -> str:
        return self.breaker.state

    def _headers(self) -> Dict[str, str]:
        h = {"Content-Type": "application/json"}
        if self._api_key:
            h["Authorization"] = f"Bearer {self._api_key}"
        return h

    async def compute(
        self,
        program: str,
        public_inputs: Mapping[str, Any],
        private_inputs: Optional[Mapping[str, Any]] = None,
        meta: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Run `program` on the provider and return its decoded JSON object.

        Raises CircuitOpenError (no I/O), TransientError or PermanentError.
        Every failure is recorded on the breaker.
        """
        try:
            self.breaker.before_call()
        except CircuitOpenError:
            _CALLS.labels(outcome="circuit_open").inc()
            raise

        meta_out = dict(meta or {})
        meta_out["requestId"] = meta_out.get("requestId") or uuid.uuid4().hex
        payload = {
            "program": program,
            "publicInputs": dict(public_inputs),
            "privateInputs": dict(private_inputs or {}),
            "meta": meta_out,
        }

        try:
            result = await self._post(payload)
        except ComputeError as e:
            self.breaker.record_failure()
            _CALLS.labels(outcome="transient" if e.retryable else "permanent").inc()
            _log.warning(
                "compute call failed: %s",
                e,
                extra={"req_id": meta_out["requestId"], "status_code": e.status_code},
            )
            raise
        self.breaker.record_success()
        _CALLS.labels(outcome="ok").inc()
        return result

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = await asyncio.wait_for(
                self._http.post("/compute", json=payload, headers=self._headers()),
                timeout=self.timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise TransientError(f"compute timed out after {self.timeout_s}s") from e
        except httpx.RequestError as e:
            # transport failures, undecodable bodies, redirect loops
            raise TransientError(f"compute request error: {type(e).__name__}: {e}") from e

        code = resp.status_code
        if code >= 500:
            raise TransientError(
                f"compute provider error {code}: {resp.text[:_BODY_SNIPPET]}",
                status_code=code,
            )
        if not 200 <= code < 300:
            raise PermanentError(
                f"compute rejected request {code}: {resp.text[:_BODY_SNIPPET]}",
                status_code=code,
            )
        try:
            body = resp.json()
        except ValueError as e:
            raise PermanentError("compute returned a non-JSON body", status_code=code) from e
        if not isinstance(body, dict):
            raise PermanentError("compute returned a non-object JSON body", status_code=code)
        return body

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "ComputeClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


__all__ = ["CircuitBreaker", "ComputeClient"]
