# frs/tests/test_compute_client.py
import asyncio
import json

import httpx
import pytest

from frs.compute_client import CircuitBreaker, ComputeClient
from frs.errors import CircuitOpenError, PermanentError, TransientError


class FakeClock:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t


def _client(handler, *, api_key="", breaker=None, timeout_s=5.0):
    return ComputeClient(
        "https://compute.test/api",
        api_key=api_key,
        timeout_s=timeout_s,
        breaker=breaker,
        transport=httpx.MockTransport(handler),
    )


def _run(coro):
    return asyncio.run(coro)


def test_compute_posts_payload_and_bearer():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": "VALID", "proofId": "p1"})

    async def go():
        async with _client(handler, api_key="k1") as c:
            return await c.compute("prog", {"assetId": 1}, {"income": 5}, {"requestId": "r1", "x": 1})

    out = _run(go())
    assert out["proofId"] == "p1"
    assert seen["url"] == "https://compute.test/api/compute"
    assert seen["auth"] == "Bearer k1"
    assert seen["body"] == {
        "program": "prog",
        "publicInputs": {"assetId": 1},
        "privateInputs": {"income": 5},
        "meta": {"requestId": "r1", "x": 1},
    }


def test_compute_without_key_and_generated_request_id():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("authorization")
        seen["meta"] = json.loads(request.content)["meta"]
        return httpx.Response(200, json={"status": "VALID"})

    async def go():
        async with _client(handler) as c:
            await c.compute("prog", {})

    _run(go())
    assert seen["auth"] is None
    assert len(seen["meta"]["requestId"]) == 32


@pytest.mark.parametrize(
    "response, err",
    [
        (httpx.Response(503, text="busy"), TransientError),
        (httpx.Response(500, json={"error": "x"}), TransientError),
        (httpx.Response(400, json={"error": "bad"}), PermanentError),
        (httpx.Response(404), PermanentError),
        (httpx.Response(200, text="not json"), PermanentError),
        (httpx.Response(200, json=[1, 2]), PermanentError),
    ],
)
def test_error_classification(response, err):
    async def go():
        async with _client(lambda request: response) as c:
            await c.compute("prog", {})

    with pytest.raises(err) as ei:
        _run(go())
    assert ei.value.retryable is (err is TransientError)


def test_connection_failure_is_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async def go():
        async with _client(handler) as c:
            await c.compute("prog", {})

    with pytest.raises(TransientError):
        _run(go())


def test_timeout_is_transient():
    async def handler(request):
        await asyncio.sleep(1.0)
        return httpx.Response(200, json={})

    async def go():
        async with _client(handler, timeout_s=0.05) as c:
            await c.compute("prog", {})

    with pytest.raises(TransientError):
        _run(go())


class _Body(httpx.AsyncByteStream):
    def __init__(self, data):
        self.data = data

    async def __aiter__(self):
        yield self.data


def test_undecodable_body_is_transient_and_counted():
    # body claims gzip but is not; decoding fails inside the client
    breaker = CircuitBreaker(5, 60.0, clock=FakeClock())

    def handler(request):
        return httpx.Response(
            200, headers={"content-encoding": "gzip"}, stream=_Body(b"not gzip")
        )

    async def go():
        async with _client(handler, breaker=breaker) as c:
            await c.compute("prog", {})

    with pytest.raises(TransientError):
        _run(go())
    assert breaker.failures == 1


def test_breaker_opens_after_threshold_and_fails_fast():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(503)

    clock = FakeClock()
    breaker = CircuitBreaker(5, 60.0, clock=clock)

    async def go():
        async with _client(handler, breaker=breaker) as c:
            for _ in range(5):
                with pytest.raises(TransientError):
                    await c.compute("prog", {})
            assert c.state == "open"
            with pytest.raises(CircuitOpenError):
                await c.compute("prog", {})

    _run(go())
    assert len(calls) == 5


def test_breaker_counts_permanent_failures():
    breaker = CircuitBreaker(2, 60.0, clock=FakeClock())

    async def go():
        async with _client(lambda r: httpx.Response(422), breaker=breaker) as c:
            for _ in range(2):
                with pytest.raises(PermanentError):
                    await c.compute("prog", {})

    _run(go())
    assert breaker.state == "open"


def test_breaker_half_open_success_closes():
    clock = FakeClock()
    breaker = CircuitBreaker(1, 60.0, clock=clock)
    responses = [httpx.Response(500), httpx.Response(200, json={"status": "VALID"})]

    async def go():
        async with _client(lambda r: responses.pop(0), breaker=breaker) as c:
            with pytest.raises(TransientError):
                await c.compute("prog", {})
            assert breaker.state == "open"
            clock.t += 59.0
            with pytest.raises(CircuitOpenError):
                await c.compute("prog", {})
            clock.t += 1.0
            assert breaker.state == "half_open"
            out = await c.compute("prog", {})
            assert out["status"] == "VALID"

    _run(go())
    assert breaker.state == "closed"
    assert breaker.failures == 0


def test_breaker_half_open_failure_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker(3, 10.0, clock=clock)
    for _ in range(3):
        breaker.record_failure()
    assert breaker.state == "open"
    clock.t += 10.0
    assert breaker.state == "half_open"
    breaker.before_call()
    breaker.record_failure()
    assert breaker.state == "open"
    assert breaker.retry_after() == pytest.approx(10.0)


def test_success_resets_failure_count():
    breaker = CircuitBreaker(3, 10.0, clock=FakeClock())
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    assert breaker.state == "closed"
    assert breaker.failures == 1
