import asyncio
import itertools
import json

import httpx
import pytest

from chaosmonkey.core.errors import EngineFailure
from chaosmonkey.core.load_engine import HttpLoadEngine, _distribution, _pct
from chaosmonkey.core.run_spec import normalize_run_spec
from chaosmonkey.models.run import RunSpec


class _TickRecorder:
    def __init__(self):
        self.ticks: list[tuple[int, int]] = []

    async def __call__(self, counter: int, nbytes: int) -> None:
        self.ticks.append((counter, nbytes))


def _engine(handler, *, tick: float = 1.0) -> HttpLoadEngine:
    return HttpLoadEngine(tick_interval_seconds=tick, transport=httpx.MockTransport(handler))


def test_pct_and_distribution():
    assert _pct([], 50) == 0.0
    assert _pct([7.0], 99) == 7.0
    assert _pct([1.0, 2.0, 3.0, 4.0, 5.0], 50) == 3.0

    dist = _distribution([2.0, 4.0, 6.0], total=12)
    assert dist["average"] == dist["mean"] == 4.0
    assert dist["min"] == 2.0 and dist["max"] == 6.0
    assert dist["total"] == 12


@pytest.mark.asyncio
async def test_amount_bounded_run_accounts_for_every_request():
    counter = itertools.count()

    def handler(request: httpx.Request) -> httpx.Response:
        n = next(counter)
        if n % 5 == 0:
            return httpx.Response(503, content=b"busy")
        return httpx.Response(200, content=b"ok")

    spec = normalize_run_spec(
        {"url": "http://target.local/api", "amount": 20, "connections": 2}
    )
    result = await _engine(handler).run(spec, _TickRecorder())

    assert result["requests"]["sent"] == 20
    assert result["requests"]["total"] == 20
    assert result["2xx"] == 16
    assert result["5xx"] == 4
    assert result["non2xx"] == 4
    assert result["errors"] == 0
    assert result["2xx"] + result["non2xx"] + result["errors"] == result["requests"]["sent"]
    assert result["bytes"] == 16 * 2 + 4 * 4
    assert result["statusCodeStats"] == {"200": {"count": 16}, "503": {"count": 4}}
    assert result["url"] == "http://target.local/api"
    assert result["connections"] == 2


@pytest.mark.asyncio
async def test_transport_errors_are_counted_not_raised():
    counter = itertools.count()

    def handler(request: httpx.Request) -> httpx.Response:
        n = next(counter)
        if n % 2:
            raise httpx.ConnectError("refused", request=request)
        if n % 4 == 2:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(204)

    spec = normalize_run_spec({"url": "http://target.local/", "amount": 8, "connections": 1})
    result = await _engine(handler).run(spec, _TickRecorder())

    assert result["errors"] == 6
    assert result["timeouts"] == 2
    assert result["2xx"] == 2
    assert result["2xx"] + result["non2xx"] + result["errors"] == 8


@pytest.mark.asyncio
async def test_request_carries_method_headers_and_json_body():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    spec = normalize_run_spec(
        {
            "url": "http://target.local/graphql",
            "method": "post",
            "headers": {"X-Trace": "abc"},
            "body": {"query": "{ ping }"},
            "amount": 1,
            "connections": 1,
        }
    )
    await _engine(handler).run(spec, _TickRecorder())

    (request,) = seen
    assert request.method == "POST"
    assert request.headers["x-trace"] == "abc"
    assert request.headers["content-type"] == "application/json"
    assert json.loads(request.read()) == {"query": "{ ping }"}


@pytest.mark.asyncio
async def test_verify_connection_failure_raises_engine_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connect ECONNREFUSED", request=request)

    spec = normalize_run_spec(
        {"url": "http://target.local/", "amount": 5, "verifyConnection": True}
    )
    with pytest.raises(EngineFailure, match="connection verification failed"):
        await _engine(handler).run(spec, _TickRecorder())


@pytest.mark.asyncio
async def test_run_without_bound_is_rejected():
    spec = RunSpec(url="http://target.local/", duration=0)
    with pytest.raises(EngineFailure):
        await _engine(lambda r: httpx.Response(200)).run(spec, _TickRecorder())


@pytest.mark.asyncio
async def test_overall_cap_stops_duration_run_early():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"x")

    spec = normalize_run_spec(
        {
            "url": "http://target.local/",
            "duration": 5,
            "connections": 3,
            "maxOverallRequests": 7,
        }
    )
    result = await asyncio.wait_for(_engine(handler).run(spec, _TickRecorder()), timeout=2)

    assert result["requests"]["sent"] == 7
    assert result["2xx"] == 7


@pytest.mark.asyncio
async def test_ticks_report_cumulative_totals():
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.002)
        return httpx.Response(200, content=b"abcd")

    spec = normalize_run_spec(
        {"url": "http://target.local/", "duration": 0.2, "connections": 2}
    )
    recorder = _TickRecorder()
    result = await _engine(handler, tick=0.02).run(spec, recorder)

    assert recorder.ticks
    counters = [c for c, _ in recorder.ticks]
    assert counters == sorted(counters)
    assert all(b == c * 4 for c, b in recorder.ticks)
    assert recorder.ticks[-1][0] <= result["requests"]["total"]
    assert result["2xx"] + result["non2xx"] + result["errors"] == result["requests"]["sent"]


@pytest.mark.asyncio
@pytest.mark.parametrize("bound", [{"duration": 5}, {"amount": 5}])
async def test_worker_failure_propagates_in_both_modes(bound):
    def handler(request: httpx.Request) -> httpx.Response:
        raise RuntimeError("handler blew up")

    spec = normalize_run_spec({"url": "http://target.local/", "connections": 2, **bound})
    with pytest.raises(RuntimeError, match="handler blew up"):
        await asyncio.wait_for(_engine(handler).run(spec, _TickRecorder()), timeout=2)


@pytest.mark.asyncio
async def test_unencodable_header_fails_duration_run():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200)

    spec = normalize_run_spec(
        {"url": "http://target.local/", "headers": {"X-Name": "café"}, "duration": 5}
    )
    with pytest.raises(UnicodeEncodeError):
        await asyncio.wait_for(_engine(handler).run(spec, _TickRecorder()), timeout=2)
