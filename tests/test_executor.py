"""Tests for workload execution and the VU context."""

import asyncio
import json

import pytest

from loadrig import telemetry
from loadrig.exceptions import ConfigError, SetupError
from loadrig.executor import (
    ITERATION_ERROR,
    ITERATION_INTERRUPTED,
    ITERATION_TIMEOUT,
    WorkloadExecutor,
    require_async,
)
from loadrig.metrics import MetricCollector, MetricKind
from loadrig.vus import VirtualUser


def make_vu(vu_id=1, iteration=1):
    vu = VirtualUser(vu_id=vu_id)
    vu.iteration = iteration
    return vu


@pytest.fixture
def collector():
    return MetricCollector()


class TestRequests:
    @pytest.mark.asyncio
    async def test_request_records_http_metrics(self, collector, transport_factory):
        transport = transport_factory(lambda m, u: (200, b"hello"))
        ctx = WorkloadExecutor(collector, transport).context_for(1, 1)

        outcome = await ctx.get("http://svc/health")

        snap = collector.snapshot()
        assert outcome.status == 200
        assert snap["http_reqs"].count == 1
        assert snap["data_received"].count == 5
        assert snap["http_req_failed"].rate == 0
        assert snap["http_req_duration"].count == 1

    @pytest.mark.asyncio
    async def test_failed_request_counts_on_http_req_failed(self, collector, transport_factory):
        transport = transport_factory(lambda m, u: (0, b""))
        ctx = WorkloadExecutor(collector, transport).context_for(1, 1)
        await ctx.get("http://svc/health")
        assert collector.snapshot()["http_req_failed"].rate == 1.0

    @pytest.mark.asyncio
    async def test_relative_url_and_default_headers(self, collector, fake_transport):
        executor = WorkloadExecutor(
            collector,
            fake_transport,
            headers={"User-Agent": "t/1.0"},
            base_url="http://svc/api",
        )
        ctx = executor.context_for(1, 1)
        await ctx.get("/health", headers={"X-Trace": "1"})

        method, url, headers, body = fake_transport.calls[0]
        assert url == "http://svc/api/health"
        assert headers == {"User-Agent": "t/1.0", "X-Trace": "1"}
        assert body is None

    @pytest.mark.asyncio
    async def test_json_body(self, collector, fake_transport):
        ctx = WorkloadExecutor(collector, fake_transport).context_for(3, 7)
        await ctx.post("http://svc/items", json={"vu": ctx.vu_id, "iteration": ctx.iteration})

        method, url, headers, body = fake_transport.calls[0]
        assert method == "POST"
        assert json.loads(body) == {"vu": 3, "iteration": 7}
        assert headers["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_batch_runs_concurrently_and_keeps_order(self, collector, transport_factory):
        transport = transport_factory(
            lambda m, u: (200 if u.endswith("/a") else 404, b""), delay=0.02
        )
        ctx = WorkloadExecutor(collector, transport, base_url="http://svc").context_for(1, 1)

        outcomes = await ctx.batch([("GET", "/a"), ("GET", "/b"), ("POST", "/c", "{}")])

        assert [o.status for o in outcomes] == [200, 404, 404]
        assert transport.max_in_flight == 3
        assert collector.snapshot()["http_reqs"].count == 3


class TestChecks:
    @pytest.mark.asyncio
    async def test_each_check_adds_one_sample_to_checks_and_errors(self, collector, fake_transport):
        executor = WorkloadExecutor(collector, fake_transport)
        ctx = executor.context_for(1, 1)
        outcome = await ctx.get("http://svc/")

        ok = ctx.check(
            outcome,
            {
                "status is 200": lambda r: r.status == 200,
                "status is 500": lambda r: r.status == 500,
                "raises": lambda r: r.missing_attribute,
            },
        )

        snap = collector.snapshot()
        assert ok is False
        assert (snap["checks"].passes, snap["checks"].fails) == (1, 2)
        assert (snap["errors"].passes, snap["errors"].fails) == (2, 1)
        assert snap["errors"].rate == pytest.approx(2 / 3)

        tallies = executor.check_tallies()
        assert tallies["status is 200"].passes == 1
        assert tallies["raises"].fails == 1

    def test_all_passing_returns_true(self, collector, fake_transport):
        ctx = WorkloadExecutor(collector, fake_transport).context_for(1, 1)
        assert ctx.check(5, {"positive": lambda v: v > 0, "odd": lambda v: v % 2 == 1})
        assert collector.snapshot()["errors"].rate == 0

    def test_fail_records_failed_check(self, collector, fake_transport):
        ctx = WorkloadExecutor(collector, fake_transport).context_for(1, 1)
        ctx.fail("custom")
        assert collector.snapshot()["checks"].fails == 1


class TestContext:
    def test_identity_is_read_only(self, collector, fake_transport):
        ctx = WorkloadExecutor(collector, fake_transport).context_for(2, 5)
        assert (ctx.vu_id, ctx.iteration) == (2, 5)
        with pytest.raises(AttributeError):
            ctx.vu_id = 9
        with pytest.raises(AttributeError):
            ctx.iteration = 9

    def test_setup_data_is_read_only(self, collector, fake_transport):
        ctx = WorkloadExecutor(collector, fake_transport).context_for(1, 1, {"token": "abc"})
        assert ctx.setup_data["token"] == "abc"
        with pytest.raises(TypeError):
            ctx.setup_data["token"] = "xyz"

    def test_headers_are_per_context(self, collector, fake_transport):
        executor = WorkloadExecutor(collector, fake_transport, headers={"A": "1"})
        ctx = executor.context_for(1, 1)
        ctx.headers["B"] = "2"
        assert executor.headers == {"A": "1"}

    def test_custom_metric(self, collector, fake_transport):
        ctx = WorkloadExecutor(collector, fake_transport).context_for(1, 1)
        ctx.record("logins", MetricKind.COUNTER, 2)
        assert collector.snapshot()["logins"].count == 2

    def test_log_attributes_may_override_identity(
        self, collector, fake_transport, monkeypatch
    ):
        seen = []
        monkeypatch.setattr(
            telemetry, "log", lambda level, message, **attrs: seen.append(attrs)
        )
        ctx = WorkloadExecutor(collector, fake_transport).context_for(1, 100)

        ctx.log("progress", iteration=ctx.iteration, note="x")
        ctx.log("plain")

        assert seen == [
            {"vu": 1, "iteration": 100, "note": "x"},
            {"vu": 1, "iteration": 100},
        ]

    @pytest.mark.asyncio
    async def test_log_inside_iteration_does_not_fail_it(self, collector, fake_transport):
        async def workload(ctx):
            ctx.log("tick", iteration=ctx.iteration, vu=ctx.vu_id)

        executor = WorkloadExecutor(collector, fake_transport)
        assert await executor.run_iteration(make_vu(1, 100), workload)
        assert executor.check_tallies() == {}

    @pytest.mark.asyncio
    async def test_preflight_unreachable_raises_setup_error(self, collector, transport_factory):
        transport = transport_factory(lambda m, u: (0, b""))
        ctx = WorkloadExecutor(collector, transport, base_url="http://down").context_for(0, 0)
        with pytest.raises(SetupError) as exc_info:
            await ctx.preflight("/health")
        assert exc_info.value.is_unreachable
        assert exc_info.value.target == "http://down/health"

    @pytest.mark.asyncio
    async def test_preflight_accepts_any_response(self, collector, transport_factory):
        transport = transport_factory(lambda m, u: (503, b""))
        ctx = WorkloadExecutor(collector, transport).context_for(0, 0)
        outcome = await ctx.preflight("http://svc/health")
        assert outcome.status == 503


class TestRunIteration:
    @pytest.mark.asyncio
    async def test_success_records_iteration(self, collector, fake_transport):
        executor = WorkloadExecutor(collector, fake_transport)

        async def workload(ctx):
            await ctx.get("http://svc/")

        assert await executor.run_iteration(make_vu(), workload)
        snap = collector.snapshot()
        assert snap["iterations"].count == 1
        assert snap["iteration_duration"].count == 1
        assert snap["checks"].total == 0

    @pytest.mark.asyncio
    async def test_exception_becomes_failed_check(self, collector, fake_transport):
        executor = WorkloadExecutor(collector, fake_transport)

        async def workload(ctx):
            raise KeyError("missing")

        assert not await executor.run_iteration(make_vu(), workload)
        assert executor.check_tallies()[ITERATION_ERROR].fails == 1
        assert collector.snapshot()["errors"].rate == 1.0
        assert collector.snapshot()["iterations"].count == 1

    @pytest.mark.asyncio
    async def test_timeout_becomes_failed_check(self, collector, fake_transport):
        executor = WorkloadExecutor(collector, fake_transport, iteration_timeout=0.05)

        async def workload(ctx):
            await ctx.sleep(5)

        assert not await executor.run_iteration(make_vu(), workload)
        assert executor.check_tallies()[ITERATION_TIMEOUT].fails == 1

    @pytest.mark.asyncio
    async def test_cancellation_is_recorded_and_propagates(self, collector, fake_transport):
        executor = WorkloadExecutor(collector, fake_transport)

        async def workload(ctx):
            await ctx.sleep(5)

        task = asyncio.create_task(executor.run_iteration(make_vu(), workload))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert executor.check_tallies()[ITERATION_INTERRUPTED].fails == 1

    @pytest.mark.asyncio
    async def test_context_sees_vu_identity_and_setup_data(self, collector, fake_transport):
        executor = WorkloadExecutor(collector, fake_transport)
        seen = {}

        async def workload(ctx):
            seen.update(vu=ctx.vu_id, iteration=ctx.iteration, data=dict(ctx.setup_data))

        await executor.run_iteration(make_vu(4, 9), workload, {"k": "v"})
        assert seen == {"vu": 4, "iteration": 9, "data": {"k": "v"}}


class TestRequireAsync:
    def test_sync_function_rejected(self):
        def workload(ctx):
            pass

        with pytest.raises(ConfigError) as exc_info:
            require_async(workload, "workload")
        assert exc_info.value.code == "sync_hook"

    def test_async_function_and_none_accepted(self):
        async def workload(ctx):
            pass

        require_async(workload, "workload")
        require_async(None, "setup")
