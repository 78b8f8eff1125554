import asyncio
import time

import pytest
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from core.exceptions import NetworkNotSupportedException, TransportExhaustedException
from monitoring.transport import Endpoint, TransportPool, TransportRegistry


class FakeClient:
    """
    Stand-in for an endpoint's Web3 client.

    Each call consumes the next scripted action; the last action
    repeats once the script is exhausted.
    """

    def __init__(self, url: str, actions: list[str]):
        self.url = url
        self.actions = list(actions)
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def call(self) -> str:
        action = self.actions.pop(0) if len(self.actions) > 1 else self.actions[0]
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if action == "fail":
                raise ConnectionError(f"{self.url} refused connection")
            if action == "hang":
                await asyncio.sleep(10)
            if action == "revert":
                raise ContractLogicError("execution reverted")
            if action == "decode":
                raise BadFunctionCallOutput("Could not decode contract function call to balanceOf with return data: b''")
            return self.url
        finally:
            self.in_flight -= 1


async def request(client: FakeClient) -> str:
    return await client.call()


def make_pool(logger, actions, active_count=2, timeout=1.0, recovery_successes=1, reprobe_every=10):
    endpoints = [
        Endpoint(f"https://rpc{i}.test", FakeClient(f"https://rpc{i}.test", script))
        for i, script in enumerate(actions)
    ]
    return TransportPool(
        network="testnet",
        endpoints=endpoints,
        active_count=active_count,
        timeout=timeout,
        logger=logger,
        recovery_successes=recovery_successes,
        reprobe_every=reprobe_every,
    )


def calls(pool: TransportPool) -> list[int]:
    return [endpoint.client.calls for endpoint in pool.endpoints]


class TestTransportPool:
    """
    Unit tests for failover and health tracking of the transport pool.
    """

    def test_active_subset_is_capped_by_endpoint_count(self, logger):
        pool = make_pool(logger, [["ok"], ["ok"]], active_count=5)
        assert pool.active_count == 2
        assert [e.url for e in pool.active] == ["https://rpc0.test", "https://rpc1.test"]

    @pytest.mark.asyncio
    async def test_round_robin_over_active_subset(self, logger):
        """
        Healthy active endpoints take turns; standby endpoints are unused.
        """
        pool = make_pool(logger, [["ok"], ["ok"], ["ok"]], active_count=2)

        results = [await pool.query(request) for _ in range(4)]

        assert results == [
            "https://rpc0.test",
            "https://rpc1.test",
            "https://rpc0.test",
            "https://rpc1.test",
        ]
        assert calls(pool) == [2, 2, 0]

    @pytest.mark.asyncio
    async def test_failover_marks_endpoint_unhealthy(self, logger):
        pool = make_pool(logger, [["fail"], ["ok"], ["ok"]], active_count=2)

        result = await pool.query(request)

        assert result == "https://rpc1.test"
        failed = pool.endpoints[0].health
        assert failed.healthy is False
        assert failed.consecutive_failures == 1
        assert [e.url for e in pool.active] == ["https://rpc1.test", "https://rpc2.test"]

    @pytest.mark.asyncio
    async def test_single_healthy_endpoint_serves_query(self, logger):
        """
        With every endpoint but one failing, the query still succeeds and
        no endpoint is tried twice.
        """
        pool = make_pool(logger, [["fail"], ["fail"], ["fail"], ["ok"]], active_count=2)

        assert await pool.query(request) == "https://rpc3.test"
        assert calls(pool) == [1, 1, 1, 1]

        assert await pool.query(request) == "https://rpc3.test"
        assert calls(pool) == [1, 1, 1, 2]

    @pytest.mark.asyncio
    async def test_all_endpoints_failing_raises_exhausted(self, logger):
        pool = make_pool(logger, [["fail"], ["fail"], ["fail"]], active_count=2)

        with pytest.raises(TransportExhaustedException) as exc_info:
            await pool.query(request)

        assert exc_info.value.network == "testnet"
        assert len(exc_info.value.errors) == 3
        assert calls(pool) == [1, 1, 1]
        assert all(not e.health.healthy for e in pool.endpoints)

    @pytest.mark.asyncio
    async def test_exhausted_pool_keeps_trying_on_next_query(self, logger):
        """
        Failure is not permanent: the next query probes every endpoint again.
        """
        pool = make_pool(logger, [["fail", "ok"], ["fail"], ["fail"]], active_count=2)

        with pytest.raises(TransportExhaustedException):
            await pool.query(request)

        assert await pool.query(request) == "https://rpc0.test"
        assert pool.endpoints[0].health.healthy is True

    @pytest.mark.asyncio
    async def test_unhealthy_endpoint_recovers_after_success_streak(self, logger):
        """
        Periodic re-probing restores an endpoint once it succeeds
        ``recovery_successes`` times in a row.
        """
        pool = make_pool(
            logger,
            [["fail", "ok"], ["ok"], ["ok"]],
            active_count=2,
            recovery_successes=2,
            reprobe_every=1,
        )

        await pool.query(request)
        assert pool.endpoints[0].health.healthy is False

        assert await pool.query(request) == "https://rpc0.test"
        assert pool.endpoints[0].health.healthy is False
        assert pool.endpoints[0].health.consecutive_successes == 1

        assert await pool.query(request) == "https://rpc0.test"
        assert pool.endpoints[0].health.healthy is True
        assert [e.url for e in pool.active] == ["https://rpc0.test", "https://rpc1.test"]

    @pytest.mark.asyncio
    async def test_reprobe_reaches_unhealthy_standby(self, logger):
        """
        An unhealthy endpoint outside the active subset is still probed.
        """
        pool = make_pool(logger, [["fail", "ok"], ["ok"], ["ok"]], active_count=1, reprobe_every=3)

        await pool.query(request)
        assert pool.endpoints[0].health.healthy is False

        for _ in range(2):
            await pool.query(request)

        assert pool.endpoints[0].client.calls == 2
        assert pool.endpoints[0].health.healthy is True

    @pytest.mark.asyncio
    async def test_timeout_triggers_failover(self, logger):
        pool = make_pool(logger, [["hang"], ["ok"]], active_count=2, timeout=0.05)

        assert await pool.query(request) == "https://rpc1.test"
        assert pool.endpoints[0].health.healthy is False

    @pytest.mark.asyncio
    async def test_contract_revert_is_not_a_transport_failure(self, logger):
        pool = make_pool(logger, [["revert"], ["ok"]], active_count=2)

        with pytest.raises(ContractLogicError):
            await pool.query(request)

        assert calls(pool) == [1, 0]
        assert pool.endpoints[0].health.healthy is True

    @pytest.mark.asyncio
    async def test_undecodable_output_is_not_a_transport_failure(self, logger):
        """
        A call on an address without contract code fails the same way on
        every endpoint, so it is returned without touching health.
        """
        pool = make_pool(logger, [["decode"], ["ok"], ["ok"]], active_count=2)

        with pytest.raises(BadFunctionCallOutput):
            await pool.query(request)

        assert calls(pool) == [1, 0, 0]
        assert all(e.health.healthy for e in pool.endpoints)
        assert pool.endpoints[0].health.consecutive_failures == 0
        assert [e.url for e in pool.active] == ["https://rpc0.test", "https://rpc1.test"]

    @pytest.mark.asyncio
    async def test_concurrent_queries_bounded_by_hung_endpoint_timeout(self, logger):
        """
        Queries queued behind a hung endpoint give up at the same
        deadline and do not call it once it is marked unhealthy.
        """
        timeout = 0.2
        pool = make_pool(logger, [["hang"], ["ok"], ["ok"]], active_count=3, timeout=timeout)
        semaphore = asyncio.Semaphore(3)

        async def timed_query() -> float:
            async with semaphore:
                started = time.monotonic()
                await pool.query(request)
                return time.monotonic() - started

        latencies = await asyncio.gather(*(timed_query() for _ in range(9)))

        assert max(latencies) < timeout * 1.9
        assert pool.endpoints[0].client.calls == 1
        assert pool.endpoints[0].health.consecutive_failures == 1
        assert pool.endpoints[0].health.healthy is False

    @pytest.mark.asyncio
    async def test_no_overlapping_requests_per_endpoint(self, logger):
        pool = make_pool(logger, [["ok"]], active_count=1)

        results = await asyncio.gather(*(pool.query(request) for _ in range(5)))

        assert len(results) == 5
        assert pool.endpoints[0].client.max_in_flight == 1

    def test_health_snapshot(self, logger):
        pool = make_pool(logger, [["ok"], ["ok"], ["ok"]], active_count=2)

        health = pool.health()

        assert [item["active"] for item in health] == [True, True, False]
        assert all(item["healthy"] for item in health)


class TestTransportRegistry:

    @pytest.mark.asyncio
    async def test_query_routes_to_network_pool(self, logger):
        registry = TransportRegistry({"testnet": make_pool(logger, [["ok"]])})

        assert await registry.query("testnet", request) == "https://rpc0.test"

    def test_unknown_network(self, logger):
        registry = TransportRegistry({"testnet": make_pool(logger, [["ok"]])})

        with pytest.raises(NetworkNotSupportedException):
            registry.get("mainnet")
