import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

import aiohttp
from pydantic import BaseModel
from web3 import AsyncWeb3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from core.environment.config import NetworkConfig, Settings
from core.exceptions import NetworkNotSupportedException, TransportExhaustedException

T = TypeVar("T")

# Answers from a working endpoint: a revert or undecodable call output is
# the same on every endpoint, so it never triggers failover.
CONTRACT_ERRORS = (ContractLogicError, BadFunctionCallOutput)

Request = Callable[[AsyncWeb3], Awaitable[T]]
ClientFactory = Callable[[str, float], AsyncWeb3]


class EndpointSkipped(Exception):
    """
    Endpoint was not called within the attempt.

    Parameters
    ----------
    reason : str
        Why the endpoint was skipped
    retry_later : bool
        Whether the endpoint may still be tried as a last resort
    """

    def __init__(self, reason: str, retry_later: bool):
        self.retry_later = retry_later
        super().__init__(reason)


def make_web3_client(url: str, timeout: float) -> AsyncWeb3:
    """
    Create a Web3 client for a single RPC endpoint.

    Web3's own retry layer is disabled: failover between endpoints
    is handled by the pool.

    Parameters
    ----------
    url : str
        RPC endpoint URL
    timeout : float
        HTTP request timeout in seconds

    Returns
    -------
    AsyncWeb3
        Web3 client instance
    """
    return AsyncWeb3(
        AsyncWeb3.AsyncHTTPProvider(
            url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout)},
            exception_retry_configuration=None,
        )
    )


class EndpointHealth(BaseModel):
    """
    In-memory health counters of one RPC endpoint.

    Attributes
    ----------
    consecutive_failures : int
        Failed attempts since the last success
    consecutive_successes : int
        Successful attempts since the last failure
    healthy : bool
        Whether the endpoint is eligible for round-robin use
    last_used : datetime | None
        Time of the last attempt
    """
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    healthy: bool = True
    last_used: datetime | None = None


class Endpoint:
    """
    RPC endpoint with its client, health counters and request lock.

    Parameters
    ----------
    url : str
        RPC endpoint URL
    client : AsyncWeb3
        Web3 client bound to the endpoint
    """

    def __init__(self, url: str, client: AsyncWeb3):
        self.url = url
        self.client = client
        self.health = EndpointHealth()
        self.lock = asyncio.Lock()


class TransportPool:
    """
    Fallback transport over the RPC endpoints of one network.

    Queries go to a working subset of ``active_count`` endpoints in
    round-robin order. A failing endpoint is marked unhealthy and the
    query moves on to the next endpoint: first the rest of the active
    subset, then every other configured endpoint in list order. No
    endpoint is tried twice within one query.

    Parameters
    ----------
    network : str
        Network name
    endpoints : list[Endpoint]
        Endpoints in configuration order
    active_count : int
        Size of the active subset
    timeout : float
        Ceiling of a single attempt in seconds
    recovery_successes : int
        Consecutive successes that restore an unhealthy endpoint
    reprobe_every : int
        Every n-th query starts with the next unhealthy endpoint
    logger : logging.Logger
        Logger instance
    """

    def __init__(
        self,
        network: str,
        endpoints: list[Endpoint],
        active_count: int,
        timeout: float,
        logger: logging.Logger,
        recovery_successes: int = 1,
        reprobe_every: int = 10
    ):
        if not endpoints:
            raise ValueError(f"Network {network} has no RPC endpoints")
        self.network = network
        self.endpoints = endpoints
        self.active_count = min(active_count, len(endpoints))
        self.timeout = timeout
        self.recovery_successes = recovery_successes
        self.reprobe_every = reprobe_every
        self.logger = logger

        self._active = list(endpoints[:self.active_count])
        self._cursor = 0
        self._probe_cursor = 0
        self._calls = 0

    @classmethod
    def from_config(
        cls,
        network: NetworkConfig,
        settings: Settings,
        logger: logging.Logger,
        client_factory: ClientFactory = make_web3_client
    ) -> "TransportPool":
        """
        Build a pool for a configured network.

        Parameters
        ----------
        network : NetworkConfig
            Network configuration
        settings : Settings
            Application settings
        logger : logging.Logger
            Logger instance
        client_factory : ClientFactory
            Creates a client for an endpoint URL and timeout

        Returns
        -------
        TransportPool
            Transport pool for the network
        """
        endpoints = [
            Endpoint(url, client_factory(url, settings.rpc_timeout_secs))
            for url in network.rpc_nodes
        ]
        return cls(
            network=network.name,
            endpoints=endpoints,
            active_count=settings.active_transport_count,
            timeout=settings.rpc_timeout_secs,
            logger=logger,
            recovery_successes=settings.recovery_successes,
            reprobe_every=settings.reprobe_every,
        )

    @property
    def active(self) -> list[Endpoint]:
        return list(self._active)

    async def query(self, request: Request[T]) -> T:
        """
        Execute a request with failover across endpoints.

        Parameters
        ----------
        request : Request[T]
            Coroutine function receiving the endpoint's Web3 client

        Returns
        -------
        T
            Result of the first successful attempt

        Raises
        ------
        ContractLogicError, BadFunctionCallOutput
            If the contract reverted or its output cannot be decoded;
            this is an answer, not a transport failure, so no failover
            happens
        TransportExhaustedException
            If every configured endpoint failed
        """
        errors = []
        order = self._attempt_order()
        require_healthy = {id(endpoint): endpoint.health.healthy for endpoint in order}
        try:
            while order:
                endpoint = order.pop(0)
                try:
                    return await self._attempt(endpoint, request, require_healthy[id(endpoint)])
                except CONTRACT_ERRORS:
                    raise
                except EndpointSkipped as e:
                    if e.retry_later:
                        require_healthy[id(endpoint)] = False
                        order.append(endpoint)
                    else:
                        errors.append(f"{endpoint.url}: {e}")
                    self.logger.debug(f"[{self.network}] RPC {endpoint.url} skipped: {e}")
                except Exception as e:
                    errors.append(f"{endpoint.url}: {e!r}")
                    self.logger.warning(
                        f"[{self.network}] RPC {endpoint.url} failed "
                        f"({endpoint.health.consecutive_failures} in a row): {e!r}"
                    )
        finally:
            self._rebalance()

        raise TransportExhaustedException(self.network, errors)

    def health(self) -> list[dict]:
        """
        Snapshot of endpoint health.

        Returns
        -------
        list[dict]
            One entry per endpoint in configuration order
        """
        active_urls = {endpoint.url for endpoint in self._active}
        return [
            {
                "url": endpoint.url,
                "active": endpoint.url in active_urls,
                **endpoint.health.model_dump(),
            }
            for endpoint in self.endpoints
        ]

    def _attempt_order(self) -> list[Endpoint]:
        self._calls += 1
        order = []

        if self._calls % self.reprobe_every == 0:
            probe = self._next_probe()
            if probe is not None:
                order.append(probe)

        healthy_active = [e for e in self._active if e.health.healthy]
        if healthy_active:
            start = self._cursor % len(healthy_active)
            self._cursor += 1
            order.extend(healthy_active[start:] + healthy_active[:start])

        order.extend(e for e in self._active if not e.health.healthy)
        order.extend(e for e in self.endpoints if e not in self._active)

        seen = set()
        unique = []
        for endpoint in order:
            if id(endpoint) not in seen:
                seen.add(id(endpoint))
                unique.append(endpoint)
        return unique

    def _next_probe(self) -> Endpoint | None:
        unhealthy = [e for e in self.endpoints if not e.health.healthy]
        if not unhealthy:
            return None
        endpoint = unhealthy[self._probe_cursor % len(unhealthy)]
        self._probe_cursor += 1
        return endpoint

    async def _attempt(self, endpoint: Endpoint, request: Request[T], require_healthy: bool) -> T:
        """
        Run one request against an endpoint.

        The timeout covers waiting for the endpoint lock as well as the
        request, so queries queued behind a hung endpoint give up at the
        same deadline. An endpoint that went unhealthy while the query
        waited is skipped and left for last.

        The outcome is recorded before the lock is released, so the next
        waiter sees the updated health.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        busy = f"busy for more than {self.timeout}s"

        try:
            await asyncio.wait_for(endpoint.lock.acquire(), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise EndpointSkipped(busy, retry_later=False) from None

        try:
            if require_healthy and not endpoint.health.healthy:
                raise EndpointSkipped("marked unhealthy while waiting", retry_later=True)
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise EndpointSkipped(busy, retry_later=False)

            endpoint.health.last_used = datetime.now(timezone.utc)
            try:
                result = await asyncio.wait_for(request(endpoint.client), timeout=remaining)
            except CONTRACT_ERRORS:
                self._record_success(endpoint)
                raise
            except Exception:
                self._record_failure(endpoint)
                raise
            self._record_success(endpoint)
            return result
        finally:
            endpoint.lock.release()

    def _record_success(self, endpoint: Endpoint) -> None:
        health = endpoint.health
        health.consecutive_failures = 0
        health.consecutive_successes += 1
        if not health.healthy and health.consecutive_successes >= self.recovery_successes:
            health.healthy = True
            self.logger.info(f"[{self.network}] RPC {endpoint.url} recovered")

    def _record_failure(self, endpoint: Endpoint) -> None:
        health = endpoint.health
        health.consecutive_failures += 1
        health.consecutive_successes = 0
        if health.healthy:
            health.healthy = False
            self.logger.warning(f"[{self.network}] RPC {endpoint.url} marked unhealthy")

    def _rebalance(self) -> None:
        ranked = sorted(
            range(len(self.endpoints)),
            key=lambda i: (not self.endpoints[i].health.healthy, i)
        )
        self._active = [self.endpoints[i] for i in ranked[:self.active_count]]


class TransportRegistry:
    """
    Transport pools of all configured networks.

    Parameters
    ----------
    pools : dict[str, TransportPool]
        Pools keyed by network name
    """

    def __init__(self, pools: dict[str, TransportPool]):
        self.pools = pools

    def get(self, network: str) -> TransportPool:
        """
        Get the pool of a network.

        Raises
        ------
        NetworkNotSupportedException
            If the network is not configured
        """
        if network not in self.pools:
            raise NetworkNotSupportedException(network)
        return self.pools[network]

    async def query(self, network: str, request: Request[T]) -> T:
        return await self.get(network).query(request)
