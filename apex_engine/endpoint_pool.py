import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import aiohttp
import async_timeout
from cachetools import TTLCache
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import BlockNotFound, ContractLogicError, TransactionNotFound, Web3RPCError

from apex_engine.errors import (
    AlreadyKnown,
    Engine_Error,
    InsufficientFunds,
    Remote_Rejected,
    SequenceConflict,
    SimulationRejected,
    TransportExhausted,
)

logger = logging.getLogger("Endpoint_Pool")

# A JSON-RPC error from these is the node's verdict on our request, not a
# sign that the node is unhealthy.
AUTHORITATIVE_OPERATIONS = frozenset({"call", "estimate_gas", "send_raw_transaction"})

# JSON-RPC has no standard codes for nonce, balance or duplicate-submit
# faults, so node
# messages are matched here and nowhere else.
SEQUENCE_FAULT_MARKERS = (
    "nonce too low",
    "nonce too high",
    "invalid nonce",
    "nonce has already been used",
    "replacement transaction underpriced",
)
FUNDS_FAULT_MARKERS = ("insufficient funds",)
KNOWN_TX_MARKERS = ("already known", "known transaction", "already imported")


@dataclass(frozen=True)
class Endpoint:
    url: str
    priority: int = 1
    timeout: float = 10.0


class _Endpoint_Failure(Exception):
    """Internal marker: this endpoint failed, try another one."""

    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(repr(cause))


def _rpc_error_payload(exc: BaseException) -> Dict[str, Any]:
    response = getattr(exc, "rpc_response", None)
    if isinstance(response, dict) and isinstance(response.get("error"), dict):
        return response["error"]
    return {}


def classify_rpc_error(operation: str, exc: BaseException) -> Engine_Error:
    """Map a node's JSON-RPC error onto the engine's error types."""
    if isinstance(exc, ContractLogicError):
        return SimulationRejected(f"{operation} reverted: {exc}")

    payload = _rpc_error_payload(exc)
    message = str(payload.get("message") or exc)
    lowered = message.lower()

    if operation == "send_raw_transaction" and any(marker in lowered for marker in KNOWN_TX_MARKERS):
        return AlreadyKnown(message)
    if any(marker in lowered for marker in SEQUENCE_FAULT_MARKERS):
        return SequenceConflict(message)
    if any(marker in lowered for marker in FUNDS_FAULT_MARKERS):
        return InsufficientFunds(message)
    if operation in ("call", "estimate_gas"):
        return SimulationRejected(message)
    return Remote_Rejected(message)


def _default_client(endpoint: Endpoint) -> AsyncWeb3:
    provider = AsyncHTTPProvider(
        endpoint.url,
        request_kwargs={"timeout": aiohttp.ClientTimeout(total=endpoint.timeout)},
    )
    return AsyncWeb3(provider)


class Endpoint_Pool:
    """
    Prioritized set of JSON-RPC endpoints answering with quorum 1.

    The best endpoint is asked first. A backup joins when every running call
    has failed or the newest one has been silent for ``stall_timeout``. The
    first answer wins. Endpoints that failed recently are tried last.
    """

    PENALTY_TTL: int = 30  # seconds an endpoint stays demoted after a failure

    def __init__(
        self,
        endpoints: Sequence[Endpoint],
        stall_timeout: float = 2.5,
        client_factory: Optional[Callable[[Endpoint], Any]] = None,
    ):
        if not endpoints:
            raise ValueError("Endpoint_Pool needs at least one endpoint")
        self.endpoints: List[Endpoint] = sorted(endpoints, key=lambda e: e.priority)
        self.stall_timeout: float = stall_timeout
        self.client_factory = client_factory or _default_client
        self.clients: Dict[str, Any] = {e.url: self.client_factory(e) for e in self.endpoints}
        self.penalty_box: TTLCache = TTLCache(maxsize=len(self.endpoints), ttl=self.PENALTY_TTL)
        self.failures: Dict[str, int] = {e.url: 0 for e in self.endpoints}

    def ordered_endpoints(self) -> List[Endpoint]:
        return sorted(self.endpoints, key=lambda e: (e.url in self.penalty_box, e.priority))

    async def query(self, operation: str, *args: Any, **kwargs: Any) -> Any:
        """
        Run ``web3.eth.<operation>(*args, **kwargs)`` against the pool.

        :raises TransportExhausted: every endpoint failed.
        :raises TransactionNotFound: the node answered that the hash is unknown.
        :raises Engine_Error: a classified node verdict for authoritative operations.
        """
        errors: Dict[str, BaseException] = {}
        candidates = iter(self.ordered_endpoints())
        running: Dict[asyncio.Task, Endpoint] = {}
        try:
            while True:
                if not running and not self._launch_next(candidates, running, operation, args, kwargs):
                    raise TransportExhausted(operation, errors)

                done, _ = await asyncio.wait(
                    running, timeout=self.stall_timeout, return_when=asyncio.FIRST_COMPLETED
                )
                if not done:
                    self._launch_next(candidates, running, operation, args, kwargs)
                    continue

                for task in done:
                    endpoint = running.pop(task)
                    try:
                        result = task.result()
                    except _Endpoint_Failure as failure:
                        errors[endpoint.url] = failure.cause
                        self._mark_failed(endpoint, failure.cause)
                        continue
                    self._mark_healthy(endpoint)
                    return result
        finally:
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)

    def _launch_next(
        self,
        candidates: Iterator[Endpoint],
        running: Dict[asyncio.Task, Endpoint],
        operation: str,
        args: tuple,
        kwargs: Dict[str, Any],
    ) -> bool:
        endpoint = next(candidates, None)
        if endpoint is None:
            return False
        task = asyncio.create_task(self._attempt(endpoint, operation, args, kwargs))
        running[task] = endpoint
        return True

    async def _attempt(self, endpoint: Endpoint, operation: str, args: tuple, kwargs: Dict[str, Any]) -> Any:
        client = self.clients[endpoint.url]
        try:
            async with async_timeout.timeout(endpoint.timeout):
                return await getattr(client.eth, operation)(*args, **kwargs)
        except (TransactionNotFound, BlockNotFound):
            raise
        except (ContractLogicError, Web3RPCError) as e:
            if operation in AUTHORITATIVE_OPERATIONS:
                raise classify_rpc_error(operation, e) from e
            raise _Endpoint_Failure(e) from e
        except Exception as e:
            raise _Endpoint_Failure(e) from e

    def _mark_failed(self, endpoint: Endpoint, cause: BaseException) -> None:
        self.failures[endpoint.url] = self.failures.get(endpoint.url, 0) + 1
        self.penalty_box[endpoint.url] = True
        logger.debug(f"Endpoint {endpoint.url} failed ({self.failures[endpoint.url]} total): {cause!r}")

    def _mark_healthy(self, endpoint: Endpoint) -> None:
        self.penalty_box.pop(endpoint.url, None)

    async def close(self) -> None:
        for url, client in self.clients.items():
            provider = getattr(client, "provider", None)
            if provider is not None and hasattr(provider, "disconnect"):
                try:
                    await provider.disconnect()
                except Exception as e:
                    logger.debug(f"Error closing {url}: {e}")
