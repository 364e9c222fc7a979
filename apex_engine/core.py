import asyncio
import logging
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from cachetools import TTLCache
from eth_account import Account
from web3 import Web3
from web3.exceptions import TransactionNotFound

from apex_engine import __version__
from apex_engine.abi_registry import ABI_Registry
from apex_engine.configuration import Configuration
from apex_engine.constants import (
    ERROR_ABI_LOAD,
    ERROR_CONFIG_LOAD,
    ERROR_CORE_INIT,
    ERROR_LIVENESS,
    ERROR_SHUTDOWN,
    ERROR_STREAM,
    get_error_message,
)
from apex_engine.endpoint_pool import Endpoint, Endpoint_Pool
from apex_engine.errors import (
    AlreadyKnown,
    InsufficientFunds,
    LivenessTimeout,
    Remote_Rejected,
    SequenceConflict,
    SimulationRejected,
    TransportExhausted,
)
from apex_engine.monitor import Liveness_Watchdog, Mempool_Monitor
from apex_engine.net import Candidate, Safety_Net
from apex_engine.nonce import Nonce_Core
from apex_engine.state import STATUS_STOPPED, Engine_State
from apex_engine.status import Status_Server

logger = logging.getLogger("Core")

CONTRACT_ABI = "flash_arbitrage"


class Strike_State(Enum):
    IDLE = "idle"
    SIMULATING = "simulating"
    COMMITTING = "committing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SUCCEEDED = "succeeded"
    REJECTED = "rejected"
    FAILED = "failed"


class Strike_Core:
    """
    Runs one candidate through dry-run, commit and confirmation.

    Dry-runs from different workers overlap freely. The commit step signs
    and submits inside ``Nonce_Core.reserve()`` so nonces reach the network
    in the order they were allocated.
    """

    WITHDRAW_GAS_LIMIT: int = 150_000

    def __init__(
        self,
        pool: Endpoint_Pool,
        state: Engine_State,
        nonce_core: Nonce_Core,
        safety_net: Safety_Net,
        abi_registry: ABI_Registry,
        configuration: Configuration,
    ):
        self.pool = pool
        self.state = state
        self.nonce_core = nonce_core
        self.safety_net = safety_net
        self.abi_registry = abi_registry
        self.in_flight: Dict[str, Strike_State] = {}

        self.contract_address: str = configuration.CONTRACT_ADDRESS
        self.chain_id: int = configuration.CHAIN_ID
        self.gas_limit: int = configuration.GAS_LIMIT
        self.priority_fee: int = Web3.to_wei(configuration.PRIORITY_FEE_GWEI, "gwei")
        self.receipt_poll_interval: float = configuration.RECEIPT_POLL_INTERVAL
        # Off by default: only allocate+submit is serialized and confirmation
        # waits for different candidates overlap.
        self.confirmation_lock: Optional[asyncio.Lock] = (
            asyncio.Lock() if configuration.EXCLUSIVE_CONFIRMATION else None
        )

        # Fixed loan regardless of the triggering trade's size
        self.strike_data: str = abi_registry.encode_call(
            CONTRACT_ABI,
            "executeFlashArbitrage",
            [
                configuration.WETH_ADDRESS,
                configuration.USDC_ADDRESS,
                Web3.to_wei(configuration.FLASH_LOAN_AMOUNT_ETH, "ether"),
            ],
        )

    async def handle_transaction(self, tx_hash: str) -> Strike_State:
        """Look up a pending hash and strike if it qualifies. Never raises."""
        try:
            tx = await self.pool.query("get_transaction", tx_hash)
        except TransactionNotFound:
            return Strike_State.IDLE
        except TransportExhausted as e:
            logger.debug(f"Lookup of {tx_hash} aborted: {e}")
            return Strike_State.IDLE
        if not tx:
            return Strike_State.IDLE

        candidate = self.safety_net.to_candidate(tx_hash, tx)
        if candidate is None:
            return Strike_State.IDLE

        self.state.touch()
        return await self.strike(candidate)

    async def strike(self, candidate: Candidate) -> Strike_State:
        """Drive one candidate to a terminal state."""
        self.in_flight[candidate.tx_hash] = Strike_State.SIMULATING
        try:
            return await self._strike(candidate)
        finally:
            self.in_flight.pop(candidate.tx_hash, None)

    async def _strike(self, candidate: Candidate) -> Strike_State:
        try:
            if not await self.safety_net.has_gas_reserve():
                return Strike_State.REJECTED

            logger.info(f"[🎯 TARGET] Whale: {Web3.from_wei(candidate.value, 'ether')} ETH ({candidate.tx_hash}). Simulating...")
            try:
                await self.simulate()
            except (SimulationRejected, InsufficientFunds) as e:
                logger.debug(f"Dry-run rejected for {candidate.tx_hash}: {e}")
                return Strike_State.REJECTED

            logger.info("[🔥 PROFIT] Bidding for Priority...")
            if self.confirmation_lock is None:
                return await self._commit_and_confirm(candidate)
            async with self.confirmation_lock:
                return await self._commit_and_confirm(candidate)

        except TransportExhausted as e:
            logger.debug(f"Candidate {candidate.tx_hash} aborted: {e}")
            return Strike_State.FAILED
        except Exception as e:
            logger.error(f"Unexpected error striking {candidate.tx_hash}: {e}")
            return Strike_State.FAILED

    async def simulate(self) -> None:
        """Dry-run the arbitrage call. Raises SimulationRejected on revert."""
        await self.pool.query(
            "call",
            {"from": self.state.address, "to": self.contract_address, "data": self.strike_data},
            "latest",
        )

    async def _commit_and_confirm(self, candidate: Candidate) -> Strike_State:
        self.in_flight[candidate.tx_hash] = Strike_State.COMMITTING
        try:
            tx_hash = await self.commit(self.strike_data, self.gas_limit)
        except SequenceConflict as e:
            logger.warning(f"Nonce conflict for {candidate.tx_hash}, counter resynced: {e}")
            return Strike_State.FAILED
        except InsufficientFunds as e:
            logger.warning(f"Insufficient funds to strike {candidate.tx_hash}: {e}")
            return Strike_State.REJECTED
        except Remote_Rejected as e:
            logger.warning(f"Strike for {candidate.tx_hash} rejected by node: {e}")
            return Strike_State.FAILED

        logger.info(f"[🚀 FLASH SENT] Hash: {tx_hash}")
        self.in_flight[candidate.tx_hash] = Strike_State.AWAITING_CONFIRMATION
        return await self.await_confirmation(tx_hash)

    async def commit(self, data: str, gas_limit: int) -> str:
        """Sign and submit a contract call under a fresh nonce."""
        fees = await self._fee_parameters()
        async with self.nonce_core.reserve() as nonce:
            transaction = {
                "type": 2,
                "chainId": self.chain_id,
                "nonce": nonce,
                "to": self.contract_address,
                "value": 0,
                "data": data,
                "gas": gas_limit,
                **fees,
            }
            signed = self.state.account.sign_transaction(transaction)
            try:
                tx_hash = await self.pool.query("send_raw_transaction", signed.raw_transaction)
            except AlreadyKnown:
                # A raced backup saw the copy another endpoint accepted
                tx_hash = signed.hash
                logger.debug(f"Nonce {nonce} already pooled, tracking {Web3.to_hex(tx_hash)}")
            logger.debug(f"Transaction signed and sent: Nonce {nonce}. ✍️")
        return Web3.to_hex(tx_hash)

    async def _fee_parameters(self) -> Dict[str, int]:
        block = await self.pool.query("get_block", "latest")
        base_fee = int(block.get("baseFeePerGas") or 0)
        return {
            "maxPriorityFeePerGas": self.priority_fee,
            "maxFeePerGas": base_fee * 2 + self.priority_fee,
        }

    async def await_confirmation(self, tx_hash: str) -> Strike_State:
        """Poll for the receipt until it appears. There is no timeout."""
        while True:
            try:
                receipt = await self.pool.query("get_transaction_receipt", tx_hash)
            except TransactionNotFound:
                await asyncio.sleep(self.receipt_poll_interval)
                continue
            except TransportExhausted as e:
                logger.warning(f"Lost track of {tx_hash}: {e}")
                return Strike_State.FAILED

            if receipt.get("status") == 1:
                wins = self.state.record_success()
                logger.info(f"[💰 SUCCESS] Profit Secured! Wins: {wins}")
                return Strike_State.SUCCEEDED
            logger.warning(f"Strike {tx_hash} reverted on-chain")
            return Strike_State.FAILED

    async def get_contract_balance(self) -> int:
        data = self.abi_registry.encode_call(CONTRACT_ABI, "getContractBalance")
        raw = await self.pool.query("call", {"to": self.contract_address, "data": data}, "latest")
        return self.abi_registry.decode_output(CONTRACT_ABI, "getContractBalance", raw)[0]

    async def withdraw(self) -> str:
        data = self.abi_registry.encode_call(CONTRACT_ABI, "withdraw")
        tx_hash = await self.commit(data, self.WITHDRAW_GAS_LIMIT)
        logger.info(f"Withdrawal submitted: {tx_hash}")
        return tx_hash


class Main_Core:
    """
    Builds and manages the engine, initializing all components and
    orchestrating the stream pump, strike workers, watchdog and status API.
    """

    SEEN_HASHES_TTL: int = 300

    def __init__(
        self,
        configuration: Configuration,
        client_factory: Optional[Callable[[Endpoint], Any]] = None,
        session_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.configuration = configuration
        self.client_factory = client_factory
        self.session_factory = session_factory
        self.state = Engine_State()
        self.running: bool = False
        self.stopped: bool = False
        self.shutdown_complete = asyncio.Event()
        self.exit_code: int = 0
        self.tasks: List[asyncio.Task] = []
        self.seen_hashes: TTLCache = TTLCache(maxsize=100_000, ttl=self.SEEN_HASHES_TTL)
        self.dropped_hashes: int = 0
        self.components: Dict[str, Any] = {
            "abi_registry": None,
            "endpoint_pool": None,
            "nonce_core": None,
            "safety_net": None,
            "strike_core": None,
            "mempool_monitor": None,
            "watchdog": None,
            "status_server": None,
        }

    async def initialize(self) -> None:
        """Initialize all components in dependency order."""
        try:
            await self._load_configuration()
            configuration = self.configuration
            self.state.account = Account.from_key(configuration.WALLET_KEY)

            abi_registry = ABI_Registry()
            try:
                await abi_registry.initialize()
            except Exception as e:
                logger.critical(f"{get_error_message(ERROR_ABI_LOAD)}: {e}")
                raise
            self.components["abi_registry"] = abi_registry

            pool = Endpoint_Pool(
                configuration.get_endpoints(),
                stall_timeout=configuration.STALL_TIMEOUT,
                client_factory=self.client_factory,
            )
            self.components["endpoint_pool"] = pool

            nonce_core = Nonce_Core(pool, self.state.address)
            self.components["nonce_core"] = nonce_core

            safety_net = Safety_Net(
                pool,
                self.state.address,
                configuration.DEX_ROUTERS.values(),
                min_trigger_value_eth=configuration.MIN_TRIGGER_VALUE_ETH,
                min_balance_eth=configuration.MIN_BALANCE_ETH,
            )
            self.components["safety_net"] = safety_net

            await self._boot()

            strike_core = Strike_Core(pool, self.state, nonce_core, safety_net, abi_registry, configuration)
            self.components["strike_core"] = strike_core

            monitor = Mempool_Monitor(
                configuration.WEBSOCKET_ENDPOINT,
                self.state,
                heartbeat_interval=configuration.HEARTBEAT_INTERVAL,
                reconnect_delay=configuration.RECONNECT_DELAY,
                session_factory=self.session_factory,
            )
            self.components["mempool_monitor"] = monitor

            self.components["watchdog"] = Liveness_Watchdog(
                self.state,
                monitor,
                check_interval=configuration.WATCHDOG_INTERVAL,
                idle_ceiling=configuration.IDLE_CEILING,
                mode=configuration.WATCHDOG_MODE,
            )
            self.components["status_server"] = Status_Server(
                self.state,
                safety_net,
                strike_core,
                host=configuration.HOST,
                port=configuration.PORT,
                admin_token=configuration.ADMIN_TOKEN,
            )
            logger.info("All components initialized successfully ✅")
        except Exception as e:
            logger.critical(f"{get_error_message(ERROR_CORE_INIT)}: {e}")
            raise

    async def _load_configuration(self) -> None:
        try:
            await self.configuration.load()
            logging.getLogger().setLevel(self.configuration.LOG_LEVEL)
            logger.debug("Configuration loaded ✅ ")
        except Exception as e:
            logger.critical(f"{get_error_message(ERROR_CONFIG_LOAD)}: {e}")
            raise

    async def _boot(self) -> None:
        """Read the starting nonce and balance, retrying until the pool answers."""
        nonce_core: Nonce_Core = self.components["nonce_core"]
        safety_net: Safety_Net = self.components["safety_net"]
        while True:
            try:
                await nonce_core.initialize()
                balance = await safety_net.get_balance()
                break
            except TransportExhausted as e:
                logger.warning(f"[RETRY] Boot failed: {e}. Retrying...")
                await asyncio.sleep(self.configuration.BOOT_RETRY_DELAY)

        logger.info(f"--- ENGINE ONLINE (v{__version__}) ---")
        logger.info(f"[WALLET] ETH: {Web3.from_wei(balance, 'ether')}")
        logger.info(f"[NONCE] Current: {nonce_core.nonce}")
        if Web3.from_wei(balance, "ether") < Decimal("0.01"):
            logger.warning("Low account balance (<0.01 ETH)")

    async def run(self) -> None:
        """Main execution loop. Returns when stopped or when a fatal task fails."""
        if self.stopped:
            return
        self.running = True
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.configuration.QUEUE_SIZE)
        status_server: Status_Server = self.components["status_server"]
        await status_server.start()

        try:
            async with asyncio.TaskGroup() as tg:
                self.tasks.append(tg.create_task(self._pump_stream(queue)))
                for _ in range(self.configuration.MAX_PARALLEL_TASKS):
                    self.tasks.append(tg.create_task(self._strike_worker(queue)))
                self.tasks.append(tg.create_task(self.components["watchdog"].run()))
        except* LivenessTimeout as group:
            logger.critical(f"{get_error_message(ERROR_LIVENESS)}: {group.exceptions[0]}")
            self.exit_code = 1
        except* Exception as group:
            for error in group.exceptions:
                logger.error(f"{get_error_message(ERROR_STREAM)}: {error!r}")
            self.exit_code = 1
        finally:
            await self.stop()

    async def _pump_stream(self, queue: asyncio.Queue) -> None:
        """Move hashes from the mempool stream into the bounded work queue."""
        monitor: Mempool_Monitor = self.components["mempool_monitor"]
        async for tx_hash in monitor.stream():
            if tx_hash in self.seen_hashes:
                continue
            self.seen_hashes[tx_hash] = True
            try:
                queue.put_nowait(tx_hash)
            except asyncio.QueueFull:
                self.dropped_hashes += 1
                if self.dropped_hashes % 1000 == 1:
                    logger.warning(f"Work queue full, {self.dropped_hashes} hashes dropped so far")

    async def _strike_worker(self, queue: asyncio.Queue) -> None:
        strike_core: Strike_Core = self.components["strike_core"]
        while self.running:
            tx_hash = await queue.get()
            try:
                await strike_core.handle_transaction(tx_hash)
            except Exception as e:
                logger.error(f"Error processing transaction {tx_hash}: {e}")
            finally:
                queue.task_done()

    async def stop(self) -> None:
        """
        Gracefully stop all components in the correct order.

        Later callers wait for the first shutdown to finish.
        """
        if self.stopped:
            await self.shutdown_complete.wait()
            return
        self.stopped = True
        try:
            await self._shutdown()
        finally:
            self.shutdown_complete.set()

    async def _shutdown(self) -> None:
        logger.warning("Shutting down Core...")
        self.running = False

        for task in self.tasks:
            task.cancel()
        self.tasks.clear()

        for name in ("mempool_monitor", "watchdog", "status_server", "nonce_core", "endpoint_pool"):
            component = self.components.get(name)
            if component is None:
                continue
            try:
                if name == "endpoint_pool":
                    await component.close()
                else:
                    await component.stop()
                logger.debug(f"Stopped {name}")
            except Exception as e:
                logger.error(f"{get_error_message(ERROR_SHUTDOWN)} ({name}): {e}")

        self.state.status = STATUS_STOPPED
        logger.debug("Core shutdown complete.")
