"""
Shared fixtures: an in-memory chain standing in for web3.eth, and fake
websocket sessions for the mempool stream.
"""

import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.typed_transactions import TypedTransaction
from eth_utils import function_signature_to_4byte_selector, keccak
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3RPCError

from apex_engine.abi_registry import ABI_Registry
from apex_engine.configuration import Configuration
from apex_engine.core import Strike_Core
from apex_engine.endpoint_pool import Endpoint, Endpoint_Pool
from apex_engine.errors import StreamDisconnected
from apex_engine.net import Safety_Net
from apex_engine.nonce import Nonce_Core
from apex_engine.state import Engine_State

TEST_KEY = "0x" + "11" * 32
ROUTER = "0xcF77a3Ba9A5CA399B7c97c74d54e5b1Beb874E43"
OTHER_ADDRESS = "0x000000000000000000000000000000000000dEaD"
ONE_ETH = 10**18

BALANCE_SELECTOR = "0x" + function_signature_to_4byte_selector("getContractBalance()").hex()


def rpc_error(message: str) -> Web3RPCError:
    """A JSON-RPC error the way web3 raises it for a node-side failure."""
    return Web3RPCError(
        message,
        rpc_response={"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": message}},
    )


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeChain:
    """
    The parts of ``web3.eth`` the engine uses, backed by dicts.

    ``send_raw_transaction`` enforces nonce order the way a node does: a
    nonce other than the next expected one is refused with "nonce too low"
    or "nonce too high".
    """

    def __init__(self, nonce: int = 7, balance: int = ONE_ETH):
        self.nonce = nonce
        self.balance = balance
        self.base_fee = 10**9
        self.contract_balance = 5 * ONE_ETH
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.receipt_misses: int = 0
        self.call_error: Optional[BaseException] = None
        self.send_errors: List[BaseException] = []
        self.sent: List[Dict[str, Any]] = []
        self.calls: List[Dict[str, Any]] = []
        self.receipt_status: int = 1

    def add_pending(self, tx_hash: str, to: Optional[str] = ROUTER, value: int = ONE_ETH) -> str:
        self.transactions[tx_hash] = {"hash": tx_hash, "to": to, "value": value}
        return tx_hash

    async def get_transaction_count(self, address, block_identifier="latest"):
        return self.nonce

    async def get_balance(self, address, block_identifier=None):
        return self.balance

    async def get_transaction(self, tx_hash):
        if tx_hash not in self.transactions:
            raise TransactionNotFound(f"Transaction with hash: {tx_hash!r} not found.")
        return self.transactions[tx_hash]

    async def get_block(self, block_identifier, full_transactions=False):
        return {"number": 1, "baseFeePerGas": self.base_fee}

    async def call(self, transaction, block_identifier=None):
        self.calls.append(transaction)
        if self.call_error is not None:
            raise self.call_error
        if str(transaction.get("data", "")).startswith(BALANCE_SELECTOR):
            return HexBytes(abi_encode(["uint256"], [self.contract_balance]))
        return HexBytes(b"")

    async def send_raw_transaction(self, raw):
        if self.send_errors:
            raise self.send_errors.pop(0)
        tx = TypedTransaction.from_bytes(HexBytes(raw)).as_dict()
        if tx["nonce"] < self.nonce:
            raise rpc_error("nonce too low")
        if tx["nonce"] > self.nonce:
            raise rpc_error("nonce too high")
        self.nonce += 1
        self.sent.append(tx)
        tx_hash = HexBytes(keccak(HexBytes(raw)))
        self.receipts[Web3.to_hex(tx_hash)] = {"status": self.receipt_status, "transactionHash": tx_hash}
        return tx_hash

    async def get_transaction_receipt(self, tx_hash):
        if self.receipt_misses:
            self.receipt_misses -= 1
            raise TransactionNotFound(f"Transaction with hash: {tx_hash!r} not found.")
        if tx_hash not in self.receipts:
            raise TransactionNotFound(f"Transaction with hash: {tx_hash!r} not found.")
        return self.receipts[tx_hash]


class FailingEth:
    """Every operation fails like an unreachable node."""

    def __init__(self):
        self.attempts = 0

    def __getattr__(self, name):
        async def fail(*args, **kwargs):
            self.attempts += 1
            raise ConnectionError(f"{name}: connection refused")
        return fail


class SlowEth:
    """Every operation hangs longer than any test is willing to wait."""

    def __getattr__(self, name):
        async def hang(*args, **kwargs):
            await asyncio.sleep(3600)
        return hang


class FakeWeb3:
    def __init__(self, eth):
        self.eth = eth


def client_factory(mapping: Dict[str, Any]):
    """Build an Endpoint_Pool client factory from ``{url: eth}``."""
    def factory(endpoint: Endpoint) -> FakeWeb3:
        return FakeWeb3(mapping[endpoint.url])
    return factory


class FakeSession:
    """
    Scripted websocket session. Yields ``hashes`` then either disconnects or,
    with ``hold=True``, stays open until ``close()`` is called.
    """

    def __init__(self, hashes=(), hold: bool = False, fail_open: bool = False):
        self._hashes = list(hashes)
        self.hold = hold
        self.fail_open = fail_open
        self.closed = asyncio.Event()
        self.opened = False

    async def open(self) -> None:
        if self.fail_open:
            raise StreamDisconnected("connection refused")
        self.opened = True

    async def hashes(self):
        for tx_hash in self._hashes:
            yield tx_hash
        if self.hold:
            await self.closed.wait()
        raise StreamDisconnected("socket closed")

    async def close(self) -> None:
        self.closed.set()


class SessionScript:
    """Session factory that hands out sessions in order, then idle ones."""

    def __init__(self, *sessions: FakeSession):
        self.sessions = list(sessions)
        self.created: List[FakeSession] = []

    def __call__(self) -> FakeSession:
        session = self.sessions.pop(0) if self.sessions else FakeSession(hold=True)
        self.created.append(session)
        return session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def account():
    return Account.from_key(TEST_KEY)


@pytest.fixture
def state(account, clock):
    return Engine_State(account=account, clock=clock)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def pool(chain):
    return Endpoint_Pool(
        [Endpoint("http://primary", priority=1, timeout=1.0)],
        stall_timeout=0.5,
        client_factory=client_factory({"http://primary": chain}),
    )


@pytest.fixture
def configuration():
    configuration = Configuration()
    configuration.WALLET_KEY = TEST_KEY
    configuration.CONTRACT_ADDRESS = Web3.to_checksum_address(configuration.CONTRACT_ADDRESS)
    configuration.RECEIPT_POLL_INTERVAL = 0.01
    configuration.MIN_BALANCE_ETH = Decimal("0.001")
    return configuration


@pytest.fixture
async def abi_registry():
    registry = ABI_Registry()
    await registry.initialize()
    return registry


@pytest.fixture
async def nonce_core(pool, state):
    core = Nonce_Core(pool, state.address)
    await core.initialize()
    return core


@pytest.fixture
def safety_net(pool, state, configuration):
    return Safety_Net(
        pool,
        state.address,
        configuration.DEX_ROUTERS.values(),
        min_trigger_value_eth=configuration.MIN_TRIGGER_VALUE_ETH,
        min_balance_eth=configuration.MIN_BALANCE_ETH,
    )


@pytest.fixture
def strike_core(pool, state, nonce_core, safety_net, abi_registry, configuration):
    return Strike_Core(pool, state, nonce_core, safety_net, abi_registry, configuration)
