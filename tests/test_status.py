"""
Tests for the status API and the withdrawal hook.
"""

import pytest
from aiohttp import test_utils

from apex_engine.errors import Remote_Rejected, TransportExhausted
from apex_engine.state import STATUS_HUNTING
from apex_engine.status import Status_Server

from conftest import ONE_ETH


class StubSafetyNet:
    def __init__(self, balance=ONE_ETH):
        self.balance = balance

    async def get_balance(self):
        if isinstance(self.balance, Exception):
            raise self.balance
        return self.balance


class StubStrikeCore:
    def __init__(self):
        self.in_flight = {"0xaa": "awaiting_confirmation"}
        self.withdrawals = 0
        self.withdraw_error = None

    async def get_contract_balance(self):
        return 3 * ONE_ETH // 2

    async def withdraw(self):
        if self.withdraw_error is not None:
            raise self.withdraw_error
        self.withdrawals += 1
        return "0x" + "cd" * 32


@pytest.fixture
def strike_stub():
    return StubStrikeCore()


@pytest.fixture
def net_stub():
    return StubSafetyNet()


async def make_client(state, net_stub, strike_stub, admin_token=None):
    server = Status_Server(state, net_stub, strike_stub, admin_token=admin_token)
    client = test_utils.TestClient(test_utils.TestServer(server.app))
    await client.start_server()
    return client


class TestStatus:
    async def test_reports_engine_state(self, state, net_stub, strike_stub):
        state.status = STATUS_HUNTING
        state.record_success()
        client = await make_client(state, net_stub, strike_stub)
        try:
            resp = await client.get("/status")
            assert resp.status == 200
            body = await resp.json()
        finally:
            await client.close()

        assert body == {
            "status": "HUNTING",
            "wallet_eth": "1",
            "contract_weth": "1.5",
            "wins": 1,
            "in_flight": 1,
        }

    async def test_query_failure_reports_error(self, state, strike_stub):
        client = await make_client(state, StubSafetyNet(TransportExhausted("get_balance")), strike_stub)
        try:
            resp = await client.get("/status")
            assert resp.status == 200
            assert await resp.json() == {"status": "ERROR"}
        finally:
            await client.close()


class TestWithdraw:
    async def test_open_when_no_token(self, state, net_stub, strike_stub):
        client = await make_client(state, net_stub, strike_stub)
        try:
            resp = await client.post("/withdraw")
            assert resp.status == 200
            assert (await resp.json())["tx_hash"].startswith("0x")
        finally:
            await client.close()
        assert strike_stub.withdrawals == 1

    async def test_token_required(self, state, net_stub, strike_stub):
        client = await make_client(state, net_stub, strike_stub, admin_token="s3cret")
        try:
            missing = await client.post("/withdraw")
            wrong = await client.post("/withdraw", headers={"X-Admin-Token": "nope"})
            right = await client.post("/withdraw", headers={"X-Admin-Token": "s3cret"})
            assert (missing.status, wrong.status, right.status) == (401, 401, 200)
        finally:
            await client.close()
        assert strike_stub.withdrawals == 1

    async def test_node_rejection(self, state, net_stub, strike_stub):
        strike_stub.withdraw_error = Remote_Rejected("execution reverted")
        client = await make_client(state, net_stub, strike_stub)
        try:
            resp = await client.post("/withdraw")
            assert resp.status == 502
            assert "reverted" in (await resp.json())["error"]
        finally:
            await client.close()
