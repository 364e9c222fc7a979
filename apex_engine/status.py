import hmac
import logging
from typing import TYPE_CHECKING, Optional

from aiohttp import web
from web3 import Web3

from apex_engine.errors import Engine_Error
from apex_engine.net import Safety_Net
from apex_engine.state import Engine_State

if TYPE_CHECKING:
    from apex_engine.core import Strike_Core

logger = logging.getLogger("Status_Server")


class Status_Server:
    """
    Read-only reporting over engine state, plus the withdrawal hook.

    Query failures inside a handler turn into an ``ERROR`` status label; they
    never reach the engine.
    """

    def __init__(
        self,
        state: Engine_State,
        safety_net: Safety_Net,
        strike_core: "Strike_Core",
        host: str = "0.0.0.0",
        port: int = 8080,
        admin_token: Optional[str] = None,
    ):
        self.state = state
        self.safety_net = safety_net
        self.strike_core = strike_core
        self.host = host
        self.port = port
        self.admin_token = admin_token
        self.runner: Optional[web.AppRunner] = None

        self.app = web.Application()
        self.app.router.add_get("/status", self.status_handler)
        self.app.router.add_post("/withdraw", self.withdraw_handler)

    async def status_handler(self, request: web.Request) -> web.Response:
        try:
            wallet_balance = await self.safety_net.get_balance()
            contract_balance = await self.strike_core.get_contract_balance()
            return web.json_response({
                "status": self.state.status,
                "wallet_eth": str(Web3.from_wei(wallet_balance, "ether")),
                "contract_weth": str(Web3.from_wei(contract_balance, "ether")),
                "wins": self.state.successful_strikes,
                "in_flight": len(self.strike_core.in_flight),
            })
        except Exception as e:
            logger.debug(f"Status query failed: {e}")
            return web.json_response({"status": "ERROR"})

    async def withdraw_handler(self, request: web.Request) -> web.Response:
        if self.admin_token:
            supplied = request.headers.get("X-Admin-Token", "")
            if not hmac.compare_digest(supplied, self.admin_token):
                return web.json_response({"error": "unauthorized"}, status=401)
        try:
            tx_hash = await self.strike_core.withdraw()
        except Engine_Error as e:
            logger.error(f"Withdrawal failed: {e}")
            return web.json_response({"error": str(e)}, status=502)
        return web.json_response({"tx_hash": tx_hash})

    async def start(self) -> None:
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        logger.info(f"[SYSTEM] Status API live on port {self.port}")

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
