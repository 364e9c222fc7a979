import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Optional

from web3 import AsyncWeb3, Web3, WebSocketProvider

from apex_engine.errors import LivenessTimeout, StreamDisconnected
from apex_engine.state import STATUS_HUNTING, STATUS_RECONNECTING, STATUS_STOPPED, Engine_State

logger = logging.getLogger("Mempool_Monitor")


class Stream_Session:
    """
    One websocket subscription to newPendingTransactions.

    The websockets ping/pong keepalive is the liveness probe. A session is
    never repaired: once it raises StreamDisconnected it is closed and thrown
    away.
    """

    def __init__(self, url: str, heartbeat_interval: float = 30.0):
        self.url = url
        self.web3 = AsyncWeb3(
            WebSocketProvider(
                url,
                websocket_kwargs={
                    "ping_interval": heartbeat_interval,
                    "ping_timeout": heartbeat_interval,
                },
            )
        )
        self.subscription_id: Optional[str] = None

    async def open(self) -> None:
        try:
            await self.web3.provider.connect()
            self.subscription_id = await self.web3.eth.subscribe("newPendingTransactions")
        except Exception as e:
            raise StreamDisconnected(f"Could not open {self.url}: {e}") from e

    async def hashes(self) -> AsyncIterator[str]:
        try:
            async for message in self.web3.socket.process_subscriptions():
                result = message.get("result") if isinstance(message, dict) else None
                if result is not None:
                    yield Web3.to_hex(result)
        except Exception as e:
            raise StreamDisconnected(f"Socket closed: {e}") from e
        raise StreamDisconnected("Subscription ended")

    async def close(self) -> None:
        try:
            await self.web3.provider.disconnect()
        except Exception as e:
            logger.debug(f"Error closing websocket session: {e}")


class Mempool_Monitor:
    """
    Restartable, unbounded stream of pending transaction hashes.

    Only a single live-event URL is used; the endpoint pool's failover covers
    request/response traffic, not this socket. Hashes announced while a
    session is being replaced are lost.
    """

    def __init__(
        self,
        websocket_endpoint: str,
        state: Engine_State,
        heartbeat_interval: float = 30.0,
        reconnect_delay: float = 5.0,
        session_factory: Optional[Callable[[], Any]] = None,
    ):
        self.websocket_endpoint = websocket_endpoint
        self.state = state
        self.heartbeat_interval = heartbeat_interval
        self.reconnect_delay = reconnect_delay
        self.session_factory = session_factory or self._new_session
        self.session: Optional[Any] = None
        self.sessions_opened: int = 0
        self.running: bool = False

    def _new_session(self) -> Stream_Session:
        return Stream_Session(self.websocket_endpoint, self.heartbeat_interval)

    async def stream(self) -> AsyncIterator[str]:
        self.running = True
        while self.running:
            session = self.session_factory()
            try:
                await session.open()
                self.session = session
                self.sessions_opened += 1
                self.state.status = STATUS_HUNTING
                logger.info(f"🔍 SCANNING MEMPOOL: {self.websocket_endpoint[:20]}...")
                async for tx_hash in session.hashes():
                    yield tx_hash
            except StreamDisconnected as e:
                logger.warning(f"🔄 WSS Reset ({e}). Reconnecting...")
            finally:
                self.session = None
                await session.close()

            if self.running:
                self.state.status = STATUS_RECONNECTING
                await asyncio.sleep(self.reconnect_delay)

    async def restart(self) -> None:
        """Drop the current session; ``stream()`` opens a fresh one."""
        session = self.session
        if session is not None:
            logger.info("Tearing down mempool session")
            await session.close()

    async def stop(self) -> None:
        self.running = False
        self.state.status = STATUS_STOPPED
        await self.restart()
        logger.debug("Mempool Monitor stopped gracefully.")


class Liveness_Watchdog:
    """
    Treats a silent mempool feed as a stale connection.

    Every ``check_interval`` seconds it compares the time since the last
    qualifying observation with ``idle_ceiling``. In ``exit`` mode it raises
    LivenessTimeout so the process dies and its supervisor restarts it; in
    ``stream`` mode it only rebuilds the websocket session.
    """

    def __init__(
        self,
        state: Engine_State,
        monitor: Mempool_Monitor,
        check_interval: float = 60.0,
        idle_ceiling: float = 600.0,
        mode: str = "exit",
    ):
        self.state = state
        self.monitor = monitor
        self.check_interval = check_interval
        self.idle_ceiling = idle_ceiling
        self.mode = mode
        self.restarts: int = 0
        self.running: bool = False

    async def check(self) -> bool:
        """Returns True when a stream restart was performed."""
        idle = self.state.idle_seconds()
        logger.info(f"[SCAN] Active. Idle: {idle:.0f}s | Wins: {self.state.successful_strikes}")
        if idle <= self.idle_ceiling:
            return False

        if self.mode == "exit":
            logger.critical("[RESTART] No activity detected. Exiting for resync...")
            raise LivenessTimeout(idle, self.idle_ceiling)

        logger.warning("[RESTART] No activity detected. Rebuilding mempool stream...")
        self.restarts += 1
        await self.monitor.restart()
        self.state.touch()
        return True

    async def run(self) -> None:
        self.running = True
        while self.running:
            await asyncio.sleep(self.check_interval)
            await self.check()

    async def stop(self) -> None:
        self.running = False
