import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

from web3 import Web3

from apex_engine.endpoint_pool import Endpoint_Pool

logger = logging.getLogger("Safety_Net")


@dataclass
class Candidate:
    """A pending transaction that passed the opportunity filter."""

    tx_hash: str
    to: str
    value: int
    observed_at: float = field(default_factory=time.time)


def is_opportunity(tx: Mapping[str, Any], routers: Iterable[str], min_value_wei: int) -> bool:
    """
    True when ``tx`` goes to an allow-listed router and carries strictly more
    than ``min_value_wei``. Addresses compare case-insensitively.
    """
    to = tx.get("to")
    if not to:
        return False
    if str(to).lower() not in {router.lower() for router in routers}:
        return False
    return int(tx.get("value") or 0) > min_value_wei


class Safety_Net:
    """
    Candidate gatekeeping: the router/value filter and the gas balance guard.
    """

    def __init__(
        self,
        pool: Endpoint_Pool,
        address: str,
        routers: Iterable[str],
        min_trigger_value_eth: Decimal = Decimal("0.1"),
        min_balance_eth: Decimal = Decimal("0.001"),
    ):
        self.pool = pool
        self.address = address
        self.routers = frozenset(router.lower() for router in routers)
        self.min_value_wei: int = Web3.to_wei(min_trigger_value_eth, "ether")
        self.min_balance_wei: int = Web3.to_wei(min_balance_eth, "ether")
        logger.info("SafetyNet is reporting for duty 🛡️")

    def is_opportunity(self, tx: Mapping[str, Any]) -> bool:
        return is_opportunity(tx, self.routers, self.min_value_wei)

    def to_candidate(self, tx_hash: str, tx: Mapping[str, Any]) -> Optional[Candidate]:
        if not self.is_opportunity(tx):
            return None
        return Candidate(tx_hash=tx_hash, to=str(tx["to"]), value=int(tx["value"]))

    async def get_balance(self) -> int:
        """Signing account balance in wei."""
        return await self.pool.query("get_balance", self.address)

    async def has_gas_reserve(self) -> bool:
        """False when the account cannot be trusted to pay for another strike."""
        balance = await self.get_balance()
        if balance < self.min_balance_wei:
            logger.warning(
                f"Balance {Web3.from_wei(balance, 'ether')} ETH below gas floor "
                f"{Web3.from_wei(self.min_balance_wei, 'ether')} ETH. Skipping."
            )
            return False
        return True
