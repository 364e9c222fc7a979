import time
from typing import Callable, Optional

from eth_account.signers.local import LocalAccount

STATUS_BOOTING = "BOOTING"
STATUS_HUNTING = "HUNTING"
STATUS_RECONNECTING = "RECONNECTING"
STATUS_STOPPED = "STOPPED"


class Engine_State:
    """
    Process-wide state shared by the engine components.

    Holds the signing account, the success counter and the last-activity
    timestamp. Components receive it by reference; nothing reads it through
    module globals. The sequence counter is owned by Nonce_Core.
    """

    def __init__(
        self,
        account: Optional[LocalAccount] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.account: Optional[LocalAccount] = account
        self.clock = clock
        self.status: str = STATUS_BOOTING
        self.successful_strikes: int = 0
        self.last_activity: float = clock()

    @property
    def address(self) -> str:
        if self.account is None:
            raise RuntimeError("Signing account not loaded")
        return self.account.address

    def touch(self) -> None:
        self.last_activity = self.clock()

    def idle_seconds(self) -> float:
        return self.clock() - self.last_activity

    def record_success(self) -> int:
        self.successful_strikes += 1
        self.touch()
        return self.successful_strikes
