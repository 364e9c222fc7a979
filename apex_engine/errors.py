from typing import Dict, Optional


class Engine_Error(Exception):
    """Base class for every failure the engine reasons about."""

    def __init__(self, message: str = "Engine error"):
        self.message = message
        super().__init__(self.message)


class TransportExhausted(Engine_Error):
    """Every endpoint in the pool failed the same query."""

    def __init__(self, operation: str, errors: Optional[Dict[str, BaseException]] = None):
        self.operation = operation
        self.errors: Dict[str, BaseException] = errors or {}
        detail = "; ".join(f"{url}: {err!r}" for url, err in self.errors.items())
        super().__init__(f"All endpoints failed for {operation}" + (f" ({detail})" if detail else ""))


class SimulationRejected(Engine_Error):
    """Dry-run reverted. Means "not profitable right now", not a fault."""


class SequenceConflict(Engine_Error):
    """Submission refused because the nonce was stale or already used."""


class AlreadyKnown(Engine_Error):
    """The node already holds this exact signed transaction in its pool."""


class InsufficientFunds(Engine_Error):
    """The signing account cannot cover value plus fees."""


class Remote_Rejected(Engine_Error):
    """Node answered with an error that fits no other category."""


class StreamDisconnected(Engine_Error):
    """Live-event websocket closed."""


class LivenessTimeout(Engine_Error):
    """No qualifying mempool activity within the idle ceiling."""

    def __init__(self, idle_seconds: float, ceiling: float):
        self.idle_seconds = idle_seconds
        self.ceiling = ceiling
        super().__init__(f"No activity for {idle_seconds:.0f}s (ceiling {ceiling:.0f}s)")
