"""Engine exception hierarchy."""


class EngineError(Exception):
    """Base class for errors raised by the engine core."""


class EngineNotInitializedError(EngineError):
    def __init__(self) -> None:
        super().__init__("Trading engine not initialized: call initialize() before start()")


class MarketNotFoundError(EngineError):
    def __init__(self, market_id: str) -> None:
        super().__init__(f"Market not found: {market_id}")
        self.market_id = market_id


class SessionError(EngineError):
    """Illegal trading-session lifecycle operation."""


class IllegalTransitionError(EngineError):
    def __init__(self, kind: str, old: str, new: str) -> None:
        super().__init__(f"Illegal {kind} transition: {old} -> {new}")
        self.kind = kind
        self.old = old
        self.new = new
