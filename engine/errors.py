from __future__ import annotations


class EngineError(Exception):
    pass


class ConfigurationError(EngineError):
    """A required collaborator is missing or misconfigured. Aborts the whole pass."""


class ValidationError(EngineError, ValueError):
    """Malformed input for a single unit (symbol, price, size). Rejects that unit only."""


class CollaboratorError(EngineError):
    """Market data, broker or store call failed."""


class InvalidTransition(EngineError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid order status transition: {current} -> {target}")
        self.current = current
        self.target = target


class PositionClosed(EngineError):
    def __init__(self, position_id: str) -> None:
        super().__init__(f"Position already closed: {position_id}")
        self.position_id = position_id
