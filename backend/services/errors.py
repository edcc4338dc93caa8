from __future__ import annotations


class StockError(Exception):
    """Base error for the stock engine. Carries the HTTP status it maps to."""

    def __init__(self, message: str, code: int = 500, payload: dict | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.payload = payload

    def to_dict(self) -> dict:
        rv = dict(self.payload or ())
        rv["message"] = self.message
        return rv


class ValidationError(StockError):
    def __init__(self, message: str = "Invalid data", payload: dict | None = None):
        super().__init__(message, code=400, payload=payload)


class InvalidTransitionError(ValidationError):
    def __init__(self, current: str, requested: str, allowed: list[str] | None = None):
        message = f"Invalid status transition from {current} to {requested}"
        if allowed:
            message += f": {current} LPNs can only be updated to {' or '.join(allowed)}"
        super().__init__(message, payload={"from": current, "to": requested})
        self.current = current
        self.requested = requested


class NotFoundError(StockError):
    def __init__(self, message: str = "Not found", payload: dict | None = None):
        super().__init__(message, code=404, payload=payload)


class ForbiddenError(StockError):
    def __init__(self, message: str = "Access denied", payload: dict | None = None):
        super().__init__(message, code=403, payload=payload)


class ConflictError(StockError):
    def __init__(self, message: str = "Conflict", payload: dict | None = None):
        super().__init__(message, code=409, payload=payload)


class PartyResolutionError(StockError):
    """A polymorphic reference cannot be resolved without guessing its collection."""

    def __init__(self, message: str, payload: dict | None = None):
        super().__init__(message, code=422, payload=payload)
