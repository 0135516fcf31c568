"""Exception types shared by adapters and controllers."""


class MarketdeskError(Exception):
    """Base class for every error raised by this package."""


class ApiError(MarketdeskError):
    def __init__(self, message: str, status_code: int | None = None, payload: dict | None = None):
        self.message = message
        self.status_code = status_code
        self.payload = payload or {}
        super().__init__(message)


class AuthenticationError(ApiError):
    """The backend rejected the session token (HTTP 401)."""


class ConflictError(ApiError):
    """The entity is not in a state that allows the requested change."""


class ValidationError(MarketdeskError):
    def __init__(self, reason: str, field: str | None = None):
        self.reason = reason
        self.field = field
        super().__init__(reason)


class InvalidStateError(MarketdeskError):
    def __init__(self, reason: str, current: str | None = None):
        self.reason = reason
        self.current = current
        super().__init__(reason)


class InvalidTransitionError(InvalidStateError):
    def __init__(self, current: str, target: str):
        self.target = target
        super().__init__(f"Cannot move from '{current}' to '{target}'", current=current)


class ChatGatewayError(MarketdeskError):
    def __init__(self, reason: str, status_code: int | None = None):
        self.reason = reason
        self.status_code = status_code
        super().__init__(reason)
