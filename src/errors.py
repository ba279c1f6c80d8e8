"""
Exceptions raised by the scoring engine

The API layer maps these to HTTP responses:
- ValidationError -> 422
- NotFound -> 404
- RateLimited -> 429 with Retry-After
"""


class EngineError(Exception):
    """Base class for engine errors that surface to the caller"""


class ValidationError(EngineError):
    """Malformed rating input (no fields given, or a value outside 0-5)"""


class NotFound(EngineError):
    """Unknown route id"""

    def __init__(self, route_id: str, message: str = None):
        self.route_id = route_id
        super().__init__(message or f"Route {route_id} not found")


class RateLimited(EngineError):
    """Device exceeded its rating window for a route"""

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Too many ratings, retry after {retry_after_seconds}s")
