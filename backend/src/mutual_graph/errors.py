"""Error taxonomy shared by the fetch, cache, graph and job layers."""
from typing import Optional


class MutualGraphError(Exception):
    """Base class for mutual-graph errors."""
    pass


class ProviderError(MutualGraphError):
    """Graph data provider error."""
    def __init__(self, status_code: int, message: str, response: dict = None):
        self.status_code = status_code
        self.message = message
        self.response = response or {}
        super().__init__(f"Bluesky API {status_code}: {message}")


class AuthenticationError(ProviderError):
    """Provider rejected our credentials. Never retried automatically."""
    pass


class RateLimitExceeded(ProviderError):
    """Provider kept throttling us after all backoff retries were spent."""
    def __init__(
        self,
        message: str = "Rate limit exceeded and out of retries",
        retry_after: Optional[float] = None,
        response: dict = None
    ):
        self.retry_after = retry_after
        super().__init__(429, message, response)


class TransportError(ProviderError):
    """Network failure or non-throttling provider failure."""
    pass


class ValidationError(MutualGraphError):
    """A record is missing data we need (e.g. a connection without an id)."""
    pass


class QuotaExceededError(MutualGraphError):
    """Daily refresh limit hit for a handle."""
    def __init__(self, handle: str, limit: int):
        self.handle = handle
        self.limit = limit
        super().__init__(f"Daily refresh limit exceeded ({limit} per day) for {handle}")


class GraphInconsistencyError(MutualGraphError):
    """An edge references a node that is not part of the graph."""
    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(f"Edge references missing node: {source} -> {target}")
