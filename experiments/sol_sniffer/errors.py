from typing import Any, Optional


class SnifferError(Exception):
    pass


class ConfigError(SnifferError):
    """Invalid or missing configuration. Fatal at startup."""


class TransportError(SnifferError):
    pass


class NotConnectedError(TransportError):
    pass


class MaxRetriesExceededError(TransportError):
    def __init__(self, retries: int):
        super().__init__(f"gave up reconnecting after {retries} attempts")
        self.retries = retries


class RpcError(SnifferError):
    pass


class UpstreamError(RpcError):
    def __init__(self, code: Optional[int], body: Any = None):
        super().__init__(f"RPC error {code}: {body}")
        self.code = code
        self.body = body


class RateLimitError(UpstreamError):
    pass


class TransientRequestError(RpcError):
    pass


class RetriesExhaustedError(RpcError):
    def __init__(self, method: str, last_error: Exception):
        super().__init__(f"{method} failed after exhausting retries: {last_error}")
        self.method = method
        self.last_error = last_error
