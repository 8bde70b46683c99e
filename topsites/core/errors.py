"""Base error type for failures surfaced by the /cid dispatcher."""


class ProxyError(Exception):
    """Raised for request failures that map to a structured error response."""

    status_code = 500
