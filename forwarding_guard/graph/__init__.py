from .client import GraphClient, GraphAPIError, TransientIOError

__all__ = ["GraphClient", "GraphAPIError", "TransientIOError"]
