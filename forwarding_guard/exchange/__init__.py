from .client import ExchangeClient, ExchangeCommandError

__all__ = ["ExchangeClient", "ExchangeCommandError"]
