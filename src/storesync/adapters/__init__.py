"""Remote system adapters."""

from .http_remote_client import HttpRemoteClient

__all__ = ["HttpRemoteClient"]
