"""Construction of the engine and its collaborators.

The engine is built once at process start from settings and passed down;
nothing in the package reaches for a global instance.
"""

import importlib
import logging
from typing import Optional

from .adapters.http_remote_client import HttpRemoteClient
from .config import SyncSettings
from .sync.database import SyncDatabase
from .sync.engine import SyncEngine
from .sync.local_store import JsonFileLocalStore, LocalStore
from .sync.remote import RemoteClient


logger = logging.getLogger(__name__)


def load_local_store(settings: SyncSettings) -> LocalStore:
    """Instantiate the configured local store.

    ``local_store_factory`` is a ``"module:callable"`` path called with the
    settings; without one, records live in a JSON file in the data directory.
    """
    if not settings.local_store_factory:
        return JsonFileLocalStore(settings.local_records_path)

    module_name, _, attr = settings.local_store_factory.partition(":")
    if not attr:
        raise ValueError(f"local_store_factory must look like 'module:callable', got {settings.local_store_factory!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    logger.debug(f"Using local store factory {settings.local_store_factory}")
    return factory(settings)


def build_remote_client(settings: SyncSettings) -> HttpRemoteClient:
    credentials = settings.credentials
    return HttpRemoteClient(
        access_token=credentials.access_token or "",
        environment=credentials.environment.value,
        location_id=credentials.location_id,
        timeout=settings.request_timeout,
        requests_per_minute=settings.requests_per_minute,
    )


def build_engine(settings: SyncSettings, local_store: Optional[LocalStore] = None,
                 remote: Optional[RemoteClient] = None) -> SyncEngine:
    """Wire a SyncEngine from settings.

    Args:
        settings: Loaded settings
        local_store: Local store override, defaults to the configured one
        remote: Remote client override, defaults to HttpRemoteClient
    """
    database = SyncDatabase(settings.database_path)
    return SyncEngine(
        settings=settings,
        remote=remote or build_remote_client(settings),
        local_store=local_store or load_local_store(settings),
        database=database,
    )
