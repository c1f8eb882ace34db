"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.store import create_store
from services.blob_store import create_blob_store
from services.coordinator import ArtifactCoordinator
from services.keys import KeyDeriver
from services.lock import DistributedLock
from services.transformer import Transformer


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Database (backs the sql store)
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Key/value store shared by every request
    store = providers.Singleton(
        create_store,
        settings=settings,
        database=database
    )

    lock = providers.Singleton(
        DistributedLock,
        store=store,
        poll_interval_ms=settings.provided.lock_poll_interval_ms,
        wait_timeout_ms=settings.provided.wait_timeout_ms,
    )

    keys = providers.Singleton(
        KeyDeriver,
        namespace=settings.provided.cache_namespace,
        environment=settings.provided.environment,
        public_root=settings.provided.public_root,
    )

    blob_store = providers.Singleton(
        create_blob_store,
        settings=settings
    )

    transformer = providers.Singleton(
        Transformer,
        tmp_dir=settings.provided.tmp_dir
    )

    # Per-request orchestrator
    coordinator = providers.Factory(
        ArtifactCoordinator,
        store=store,
        lock=lock,
        keys=keys,
        blob_store=blob_store,
        transformer=transformer,
        max_rounds=settings.provided.max_lock_rounds,
    )


container = Container()
