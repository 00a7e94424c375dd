from __future__ import annotations

import threading
from typing import Optional

import psycopg

from stagevault.config import Settings, get_settings, reset_settings_cache
from stagevault.logging import get_logger
from stagevault.service.eviction import EvictionPolicy
from stagevault.storage.backend import (
    BackendHandle,
    close_backend_handle,
    get_backend_handle,
)
from stagevault.storage.base import StageStore
from stagevault.storage.filesystem import FilesystemStore
from stagevault.storage.postgres import PostgresStore

logger = get_logger(__name__)


def build_store(settings: Settings, backend: BackendHandle) -> StageStore:
    """Pick the store implementation for a resolved backend handle."""
    if backend is not None:
        try:
            return PostgresStore(
                backend,
                settings.shared_fs_root,
                image_base_url=settings.image_base_url,
            )
        except psycopg.Error as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
    return FilesystemStore(settings.shared_fs_root, image_base_url=settings.image_base_url)


class Runtime:
    """Holds the store and eviction policy shared by the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.backend = get_backend_handle(self.settings)
        self.store = build_store(self.settings, self.backend)
        self.eviction = EvictionPolicy(self.store)
        logger.info(
            "runtime_initialized",
            backend=self.store.backend_name,
            shared_fs_root=self.settings.shared_fs_root,
        )

    def close(self) -> None:
        self.store.close()
        close_backend_handle()
        self.backend = None


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def close_runtime() -> None:
    global runtime
    with _runtime_lock:
        current, runtime = runtime, None
    if current is not None:
        current.close()


def reset_runtime_for_tests() -> Runtime:
    """Close the current runtime and build a fresh one from the environment."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
