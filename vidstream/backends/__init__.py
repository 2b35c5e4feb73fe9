"""Storage backends and the registry that owns their clients."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..errors import BackendUnavailable
from ..models import BackendKind
from .base import StorageBackend, clamp_range
from .gcs import GCSBackend
from .s3 import S3Backend

if TYPE_CHECKING:
    from collections.abc import Iterable

    from ..locator import LocatorResolver
    from ..settings import GCSSettings, S3Settings

LOG = logging.getLogger("vidstream.backends")

__all__ = [
    "BackendRegistry",
    "GCSBackend",
    "S3Backend",
    "StorageBackend",
    "clamp_range",
]


class BackendRegistry:
    """Process-wide set of storage backends, one per configured kind.

    Built once at application construction; ``startup`` creates every
    provider client and ``shutdown`` releases them. Requests only ever look
    backends up, so the registry is read-only between the two calls.
    """

    def __init__(self, backends: Iterable[StorageBackend], default: BackendKind):
        self._backends: dict[BackendKind, StorageBackend] = {}
        for backend in backends:
            if backend.kind in self._backends:
                msg = f"duplicate backend for {backend.kind.value}"
                raise ValueError(msg)
            self._backends[backend.kind] = backend
        self.default_kind = default
        self._started = False

    @classmethod
    def from_settings(
        cls,
        *,
        s3: S3Settings,
        gcs: GCSSettings,
        default: BackendKind,
        resolver: LocatorResolver,
    ) -> BackendRegistry:
        backends: list[StorageBackend] = []
        if gcs.enabled:
            backends.append(GCSBackend(gcs, resolver=resolver))
        if s3.enabled:
            backends.append(S3Backend(s3, resolver=resolver))
        return cls(backends, default)

    @property
    def kinds(self) -> list[BackendKind]:
        return list(self._backends)

    @property
    def started(self) -> bool:
        return self._started

    def get(self, kind: BackendKind | None = None) -> StorageBackend:
        kind = kind or self.default_kind
        backend = self._backends.get(kind)
        if backend is None:
            msg = f"Storage backend '{kind.value}' is not configured"
            raise BackendUnavailable(msg)
        return backend

    async def startup(self) -> None:
        if self._started:
            return
        for backend in self._backends.values():
            await backend.startup()
        self._started = True
        LOG.info(
            "storage backends ready: %s (default=%s)",
            ", ".join(kind.value for kind in self._backends) or "none",
            self.default_kind.value,
        )

    async def shutdown(self) -> None:
        for backend in self._backends.values():
            await backend.shutdown()
        self._started = False
