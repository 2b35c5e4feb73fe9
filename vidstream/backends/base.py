from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

from anyio import to_thread

from ..errors import RangeNotSatisfiable
from ..models import ByteRange

if TYPE_CHECKING:
    from collections.abc import Callable

    from ..models import (
        BackendKind,
        ObjectStat,
        OpenedObject,
        RemoteFile,
        RemoteObjectRef,
        UploadTarget,
    )


async def _run_sync(func: Callable[..., Any], /, *args: Any) -> Any:
    return await to_thread.run_sync(func, *args)


def clamp_range(byte_range: ByteRange | None, total_size: int) -> ByteRange | None:
    """Clamp an over-long window to the object; reject one that starts past it."""
    if byte_range is None:
        return None
    if byte_range.start >= total_size:
        raise RangeNotSatisfiable(total_size)
    if byte_range.end >= total_size:
        return ByteRange(byte_range.start, total_size - 1)
    return byte_range


class StorageBackend(Protocol):
    """Capability every storage provider implements.

    ``startup`` builds the provider client once per process and ``shutdown``
    releases it; both are driven by :class:`~vidstream.backends.BackendRegistry`.
    """

    kind: BackendKind
    bucket: str

    async def startup(self) -> None: ...

    async def shutdown(self) -> None: ...

    async def stat(self, ref: RemoteObjectRef) -> ObjectStat: ...

    async def open(
        self, ref: RemoteObjectRef, byte_range: ByteRange | None = None
    ) -> OpenedObject: ...

    async def write(self, target: UploadTarget, buffer: bytes) -> RemoteObjectRef: ...

    async def list(self, folder: str) -> list[RemoteFile]: ...

    async def delete(self, ref: RemoteObjectRef) -> bool: ...
