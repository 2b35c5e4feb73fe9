"""Value types shared by the resolver, backends, relay and upload pipeline."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Protocol


class BackendKind(str, enum.Enum):
    GCS = "gcs"
    S3 = "s3"


@dataclass(frozen=True)
class RemoteObjectRef:
    """Immutable pointer to one object held by one storage backend."""

    backend_kind: BackendKind
    locator: str
    bucket: str
    key: str
    declared_size: int | None = None
    content_type: str | None = None


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte window, ``start <= end``."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end < self.start:
            msg = f"invalid byte range {self.start}-{self.end}"
            raise ValueError(msg)

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, total_size: int) -> str:
        return f"bytes {self.start}-{self.end}/{total_size}"


@dataclass(frozen=True)
class ObjectStat:
    size: int
    content_type: str | None = None


class ByteStream(Protocol):
    async def read(self, size: int) -> bytes: ...

    async def aclose(self) -> None: ...


@dataclass
class OpenedObject:
    reader: ByteStream
    total_size: int
    content_type: str | None
    byte_range: ByteRange | None


@dataclass
class StreamSession:
    """State of a single streaming request; never shared or reused."""

    ref: RemoteObjectRef
    byte_range: ByteRange | None
    total_size: int
    reader: ByteStream
    _closed: bool = field(default=False, init=False, repr=False)

    @property
    def closed(self) -> bool:
        return self._closed

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.reader.aclose()

    async def __aenter__(self) -> StreamSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


@dataclass(frozen=True)
class UploadTarget:
    folder: str
    unique_name: str
    size: int
    mime_type: str

    @property
    def key(self) -> str:
        if not self.folder:
            return self.unique_name
        return f"{self.folder}/{self.unique_name}"


@dataclass(frozen=True)
class RemoteFile:
    name: str
    key: str
    size: int
    url: str


@dataclass(frozen=True)
class UploadResult:
    original_name: str
    ref: RemoteObjectRef | None = None
    size: int = 0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.ref is not None


@dataclass
class UploadBatch:
    results: list[UploadResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.results if result.success)


def format_size(size: int) -> str:
    return f"{size / 1024 / 1024:.2f} MB"
