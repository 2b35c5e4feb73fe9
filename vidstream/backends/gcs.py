"""Google Cloud Storage backend."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from functools import partial
from typing import TYPE_CHECKING, Any

from google.api_core.exceptions import GoogleAPIError, NotFound
from google.auth.exceptions import GoogleAuthError
from google.cloud import storage
from google.oauth2 import service_account

from ..errors import BackendUnavailable, ObjectNotFound
from ..locator import normalize_key
from ..models import (
    BackendKind,
    ByteRange,
    ObjectStat,
    OpenedObject,
    RemoteFile,
    RemoteObjectRef,
)
from .base import _run_sync, clamp_range

if TYPE_CHECKING:
    from ..locator import LocatorResolver
    from ..models import UploadTarget
    from ..settings import GCSSettings

LOG = logging.getLogger("vidstream.backends.gcs")

_GCS_ERRORS = (GoogleAPIError, GoogleAuthError, OSError)


def load_credentials_info(raw: str) -> dict[str, Any]:
    """Decode service account JSON given either base64-encoded or verbatim."""
    try:
        decoded = base64.b64decode(raw, validate=True).decode("utf-8")
        return json.loads(decoded)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return json.loads(raw)


class GCSObjectReader:
    """Reads ``[start, start + limit)`` through a buffered ``BlobReader``."""

    def __init__(self, blob_reader: Any, *, limit: int):
        self._reader = blob_reader
        self._remaining = limit

    async def read(self, size: int) -> bytes:
        if self._remaining <= 0:
            return b""
        try:
            chunk = await _run_sync(self._reader.read, min(size, self._remaining))
        except _GCS_ERRORS as error:
            msg = "GCS read failed mid-stream"
            raise BackendUnavailable(msg, detail=str(error)) from error
        self._remaining -= len(chunk)
        return chunk

    async def aclose(self) -> None:
        await _run_sync(self._reader.close)


class GCSBackend:
    kind = BackendKind.GCS

    def __init__(
        self,
        settings: GCSSettings,
        *,
        resolver: LocatorResolver,
        client: Any | None = None,
    ):
        self._settings = settings
        self._resolver = resolver
        self._client = client
        self.bucket = settings.bucket or ""
        self._timeout = (settings.connect_timeout, settings.read_timeout)

    async def startup(self) -> None:
        if self._client is None:
            try:
                self._client = await _run_sync(self._build_client)
            except (GoogleAuthError, OSError, ValueError) as error:
                msg = "GCS client could not be initialised"
                raise BackendUnavailable(msg, detail=str(error)) from error
        LOG.info("GCS backend ready (bucket=%s)", self.bucket)

    async def shutdown(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _build_client(self):
        if self._settings.credentials:
            info = load_credentials_info(self._settings.credentials)
            credentials = service_account.Credentials.from_service_account_info(info)
            LOG.debug("using GCS credentials from environment")
            return storage.Client(
                project=self._settings.project or info.get("project_id"),
                credentials=credentials,
            )
        if self._settings.key_file:
            credentials = service_account.Credentials.from_service_account_file(
                self._settings.key_file
            )
            LOG.debug("using GCS credentials from %s", self._settings.key_file)
            return storage.Client(project=self._settings.project, credentials=credentials)
        return storage.Client(project=self._settings.project)

    @property
    def client(self) -> Any:
        if self._client is None:
            message = "GCS backend not initialised"
            raise RuntimeError(message)
        return self._client

    def _translate_error(self, error: Exception, ref: RemoteObjectRef) -> Exception:
        if isinstance(error, NotFound):
            return ObjectNotFound(f"Object not found: gs://{ref.bucket}/{ref.key}")
        LOG.warning("GCS error for gs://%s/%s: %s", ref.bucket, ref.key, error)
        return BackendUnavailable("GCS storage request failed", detail=str(error))

    async def _get_blob(self, ref: RemoteObjectRef) -> Any:
        bucket = self.client.bucket(ref.bucket)
        try:
            blob = await _run_sync(
                partial(bucket.get_blob, ref.key, timeout=self._timeout)
            )
        except _GCS_ERRORS as error:
            raise self._translate_error(error, ref) from error
        if blob is None:
            raise ObjectNotFound(f"Object not found: gs://{ref.bucket}/{ref.key}")
        return blob

    async def stat(self, ref: RemoteObjectRef) -> ObjectStat:
        blob = await self._get_blob(ref)
        return ObjectStat(size=int(blob.size or 0), content_type=blob.content_type)

    async def open(
        self, ref: RemoteObjectRef, byte_range: ByteRange | None = None
    ) -> OpenedObject:
        blob = await self._get_blob(ref)
        total_size = int(blob.size or 0)
        effective = clamp_range(byte_range, total_size)
        start = effective.start if effective is not None else 0
        limit = effective.length if effective is not None else total_size

        def open_reader() -> Any:
            reader = blob.open(
                "rb",
                chunk_size=self._settings.reader_buffer_size,
                timeout=self._timeout,
                if_generation_match=blob.generation,
            )
            if start:
                reader.seek(start)
            return reader

        try:
            blob_reader = await _run_sync(open_reader)
        except _GCS_ERRORS as error:
            raise self._translate_error(error, ref) from error

        LOG.debug(
            "opened gs://%s/%s start=%s length=%s/%s",
            ref.bucket,
            ref.key,
            start,
            limit,
            total_size,
        )
        return OpenedObject(
            reader=GCSObjectReader(blob_reader, limit=limit),
            total_size=total_size,
            content_type=blob.content_type,
            byte_range=effective,
        )

    async def write(self, target: UploadTarget, buffer: bytes) -> RemoteObjectRef:
        key = normalize_key(target.key)
        blob = self.client.bucket(self.bucket).blob(key)
        try:
            await _run_sync(
                partial(
                    blob.upload_from_string,
                    buffer,
                    content_type=target.mime_type,
                    timeout=self._timeout,
                )
            )
        except _GCS_ERRORS as error:
            LOG.warning("GCS upload failed for gs://%s/%s: %s", self.bucket, key, error)
            msg = "GCS upload failed"
            raise BackendUnavailable(msg, detail=str(error)) from error
        LOG.info("uploaded gs://%s/%s (%d bytes)", self.bucket, key, len(buffer))
        return RemoteObjectRef(
            backend_kind=self.kind,
            locator=self._resolver.public_url(self.kind, self.bucket, key),
            bucket=self.bucket,
            key=key,
            declared_size=len(buffer),
            content_type=target.mime_type,
        )

    async def list(self, folder: str) -> list[RemoteFile]:
        folder = normalize_key(folder).rstrip("/")
        prefix = f"{folder}/" if folder else ""

        def collect() -> list[RemoteFile]:
            blobs = self.client.list_blobs(
                self.bucket, prefix=prefix, delimiter="/", timeout=self._timeout
            )
            return [
                RemoteFile(
                    name=blob.name[len(prefix) :],
                    key=blob.name,
                    size=int(blob.size or 0),
                    url=self._resolver.public_url(self.kind, self.bucket, blob.name),
                )
                for blob in blobs
                if blob.name != prefix
            ]

        try:
            return await _run_sync(collect)
        except _GCS_ERRORS as error:
            msg = "GCS listing failed"
            raise BackendUnavailable(msg, detail=str(error)) from error

    async def delete(self, ref: RemoteObjectRef) -> bool:
        bucket = self.client.bucket(ref.bucket)
        try:
            await _run_sync(partial(bucket.delete_blob, ref.key, timeout=self._timeout))
        except NotFound:
            LOG.info("delete skipped, gs://%s/%s not found", ref.bucket, ref.key)
            return False
        except _GCS_ERRORS as error:
            raise self._translate_error(error, ref) from error
        LOG.info("deleted gs://%s/%s", ref.bucket, ref.key)
        return True
