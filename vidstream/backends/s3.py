"""S3-compatible storage backend (AWS S3, MinIO)."""

from __future__ import annotations

import logging
import re
from functools import partial
from typing import TYPE_CHECKING, Any

from boto3.session import Session
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import BackendUnavailable, ObjectNotFound, RangeNotSatisfiable
from ..locator import normalize_key
from ..models import (
    BackendKind,
    ByteRange,
    ObjectStat,
    OpenedObject,
    RemoteFile,
    RemoteObjectRef,
)
from .base import _run_sync

if TYPE_CHECKING:
    from ..locator import LocatorResolver
    from ..models import UploadTarget
    from ..settings import S3Settings

LOG = logging.getLogger("vidstream.backends.s3")

_MISSING_CODES = frozenset({"404", "NoSuchKey", "NotFound", "NoSuchBucket"})
_CONTENT_RANGE = re.compile(r"^bytes\s+(\d+)-(\d+)/(\d+|\*)$")


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def _parse_content_range(value: str | None) -> tuple[int, int, int | None] | None:
    if not value:
        return None
    match = _CONTENT_RANGE.match(value.strip())
    if match is None:
        return None
    total = None if match[3] == "*" else int(match[3])
    return int(match[1]), int(match[2]), total


class S3ObjectReader:
    """Chunked reader over a ``StreamingBody``.

    ``skip`` and ``limit`` cover servers that ignore the ``Range`` request
    header and answer with the whole object.
    """

    def __init__(self, body: Any, *, skip: int = 0, limit: int | None = None):
        self._body = body
        self._skip = skip
        self._remaining = limit

    async def read(self, size: int) -> bytes:
        if self._remaining is not None and self._remaining <= 0:
            return b""
        try:
            while self._skip > 0:
                discarded = await _run_sync(self._body.read, min(self._skip, size))
                if not discarded:
                    return b""
                self._skip -= len(discarded)
            if self._remaining is not None:
                size = min(size, self._remaining)
            chunk = await _run_sync(self._body.read, size)
        except (BotoCoreError, OSError) as error:
            msg = "S3 read failed mid-stream"
            raise BackendUnavailable(msg, detail=str(error)) from error
        if self._remaining is not None:
            self._remaining -= len(chunk)
        return chunk

    async def aclose(self) -> None:
        await _run_sync(self._body.close)


class S3Backend:
    kind = BackendKind.S3

    def __init__(
        self,
        settings: S3Settings,
        *,
        resolver: LocatorResolver,
        client: Any | None = None,
    ):
        self._settings = settings
        self._resolver = resolver
        self._client = client
        self.bucket = settings.bucket or ""

    async def startup(self) -> None:
        if self._client is None:
            self._client = self._build_client()
        LOG.info(
            "S3 backend ready (endpoint=%s, bucket=%s)",
            self._settings.endpoint or "aws",
            self.bucket,
        )

    async def shutdown(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _build_client(self):
        session = Session(
            aws_access_key_id=self._settings.access_key,
            aws_secret_access_key=self._settings.secret_key,
            aws_session_token=self._settings.session_token,
            region_name=self._settings.region,
        )
        return session.client(
            "s3",
            endpoint_url=self._settings.endpoint,
            config=BotoConfig(
                signature_version="s3v4",
                connect_timeout=self._settings.connect_timeout,
                read_timeout=self._settings.read_timeout,
                retries={"max_attempts": 3},
                s3={"addressing_style": self._settings.addressing_style},
            ),
        )

    @property
    def client(self) -> Any:
        if self._client is None:
            message = "S3 backend not initialised"
            raise RuntimeError(message)
        return self._client

    def _translate_error(self, error: Exception, ref: RemoteObjectRef) -> Exception:
        if isinstance(error, ClientError) and _error_code(error) in _MISSING_CODES:
            return ObjectNotFound(f"Object not found: s3://{ref.bucket}/{ref.key}")
        LOG.warning("S3 error for s3://%s/%s: %s", ref.bucket, ref.key, error)
        return BackendUnavailable("S3 storage request failed", detail=str(error))

    async def stat(self, ref: RemoteObjectRef) -> ObjectStat:
        try:
            result = await _run_sync(
                partial(self.client.head_object, Bucket=ref.bucket, Key=ref.key)
            )
        except (ClientError, BotoCoreError) as error:
            raise self._translate_error(error, ref) from error
        return ObjectStat(
            size=int(result.get("ContentLength", 0)),
            content_type=result.get("ContentType"),
        )

    async def open(
        self, ref: RemoteObjectRef, byte_range: ByteRange | None = None
    ) -> OpenedObject:
        get_kwargs: dict[str, Any] = {"Bucket": ref.bucket, "Key": ref.key}
        if byte_range is not None:
            get_kwargs["Range"] = f"bytes={byte_range.start}-{byte_range.end}"
        try:
            result = await _run_sync(partial(self.client.get_object, **get_kwargs))
        except ClientError as error:
            if _error_code(error) == "InvalidRange":
                stat = await self.stat(ref)
                raise RangeNotSatisfiable(stat.size) from error
            raise self._translate_error(error, ref) from error
        except BotoCoreError as error:
            raise self._translate_error(error, ref) from error

        body = result["Body"]
        content_range = _parse_content_range(result.get("ContentRange"))
        if byte_range is None:
            total_size = int(result.get("ContentLength", 0))
            return OpenedObject(
                reader=S3ObjectReader(body),
                total_size=total_size,
                content_type=result.get("ContentType"),
                byte_range=None,
            )

        if content_range is not None and content_range[2] is not None:
            start, end, total_size = content_range
            effective = ByteRange(start, end)
            reader = S3ObjectReader(body)
        else:
            # Range was ignored upstream; the body is the full object.
            total_size = int(result.get("ContentLength", 0))
            if byte_range.start >= total_size:
                await _run_sync(body.close)
                raise RangeNotSatisfiable(total_size)
            effective = ByteRange(byte_range.start, min(byte_range.end, total_size - 1))
            reader = S3ObjectReader(
                body, skip=effective.start, limit=effective.length
            )

        LOG.debug(
            "opened s3://%s/%s range=%s-%s/%s",
            ref.bucket,
            ref.key,
            effective.start,
            effective.end,
            total_size,
        )
        return OpenedObject(
            reader=reader,
            total_size=total_size,
            content_type=result.get("ContentType"),
            byte_range=effective,
        )

    async def write(self, target: UploadTarget, buffer: bytes) -> RemoteObjectRef:
        key = normalize_key(target.key)
        try:
            await _run_sync(
                partial(
                    self.client.put_object,
                    Bucket=self.bucket,
                    Key=key,
                    Body=buffer,
                    ContentType=target.mime_type,
                )
            )
        except (ClientError, BotoCoreError) as error:
            LOG.warning("S3 upload failed for s3://%s/%s: %s", self.bucket, key, error)
            msg = "S3 upload failed"
            raise BackendUnavailable(msg, detail=str(error)) from error
        LOG.info("uploaded s3://%s/%s (%d bytes)", self.bucket, key, len(buffer))
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
            paginator = self.client.get_paginator("list_objects_v2")
            files: list[RemoteFile] = []
            for page in paginator.paginate(
                Bucket=self.bucket, Prefix=prefix, Delimiter="/"
            ):
                for item in page.get("Contents", []):
                    key = item["Key"]
                    if key == prefix:
                        continue
                    files.append(
                        RemoteFile(
                            name=key[len(prefix) :],
                            key=key,
                            size=int(item.get("Size", 0)),
                            url=self._resolver.public_url(self.kind, self.bucket, key),
                        )
                    )
            return files

        try:
            return await _run_sync(collect)
        except (ClientError, BotoCoreError) as error:
            msg = "S3 listing failed"
            raise BackendUnavailable(msg, detail=str(error)) from error

    async def delete(self, ref: RemoteObjectRef) -> bool:
        # DeleteObject succeeds for missing keys, so probe first.
        try:
            await self.stat(ref)
        except ObjectNotFound:
            LOG.info("delete skipped, s3://%s/%s not found", ref.bucket, ref.key)
            return False
        try:
            await _run_sync(
                partial(self.client.delete_object, Bucket=ref.bucket, Key=ref.key)
            )
        except (ClientError, BotoCoreError) as error:
            raise self._translate_error(error, ref) from error
        LOG.info("deleted s3://%s/%s", ref.bucket, ref.key)
        return True
