"""Locator parsing and public URL construction for the storage backends."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING
from urllib.parse import quote, unquote, urlsplit

from .errors import InvalidLocator
from .models import BackendKind, RemoteObjectRef

if TYPE_CHECKING:
    from .settings import GCSSettings, S3Settings

GCS_SCHEME = "gs://"
S3_SCHEME = "s3://"
GCS_PUBLIC_HOST = "storage.googleapis.com"

_GCS_PATH_HOSTS = frozenset({GCS_PUBLIC_HOST, "storage.cloud.google.com"})
_GCS_VIRTUAL_HOST = re.compile(r"^(?P<bucket>[^/]+)\.storage\.googleapis\.com$")
_S3_VIRTUAL_HOST = re.compile(
    r"^(?P<bucket>[^/]+)\.s3(?:[.-](?:dualstack\.)?[a-z0-9-]+)?\.amazonaws\.com$"
)
_S3_PATH_HOST = re.compile(r"^s3(?:[.-](?:dualstack\.)?[a-z0-9-]+)?\.amazonaws\.com$")


def normalize_key(key: str) -> str:
    key = (key or "").replace("\\", "/").strip()
    while "//" in key:
        key = key.replace("//", "/")
    return key.lstrip("/")


def _split_bucket_path(path: str) -> tuple[str, str]:
    trimmed = path.lstrip("/")
    if "/" not in trimmed:
        return trimmed, ""
    bucket, key = trimmed.split("/", 1)
    return bucket, key


class LocatorResolver:
    """Map opaque stored locators onto backend references and back."""

    def __init__(
        self,
        *,
        default_backend: BackendKind,
        s3: S3Settings,
        gcs: GCSSettings,
    ):
        self._default_backend = default_backend
        self._s3 = s3
        self._gcs = gcs

    def resolve(self, opaque: str) -> RemoteObjectRef:
        raw = (opaque or "").strip()
        if not raw:
            raise InvalidLocator("Empty locator")

        if raw.startswith(GCS_SCHEME):
            bucket, key = _split_bucket_path(raw[len(GCS_SCHEME) :])
            return self._ref(BackendKind.GCS, raw, bucket, key)

        if raw.startswith(S3_SCHEME):
            bucket, key = _split_bucket_path(raw[len(S3_SCHEME) :])
            return self._ref(BackendKind.S3, raw, bucket, key)

        if "://" in raw:
            return self._resolve_url(raw)

        return self._resolve_bare_key(raw)

    def public_url(self, kind: BackendKind, bucket: str, key: str) -> str:
        """Build the URL a client stores and later hands back for streaming."""
        quoted = quote(normalize_key(key), safe="/")
        if kind is BackendKind.GCS:
            return f"https://{GCS_PUBLIC_HOST}/{bucket}/{quoted}"
        if self._s3.public_base_url and bucket == self._s3.bucket:
            return f"{self._s3.public_base_url}/{quoted}"
        if self._s3.endpoint:
            return f"{self._s3.endpoint}/{bucket}/{quoted}"
        return f"https://{bucket}.s3.{self._s3.region}.amazonaws.com/{quoted}"

    def _resolve_url(self, raw: str) -> RemoteObjectRef:
        parts = urlsplit(raw)
        if parts.scheme not in {"http", "https"} or not parts.netloc:
            raise InvalidLocator(f"Unsupported locator scheme: {parts.scheme}")
        host = (parts.hostname or "").lower()
        path = unquote(parts.path)

        if host in _GCS_PATH_HOSTS:
            bucket, key = _split_bucket_path(path)
            return self._ref(BackendKind.GCS, raw, bucket, key)

        if match := _GCS_VIRTUAL_HOST.match(host):
            return self._ref(BackendKind.GCS, raw, match["bucket"], path)

        public_base = self._s3.public_base_url
        if public_base and self._s3.bucket and raw.startswith(f"{public_base}/"):
            key = unquote(urlsplit(raw).path[len(urlsplit(public_base).path) :])
            return self._ref(BackendKind.S3, raw, self._s3.bucket, key)

        endpoint = self._s3.endpoint
        if endpoint and raw.startswith(f"{endpoint}/"):
            relative = urlsplit(raw).path[len(urlsplit(endpoint).path) :]
            bucket, key = _split_bucket_path(unquote(relative))
            return self._ref(BackendKind.S3, raw, bucket, key)

        if match := _S3_VIRTUAL_HOST.match(host):
            return self._ref(BackendKind.S3, raw, match["bucket"], path)

        if _S3_PATH_HOST.match(host):
            bucket, key = _split_bucket_path(path)
            return self._ref(BackendKind.S3, raw, bucket, key)

        raise InvalidLocator(f"Locator host is not a known storage backend: {host}")

    def _resolve_bare_key(self, raw: str) -> RemoteObjectRef:
        kind = self._default_backend
        bucket = self._gcs.bucket if kind is BackendKind.GCS else self._s3.bucket
        if not bucket:
            raise InvalidLocator(
                f"Bare key given but no bucket is configured for {kind.value}"
            )
        return self._ref(kind, raw, bucket, raw)

    def _ref(
        self, kind: BackendKind, raw: str, bucket: str, key: str
    ) -> RemoteObjectRef:
        bucket = bucket.strip()
        key = normalize_key(key)
        if not bucket or not key:
            raise InvalidLocator(f"Locator is missing bucket or key: {raw}")
        return RemoteObjectRef(backend_kind=kind, locator=raw, bucket=bucket, key=key)
