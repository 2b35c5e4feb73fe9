from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .backends import BackendRegistry
from .errors import BackendUnavailable, MissingParameter
from .locator import LocatorResolver
from .models import RemoteObjectRef, StreamSession
from .ranges import RangeDecision, ResponseMode, translate
from .relay import StreamRelay, encode_headers
from .settings import (
    AppSettings,
    GCSSettings,
    S3Settings,
    load_app_settings_from_env,
    load_gcs_settings_from_env,
    load_s3_settings_from_env,
)
from .uploads import UploadPipeline

if TYPE_CHECKING:
    from litestar import Request
    from litestar.types import Receive, Send

    from .models import ObjectStat

LOG = logging.getLogger("vidstream.proxy")


class StreamProxy:
    """Serve ranged reads of remote video objects and own the storage backends."""

    def __init__(
        self,
        settings: AppSettings,
        s3: S3Settings,
        gcs: GCSSettings,
        *,
        registry: BackendRegistry | None = None,
    ):
        self.settings = settings
        self.resolver = LocatorResolver(
            default_backend=settings.default_backend, s3=s3, gcs=gcs
        )
        self.registry = registry or BackendRegistry.from_settings(
            s3=s3, gcs=gcs, default=settings.default_backend, resolver=self.resolver
        )
        self.relay = StreamRelay(settings.chunk_size)
        self.uploads = UploadPipeline(self.registry, self.resolver, settings)

    async def startup(self) -> None:
        await self.registry.startup()
        LOG.info(
            "stream proxy ready (env=%s, default backend=%s, chunk=%d)",
            self.settings.environment,
            self.settings.default_backend.value,
            self.settings.chunk_size,
        )

    async def shutdown(self) -> None:
        await self.registry.shutdown()

    def resolve(self, locator: str | None) -> RemoteObjectRef:
        if not locator:
            msg = "The 'url' query parameter is required"
            raise MissingParameter(msg)
        return self.resolver.resolve(locator)

    async def stat(self, ref: RemoteObjectRef) -> ObjectStat:
        return await self.registry.get(ref.backend_kind).stat(ref)

    def response_headers(
        self, ref: RemoteObjectRef, decision: RangeDecision
    ) -> dict[str, str]:
        headers = dict(decision.headers)
        # Backend metadata is not trusted for the media type.
        headers["Content-Type"] = ref.content_type or self.settings.default_content_type
        headers["Cache-Control"] = self.settings.cache_control
        return headers

    async def stream(self, request: Request, send: Send, receive: Receive) -> int:
        """Answer one ``GET``/``HEAD`` stream request.

        Every error raised from here before the relay commits headers is a
        :class:`~vidstream.errors.VidstreamError` the caller can still render.
        """
        ref = self.resolve(request.query_params.get("url"))
        backend = self.registry.get(ref.backend_kind)
        stat = await backend.stat(ref)
        range_header = request.headers.get("range")
        decision = translate(range_header, stat.size)
        headers = self.response_headers(ref, decision)

        LOG.debug(
            "stream %s %s range=%r -> %s",
            request.method,
            ref.locator,
            range_header,
            decision.status_code,
        )

        if request.method == "HEAD":
            await send(
                {
                    "type": "http.response.start",
                    "status": decision.status_code,
                    "headers": encode_headers(headers),
                }
            )
            await send({"type": "http.response.body", "body": b"", "more_body": False})
            return 0

        opened = await backend.open(
            ref,
            decision.byte_range if decision.mode is ResponseMode.PARTIAL else None,
        )
        if opened.total_size != stat.size:
            await opened.reader.aclose()
            msg = "Object changed while the stream was being opened"
            raise BackendUnavailable(msg)
        session = StreamSession(
            ref=ref,
            byte_range=opened.byte_range,
            total_size=opened.total_size,
            reader=opened.reader,
        )
        return await self.relay.relay(
            session, decision.status_code, headers, send, receive
        )

    @classmethod
    def from_env(cls) -> StreamProxy:
        """Create a StreamProxy instance from environment variables.

        Returns:
            StreamProxy configured from environment variables.
        """
        return cls(
            settings=load_app_settings_from_env(),
            s3=load_s3_settings_from_env(),
            gcs=load_gcs_settings_from_env(),
        )
