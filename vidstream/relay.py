from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import anyio

from .errors import BackendUnavailable, ClientDisconnected, StreamAborted, VidstreamError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from litestar.types import Message, Receive, Send

    from .models import StreamSession

LOG = logging.getLogger("vidstream.relay")

DEFAULT_CHUNK_SIZE = 64 * 1024

_CLIENT_GONE = (OSError, anyio.BrokenResourceError, anyio.ClosedResourceError)


@dataclass
class _RelayState:
    sent: int = 0
    committed: bool = False
    disconnected: bool = False
    failure: VidstreamError | None = None


def encode_headers(headers: Mapping[str, str]) -> list[tuple[bytes, bytes]]:
    return [
        (key.lower().encode("latin-1"), str(value).encode("latin-1"))
        for key, value in headers.items()
    ]


class StreamRelay:
    """Copy a backend stream into an ASGI response, one bounded chunk at a time.

    Response headers are committed together with the first chunk, so a
    backend that fails before yielding anything can still be answered with
    an error response. Once committed, a backend failure can only abort the
    response. A client that goes away stops the copy at the next chunk
    boundary, or immediately when the server reports ``http.disconnect``.
    """

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size <= 0:
            msg = "chunk_size must be positive"
            raise ValueError(msg)
        self.chunk_size = chunk_size

    async def relay(
        self,
        session: StreamSession,
        status_code: int,
        headers: Mapping[str, str],
        send: Send,
        receive: Receive | None = None,
    ) -> int:
        """Relay ``session`` and return the number of body bytes written.

        Raises:
            BackendUnavailable: the backend failed before any byte was sent.
            StreamAborted: the backend failed after headers were committed.
        """
        if session.closed:
            msg = "stream session already consumed"
            raise RuntimeError(msg)

        state = _RelayState()
        expected = (
            session.byte_range.length
            if session.byte_range is not None
            else session.total_size
        )
        start_message: Message = {
            "type": "http.response.start",
            "status": status_code,
            "headers": encode_headers(headers),
        }

        try:
            async with anyio.create_task_group() as tg:
                if receive is not None:
                    tg.start_soon(self._watch_disconnect, receive, tg.cancel_scope, state)
                await self._copy(session, start_message, expected, send, state)
                tg.cancel_scope.cancel()
        finally:
            with anyio.CancelScope(shield=True):
                await self._close(session)

        if state.failure is not None:
            if not state.committed:
                raise state.failure
            LOG.error(
                "backend failed after %d of %d bytes for %s, aborting response",
                state.sent,
                expected,
                session.ref.locator,
                exc_info=state.failure,
            )
            msg = "stream aborted after headers were sent"
            raise StreamAborted(msg) from state.failure

        if state.disconnected:
            LOG.info(
                "client disconnected after %d of %d bytes for %s",
                state.sent,
                expected,
                session.ref.locator,
            )
        else:
            LOG.debug("relayed %d bytes for %s", state.sent, session.ref.locator)
        return state.sent

    async def _copy(
        self,
        session: StreamSession,
        start_message: Message,
        expected: int,
        send: Send,
        state: _RelayState,
    ) -> None:
        try:
            while True:
                try:
                    chunk = await session.reader.read(self.chunk_size)
                except VidstreamError as error:
                    state.failure = error
                    return
                except Exception as error:
                    msg = "backend read failed"
                    failure = BackendUnavailable(msg, detail=str(error))
                    failure.__cause__ = error
                    state.failure = failure
                    return

                if not state.committed:
                    await self._send(send, start_message)
                    state.committed = True

                if not chunk:
                    if state.sent < expected:
                        msg = f"backend stream ended early at {state.sent} of {expected} bytes"
                        state.failure = BackendUnavailable(msg)
                        return
                    await self._send(
                        send,
                        {"type": "http.response.body", "body": b"", "more_body": False},
                    )
                    return

                await self._send(
                    send,
                    {"type": "http.response.body", "body": chunk, "more_body": True},
                )
                state.sent += len(chunk)
        except ClientDisconnected:
            state.disconnected = True

    @staticmethod
    async def _close(session: StreamSession) -> None:
        try:
            await session.aclose()
        except Exception:
            LOG.warning(
                "closing backend reader failed for %s", session.ref.locator, exc_info=True
            )

    @staticmethod
    async def _send(send: Send, message: Message) -> None:
        try:
            await send(message)
        except _CLIENT_GONE as error:
            raise ClientDisconnected(str(error) or type(error).__name__) from error

    @staticmethod
    async def _watch_disconnect(
        receive: Receive, scope: anyio.CancelScope, state: _RelayState
    ) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                state.disconnected = True
                scope.cancel()
                return
