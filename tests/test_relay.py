"""Tests for the streaming relay copy loop."""

from __future__ import annotations

import logging

import anyio
import pytest
from vidstream.errors import BackendUnavailable, StreamAborted
from vidstream.models import BackendKind, ByteRange, RemoteObjectRef, StreamSession
from vidstream.relay import StreamRelay

from .fakes import MemoryReader

MB = 1024 * 1024

REF = RemoteObjectRef(
    backend_kind=BackendKind.GCS,
    locator="gs://media/Videos/clip.mp4",
    bucket="media",
    key="Videos/clip.mp4",
)


class RecordingSend:
    """ASGI ``send`` that records messages and can fail after N body bytes."""

    def __init__(self, fail_after_bytes: int | None = None):
        self.messages: list[dict] = []
        self.body_bytes = 0
        self.fail_after_bytes = fail_after_bytes

    async def __call__(self, message) -> None:
        await anyio.sleep(0)
        if message["type"] == "http.response.body":
            if (
                self.fail_after_bytes is not None
                and self.body_bytes >= self.fail_after_bytes
            ):
                msg = "client went away"
                raise ConnectionResetError(msg)
            self.body_bytes += len(message.get("body", b""))
        self.messages.append(message)

    @property
    def body(self) -> bytes:
        return b"".join(
            m.get("body", b"") for m in self.messages if m["type"] == "http.response.body"
        )

    @property
    def start(self) -> dict | None:
        starts = [m for m in self.messages if m["type"] == "http.response.start"]
        return starts[0] if starts else None


async def never_disconnects():
    await anyio.sleep_forever()


def _session(data: bytes, byte_range: ByteRange | None = None, **reader_kwargs):
    window = data if byte_range is None else data[byte_range.start : byte_range.end + 1]
    reader = MemoryReader(window, **reader_kwargs)
    session = StreamSession(
        ref=REF, byte_range=byte_range, total_size=len(data), reader=reader
    )
    return session, reader


class TestRelay:
    @pytest.mark.anyio
    async def test_full_copy(self):
        data = bytes(range(256)) * 40
        session, reader = _session(data)
        send = RecordingSend()

        sent = await StreamRelay(chunk_size=1000).relay(
            session, 200, {"Content-Length": str(len(data))}, send, never_disconnects
        )

        assert sent == len(data)
        assert send.body == data
        assert send.start["status"] == 200
        assert (b"content-length", str(len(data)).encode()) in send.start["headers"]
        assert send.messages[-1] == {
            "type": "http.response.body",
            "body": b"",
            "more_body": False,
        }
        assert reader.closed
        assert session.closed

    @pytest.mark.anyio
    async def test_partial_copy_is_bounded_to_window(self):
        data = bytes(range(256)) * 40
        window = ByteRange(100, 5099)
        session, reader = _session(data, window)
        send = RecordingSend()

        sent = await StreamRelay(chunk_size=512).relay(session, 206, {}, send)

        assert sent == window.length
        assert send.body == data[100:5100]
        assert reader.reads == -(-window.length // 512) + 1

    @pytest.mark.anyio
    async def test_headers_committed_with_first_chunk(self):
        session, _ = _session(b"abc")
        send = RecordingSend()

        await StreamRelay(chunk_size=2).relay(session, 200, {}, send)

        types = [m["type"] for m in send.messages]
        assert types == [
            "http.response.start",
            "http.response.body",
            "http.response.body",
            "http.response.body",
        ]

    @pytest.mark.anyio
    async def test_empty_object(self):
        session, _ = _session(b"")
        send = RecordingSend()

        sent = await StreamRelay().relay(session, 200, {"Content-Length": "0"}, send)

        assert sent == 0
        assert send.start["status"] == 200
        assert send.body == b""

    @pytest.mark.anyio
    async def test_session_relayed_only_once(self):
        session, _ = _session(b"abc")
        relay = StreamRelay()
        await relay.relay(session, 200, {}, RecordingSend())
        with pytest.raises(RuntimeError):
            await relay.relay(session, 200, {}, RecordingSend())

    def test_chunk_size_must_be_positive(self):
        with pytest.raises(ValueError):
            StreamRelay(chunk_size=0)


class TestClientDisconnect:
    @pytest.mark.anyio
    async def test_write_failure_after_1mb_of_10mb(self, caplog):
        data = b"\x00" * (10 * MB)
        window = ByteRange(0, 10 * MB - 1)
        session, reader = _session(data, window)
        send = RecordingSend(fail_after_bytes=1 * MB)

        with caplog.at_level(logging.INFO, logger="vidstream.relay"):
            sent = await StreamRelay(chunk_size=64 * 1024).relay(
                session, 206, {}, send, never_disconnects
            )

        assert sent == 1 * MB
        assert reader.closed
        # The copy stopped right away instead of draining the backend.
        assert reader.reads == (1 * MB) // (64 * 1024) + 1
        assert not any(
            m.get("more_body") is False
            for m in send.messages
            if m["type"] == "http.response.body"
        )
        assert any("client disconnected" in r.message for r in caplog.records)

    @pytest.mark.anyio
    async def test_disconnect_message_cancels_copy(self):
        data = b"\x01" * (10 * MB)
        session, reader = _session(data)
        send = RecordingSend()

        async def disconnects():
            return {"type": "http.disconnect"}

        sent = await StreamRelay(chunk_size=64 * 1024).relay(
            session, 200, {}, send, disconnects
        )

        assert sent < len(data)
        assert reader.closed

    @pytest.mark.anyio
    async def test_request_messages_are_ignored_until_disconnect(self):
        data = b"\x02" * 4096
        session, _ = _session(data)
        send = RecordingSend()
        messages = iter([{"type": "http.request", "body": b"", "more_body": False}])

        async def receive():
            try:
                return next(messages)
            except StopIteration:
                await anyio.sleep_forever()

        sent = await StreamRelay(chunk_size=1024).relay(session, 200, {}, send, receive)

        assert sent == len(data)


class TestBackendFailure:
    @pytest.mark.anyio
    async def test_failure_before_first_byte_propagates(self):
        session, reader = _session(b"x" * 4096, fail_after=0)
        send = RecordingSend()

        with pytest.raises(BackendUnavailable):
            await StreamRelay(chunk_size=1024).relay(session, 200, {}, send)

        assert send.messages == []
        assert reader.closed

    @pytest.mark.anyio
    async def test_failure_mid_stream_aborts(self, caplog):
        session, reader = _session(b"x" * 8192, fail_after=2048)
        send = RecordingSend()

        with caplog.at_level(logging.ERROR, logger="vidstream.relay"):
            with pytest.raises(StreamAborted) as excinfo:
                await StreamRelay(chunk_size=1024).relay(session, 200, {}, send)

        assert isinstance(excinfo.value.__cause__, BackendUnavailable)
        assert send.start is not None
        assert send.body == b"x" * 2048
        assert reader.closed
        assert any("aborting response" in r.message for r in caplog.records)

    @pytest.mark.anyio
    async def test_truncated_backend_stream_aborts(self):
        reader = MemoryReader(b"x" * 100)
        session = StreamSession(
            ref=REF, byte_range=None, total_size=1000, reader=reader
        )
        send = RecordingSend()

        with pytest.raises(StreamAborted):
            await StreamRelay(chunk_size=64).relay(session, 200, {}, send)

        assert reader.closed


class ExplodingReader(MemoryReader):
    """Reader that raises a non-storage error on a given read."""

    def __init__(self, data: bytes, *, explode_on: int):
        super().__init__(data)
        self.explode_on = explode_on

    async def read(self, size: int) -> bytes:
        if self.reads + 1 >= self.explode_on:
            self.reads += 1
            msg = "boom"
            raise RuntimeError(msg)
        return await super().read(size)


class FailingCloseReader(MemoryReader):
    async def aclose(self) -> None:
        await super().aclose()
        msg = "close fail"
        raise OSError(msg)


class TestUnexpectedErrors:
    @pytest.mark.anyio
    async def test_unexpected_read_error_after_commit_aborts(self):
        reader = ExplodingReader(b"x" * 4096, explode_on=2)
        session = StreamSession(ref=REF, byte_range=None, total_size=4096, reader=reader)
        send = RecordingSend()

        with pytest.raises(StreamAborted) as excinfo:
            await StreamRelay(chunk_size=1024).relay(
                session, 200, {}, send, never_disconnects
            )

        assert isinstance(excinfo.value.__cause__, BackendUnavailable)
        assert isinstance(excinfo.value.__cause__.__cause__, RuntimeError)
        assert send.body == b"x" * 1024
        assert reader.closed

    @pytest.mark.anyio
    async def test_unexpected_read_error_before_commit(self):
        reader = ExplodingReader(b"x" * 4096, explode_on=1)
        session = StreamSession(ref=REF, byte_range=None, total_size=4096, reader=reader)
        send = RecordingSend()

        with pytest.raises(BackendUnavailable):
            await StreamRelay(chunk_size=1024).relay(session, 200, {}, send)

        assert send.messages == []
        assert reader.closed

    @pytest.mark.anyio
    async def test_close_failure_does_not_escape(self, caplog):
        data = b"y" * 3000
        reader = FailingCloseReader(data)
        session = StreamSession(ref=REF, byte_range=None, total_size=len(data), reader=reader)
        send = RecordingSend()

        with caplog.at_level(logging.WARNING, logger="vidstream.relay"):
            sent = await StreamRelay(chunk_size=1024).relay(session, 200, {}, send)

        assert sent == len(data)
        assert send.body == data
        assert send.messages[-1]["more_body"] is False
        assert session.closed
        assert any("closing backend reader failed" in r.message for r in caplog.records)
