"""Translate a client ``Range`` header into a response window."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from .errors import RangeNotSatisfiable
from .models import ByteRange


class ResponseMode(str, enum.Enum):
    FULL = "full"
    PARTIAL = "partial"


@dataclass(frozen=True)
class RangeDecision:
    mode: ResponseMode
    status_code: int
    byte_range: ByteRange | None = None
    headers: dict[str, str] = field(default_factory=dict)


class _Malformed(ValueError):
    pass


def _parse_single_range(range_header: str) -> tuple[int | None, int | None]:
    unit, sep, spec = range_header.partition("=")
    if not sep or unit.strip().lower() != "bytes":
        raise _Malformed(range_header)
    spec = spec.strip()
    if "," in spec or "-" not in spec:
        raise _Malformed(range_header)

    start_str, end_str = (part.strip() for part in spec.split("-", 1))
    if not start_str and not end_str:
        raise _Malformed(range_header)
    for part in (start_str, end_str):
        if part and not (part.isascii() and part.isdigit()):
            raise _Malformed(range_header)

    start = int(start_str) if start_str else None
    end = int(end_str) if end_str else None
    return start, end


def full_response(total_size: int) -> RangeDecision:
    return RangeDecision(
        mode=ResponseMode.FULL,
        status_code=200,
        headers={
            "Content-Length": str(total_size),
            "Accept-Ranges": "bytes",
        },
    )


def translate(range_header: str | None, total_size: int) -> RangeDecision:
    """Compute the response window for ``range_header`` against ``total_size``.

    Only a single contiguous ``bytes=`` window is honoured. Multi-range,
    foreign units and unparseable values are answered with the full object.

    Raises:
        RangeNotSatisfiable: the window starts at or past the end of the
            object, or is empty.
    """
    if not range_header or not range_header.strip():
        return full_response(total_size)

    try:
        start, end = _parse_single_range(range_header)
    except _Malformed:
        return full_response(total_size)

    last = total_size - 1
    if start is None:
        # suffix form: the final ``end`` bytes
        suffix = end or 0
        if suffix == 0:
            raise RangeNotSatisfiable(total_size)
        start = max(total_size - suffix, 0)
        end = last
    else:
        end = last if end is None else min(end, last)

    if start >= total_size or start > end:
        raise RangeNotSatisfiable(total_size)

    byte_range = ByteRange(start, end)
    return RangeDecision(
        mode=ResponseMode.PARTIAL,
        status_code=206,
        byte_range=byte_range,
        headers={
            "Content-Range": byte_range.content_range(total_size),
            "Accept-Ranges": "bytes",
            "Content-Length": str(byte_range.length),
        },
    )


def unsatisfiable_headers(total_size: int) -> dict[str, str]:
    return {"Content-Range": f"bytes */{total_size}", "Accept-Ranges": "bytes"}
