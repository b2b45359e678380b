"""Serve a cached entry over HTTP with conditional-GET and byte-range support.

Handles If-Modified-Since / If-Unmodified-Since (second granularity, like HTTP
dates), ``Range: bytes=`` with an optional date-form If-Range, and HEAD.
Several ranges are answered as multipart/byteranges unless together they ask
for more bytes than the body holds, in which case the whole body is sent.
Empty bodies ignore Range.
"""

from __future__ import annotations

import email.utils
import mimetypes
import secrets
from typing import Dict, List, Optional, Tuple

from fastapi import Request
from fastapi.responses import Response

from memserve.cache.entry import CacheEntry

_TEXT_TYPES = {"application/javascript", "application/json", "application/xml", "image/svg+xml"}


class RangeNotSatisfiable(Exception):
    pass


def http_date(ts: float) -> str:
    return email.utils.formatdate(ts, usegmt=True)


def parse_http_date(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return email.utils.parsedate_to_datetime(value).timestamp()
    except (TypeError, ValueError, IndexError):
        return None


def content_type_for(name: str) -> str:
    ctype, _ = mimetypes.guess_type(name)
    if ctype is None:
        return "application/octet-stream"
    if ctype.startswith("text/") or ctype in _TEXT_TYPES:
        return f"{ctype}; charset=utf-8"
    return ctype


def parse_range(header: str, size: int) -> List[Tuple[int, int]]:
    """Parse a Range header into inclusive ``(start, end)`` pairs.

    Raises:
        RangeNotSatisfiable: malformed header, or no range overlaps the body.
    """
    unit, sep, ranges_part = header.partition("=")
    if not sep or unit.strip().lower() != "bytes":
        raise RangeNotSatisfiable(header)

    ranges: List[Tuple[int, int]] = []
    for part in ranges_part.split(","):
        part = part.strip()
        if not part:
            continue
        start_s, dash, end_s = part.partition("-")
        start_s, end_s = start_s.strip(), end_s.strip()
        if not dash:
            raise RangeNotSatisfiable(header)

        if not start_s:
            # Suffix form: the last N bytes.
            if not end_s.isdigit():
                raise RangeNotSatisfiable(header)
            length = min(int(end_s), size)
            if length == 0:
                continue
            ranges.append((size - length, size - 1))
            continue

        if not start_s.isdigit():
            raise RangeNotSatisfiable(header)
        start = int(start_s)
        if start >= size:
            continue
        if not end_s:
            end = size - 1
        else:
            if not end_s.isdigit():
                raise RangeNotSatisfiable(header)
            end = int(end_s)
            if end < start:
                raise RangeNotSatisfiable(header)
            end = min(end, size - 1)
        ranges.append((start, end))

    if not ranges:
        raise RangeNotSatisfiable(header)
    return ranges


def multipart_body(content: bytes, ranges: List[Tuple[int, int]], ctype: str, boundary: str) -> bytes:
    size = len(content)
    parts = []
    for start, end in ranges:
        head = (
            f"--{boundary}\r\n"
            f"Content-Range: bytes {start}-{end}/{size}\r\n"
            f"Content-Type: {ctype}\r\n\r\n"
        )
        parts.append(head.encode("ascii") + content[start:end + 1])
    return b"\r\n".join(parts) + f"\r\n--{boundary}--\r\n".encode("ascii")


def _range_applies(request: Request, modified: int) -> bool:
    if_range = request.headers.get("if-range")
    if not if_range:
        return True
    # Only the date form is supported; no ETags are issued.
    ts = parse_http_date(if_range)
    return ts is not None and modified > 0 and int(ts) == modified


def serve_content(request: Request, name: str, entry: CacheEntry) -> Response:
    """Build the response for ``entry`` honouring the request's conditional headers."""
    size = entry.size
    modified = int(entry.mtime)
    headers: Dict[str, str] = {"Accept-Ranges": "bytes"}
    if modified > 0:
        headers["Last-Modified"] = http_date(modified)

    if modified > 0:
        ius = parse_http_date(request.headers.get("if-unmodified-since"))
        if ius is not None and modified > int(ius):
            return Response(status_code=412, headers=headers)

        if request.method in ("GET", "HEAD"):
            ims = parse_http_date(request.headers.get("if-modified-since"))
            if ims is not None and modified <= int(ims):
                return Response(status_code=304, headers=headers)

    ctype = content_type_for(name)
    headers["Content-Type"] = ctype
    status = 200
    body = entry.content

    range_header = request.headers.get("range")
    if range_header and size > 0 and _range_applies(request, modified):
        try:
            ranges = parse_range(range_header, size)
        except RangeNotSatisfiable:
            return Response(
                content=b"requested range not satisfiable",
                status_code=416,
                headers={"Content-Range": f"bytes */{size}", "Content-Type": "text/plain; charset=utf-8"},
            )
        if len(ranges) == 1:
            start, end = ranges[0]
            status = 206
            headers["Content-Range"] = f"bytes {start}-{end}/{size}"
            body = entry.content[start:end + 1]
        elif sum(end - start + 1 for start, end in ranges) <= size:
            boundary = secrets.token_hex(15)
            status = 206
            headers["Content-Type"] = f"multipart/byteranges; boundary={boundary}"
            body = multipart_body(entry.content, ranges, ctype, boundary)

    headers["Content-Length"] = str(len(body))
    if request.method == "HEAD":
        body = b""
    return Response(content=body, status_code=status, headers=headers)
