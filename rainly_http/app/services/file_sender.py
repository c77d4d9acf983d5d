import mimetypes
import re
import secrets
from dataclasses import dataclass
from datetime import timezone
from email.utils import formatdate, parsedate_to_datetime
from pathlib import Path
from typing import AsyncIterator, List, Mapping, Optional

import aiofiles
from fastapi import status
from fastapi.responses import Response, StreamingResponse, PlainTextResponse

import config
from logger_config import setup_logger

logger = setup_logger()

_DIGITS = re.compile(r'^[0-9]+$')


class RangeNotSatisfiable(Exception):
    """The Range header is malformed or none of its ranges overlap the file."""


@dataclass(frozen=True)
class ByteRange:
    start: int
    length: int

    @property
    def end(self) -> int:
        return self.start + self.length - 1

    def content_range(self, size: int) -> str:
        return f"bytes {self.start}-{self.end}/{size}"


def parse_range(header: str, size: int) -> List[ByteRange]:
    """Parse a ``Range: bytes=...`` header against a file of ``size`` bytes.

    Supports ``a-b``, ``a-`` and suffix ``-n`` forms, several of them comma
    separated. Ends past the file are clamped; a range starting at or past
    the end of the file is skipped.

    Raises:
        RangeNotSatisfiable: the header is malformed, or every range starts
            beyond the end of the file.
    """
    if not header.startswith("bytes="):
        raise RangeNotSatisfiable("invalid range")

    ranges = []
    no_overlap = False
    for spec in header[len("bytes="):].split(","):
        spec = spec.strip()
        if not spec:
            continue
        if "-" not in spec:
            raise RangeNotSatisfiable("invalid range")
        start, end = (part.strip() for part in spec.split("-", 1))

        if not start:
            # Suffix range: the last N bytes
            if not _DIGITS.match(end):
                raise RangeNotSatisfiable("invalid range")
            suffix = min(int(end), size)
            if suffix == 0:
                no_overlap = True
                continue
            ranges.append(ByteRange(start=size - suffix, length=suffix))
            continue

        if not _DIGITS.match(start):
            raise RangeNotSatisfiable("invalid range")
        first = int(start)
        if first >= size:
            no_overlap = True
            continue
        if not end:
            ranges.append(ByteRange(start=first, length=size - first))
            continue
        if not _DIGITS.match(end) or first > int(end):
            raise RangeNotSatisfiable("invalid range")
        last = min(int(end), size - 1)
        ranges.append(ByteRange(start=first, length=last - first + 1))

    if no_overlap and not ranges:
        raise RangeNotSatisfiable("invalid range: failed to overlap")
    return ranges


def parse_http_date(value: Optional[str]) -> Optional[int]:
    """Parse an HTTP date into a unix timestamp, None when absent or malformed."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


def if_match_allows(value: Optional[str]) -> bool:
    """Whether an If-Match header is satisfied; only ``*`` can match without ETags."""
    if not value:
        return True
    return any(token.strip() == "*" for token in value.split(","))


def check_preconditions(headers: Mapping[str, str], mtime: int) -> Optional[int]:
    """Return 412 or 304 when a conditional header short-circuits the request."""
    if_match = headers.get("if-match")
    if if_match:
        if not if_match_allows(if_match):
            return status.HTTP_412_PRECONDITION_FAILED
    elif mtime > 0:
        unmodified_since = parse_http_date(headers.get("if-unmodified-since"))
        if unmodified_since is not None and mtime > unmodified_since:
            return status.HTTP_412_PRECONDITION_FAILED

    if mtime > 0 and "if-none-match" not in headers:
        modified_since = parse_http_date(headers.get("if-modified-since"))
        if modified_since is not None and mtime <= modified_since:
            return status.HTTP_304_NOT_MODIFIED
    return None


def if_range_allows(headers: Mapping[str, str], mtime: int) -> bool:
    """Whether a Range header may be honoured given If-Range."""
    value = headers.get("if-range")
    if not value:
        return True
    # No entity tags are issued, so an ETag validator never matches
    if value.startswith('"') or value.startswith("W/"):
        return False
    return mtime > 0 and parse_http_date(value) == mtime


def guess_content_type(filename: str) -> str:
    guessed_type, _ = mimetypes.guess_type(filename)
    return guessed_type or "application/octet-stream"


class FileSender:
    """Serves a file from disk with range and conditional request support."""

    def __init__(self, chunk_size: int = config.CHUNK_SIZE):
        self.chunk_size = chunk_size

    async def _read_span(self, file, start: int, length: int) -> AsyncIterator[bytes]:
        await file.seek(start)
        remaining = length
        while remaining > 0:
            chunk = await file.read(min(self.chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk

    async def _iter_single(self, file, start: int, length: int) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._read_span(file, start, length):
                yield chunk
        finally:
            await file.close()

    async def _iter_multipart(self, file, parts) -> AsyncIterator[bytes]:
        try:
            for header, byte_range in parts:
                yield header
                async for chunk in self._read_span(file, byte_range.start, byte_range.length):
                    yield chunk
        finally:
            await file.close()

    async def send(self, path: Path, headers: Mapping[str, str], stat_result) -> Response:
        """Build the response for a GET of ``path``.

        ``stat_result`` is the already taken stat of the file. Raises OSError
        (PermissionError and friends) when the file can't be opened.
        """
        size = stat_result.st_size
        mtime = int(stat_result.st_mtime)
        content_type = guess_content_type(path.name)
        response_headers = {
            "last-modified": formatdate(mtime, usegmt=True),
            "accept-ranges": "bytes",
        }

        precondition = check_preconditions(headers, mtime)
        if precondition is not None:
            logger.debug(f"Conditional request for {path.name} answered with {precondition}")
            return Response(status_code=precondition, headers=response_headers)

        range_header = headers.get("range")
        ranges: List[ByteRange] = []
        if range_header and if_range_allows(headers, mtime):
            try:
                ranges = parse_range(range_header, size)
            except RangeNotSatisfiable as e:
                return PlainTextResponse(
                    str(e),
                    status_code=416,
                    headers={"content-range": f"bytes */{size}"},
                )
            # Asking for more than the whole file: just send the whole file
            if sum(r.length for r in ranges) > size:
                ranges = []

        file = await aiofiles.open(path, 'rb')

        if not ranges:
            response_headers["content-length"] = str(size)
            return StreamingResponse(
                self._iter_single(file, 0, size),
                media_type=content_type,
                headers=response_headers,
            )

        if len(ranges) == 1:
            byte_range = ranges[0]
            response_headers["content-range"] = byte_range.content_range(size)
            response_headers["content-length"] = str(byte_range.length)
            return StreamingResponse(
                self._iter_single(file, byte_range.start, byte_range.length),
                status_code=status.HTTP_206_PARTIAL_CONTENT,
                media_type=content_type,
                headers=response_headers,
            )

        boundary = secrets.token_hex(16)
        parts = []
        for index, byte_range in enumerate(ranges):
            part_header = (
                ("\r\n" if index else "")
                + f"--{boundary}\r\n"
                + f"Content-Type: {content_type}\r\n"
                + f"Content-Range: {byte_range.content_range(size)}\r\n\r\n"
            ).encode("latin-1")
            parts.append((part_header, byte_range))
        closing = f"\r\n--{boundary}--\r\n".encode("latin-1")
        body_length = sum(len(h) + r.length for h, r in parts) + len(closing)

        async def multipart_body():
            async for chunk in self._iter_multipart(file, parts):
                yield chunk
            yield closing

        response_headers["content-length"] = str(body_length)
        return StreamingResponse(
            multipart_body(),
            status_code=status.HTTP_206_PARTIAL_CONTENT,
            media_type=f"multipart/byteranges; boundary={boundary}",
            headers=response_headers,
        )
