#!/usr/bin/env python3
"""
downloader.py - Source Fetcher with Revision Tag Caching

Opens the content of a single source as an async line stream.

Local sources are read straight from disk. Remote sources are fetched with
a conditional GET carrying the ETag stored by the last successful import,
so an unchanged list is neither downloaded nor parsed again.

Revision tags are stored with double quotes escaped as "<qt>" and are
unescaped before being sent back in If-None-Match.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

import aiofiles
import aiohttp

from ruleimport import __version__
from ruleimport.errors import FetchError
from ruleimport.models import Source

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_TIMEOUT = 30
USER_AGENT = f"ruleimport/{__version__}"

# Stored form of a literal double quote inside a revision tag
QUOTE_ESCAPE = "<qt>"

# Prefix a caching proxy may add to a strong ETag
WEAK_TAG_PREFIX = "W/"


class FetchStatus(Enum):
    """Outcome of opening a source."""
    CHANGED = "changed"
    NOT_MODIFIED = "not_modified"
    FAILED = "failed"


@dataclass
class FetchResult:
    """
    Result of opening a single source.

    Attributes:
        source: The source that was opened
        status: CHANGED, NOT_MODIFIED or FAILED
        revision_tag: Escaped ETag of the new content, if the server sent one
        lines: Raw line stream, only set for CHANGED
        error: Reason for a FAILED status
    """
    source: Source
    status: FetchStatus
    revision_tag: str | None = None
    lines: AsyncIterable[bytes] | None = None
    error: str | None = None


def escape_tag(tag: str | None) -> str | None:
    """Escape a received ETag for storage."""
    return tag.replace('"', QUOTE_ESCAPE) if tag is not None else None


def unescape_tag(tag: str | None) -> str | None:
    """Turn a stored revision tag back into its wire form."""
    return tag.replace(QUOTE_ESCAPE, '"') if tag is not None else None


def is_same_revision(stored: str | None, received: str | None) -> bool:
    """
    Check whether a received ETag names the stored revision.

    Example:
        >>> is_same_revision('"abc"', '"abc"')
        True
        >>> is_same_revision('"abc"', 'W/"abc"')
        True
        >>> is_same_revision(None, '"abc"')
        False
    """
    if not stored or not received:
        return False
    return received == stored or received == WEAK_TAG_PREFIX + stored


def local_path(origin: str) -> Path:
    """Resolve a local origin, plain path or file:// URI, to a filesystem path."""
    parsed = urlparse(origin)
    if parsed.scheme == "file":
        return Path(url2pathname(parsed.path))
    return Path(origin)


@asynccontextmanager
async def _open_local(source: Source) -> AsyncIterator[FetchResult]:
    path = local_path(source.origin)
    try:
        f = await aiofiles.open(path, "rb")
    except OSError as e:
        logger.warning("Opening file of source '%s' failed: %s", source.name, e)
        yield FetchResult(source, FetchStatus.FAILED, error=str(e))
        return

    try:
        yield FetchResult(source, FetchStatus.CHANGED, lines=f)
    finally:
        await f.close()


@asynccontextmanager
async def _open_remote(
    session: aiohttp.ClientSession,
    source: Source,
    timeout: int,
) -> AsyncIterator[FetchResult]:
    stored = unescape_tag(source.revision_tag)
    headers = {"If-None-Match": stored} if stored else {}

    try:
        response = await session.get(
            source.origin,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=None, connect=timeout, sock_read=timeout),
            allow_redirects=True,
        )
    except asyncio.TimeoutError:
        logger.warning("Downloading source '%s' failed (timeout)", source.name)
        yield FetchResult(source, FetchStatus.FAILED, error="Timeout")
        return
    except aiohttp.ClientError as e:
        logger.warning("Downloading source '%s' failed (%s)", source.name, e)
        yield FetchResult(source, FetchStatus.FAILED, error=str(e))
        return

    try:
        received = response.headers.get("ETag")

        # 304 Not Modified, or a server ignoring If-None-Match but sending the same tag
        if response.status == 304 or is_same_revision(stored, received):
            yield FetchResult(source, FetchStatus.NOT_MODIFIED, revision_tag=source.revision_tag)
        elif 200 <= response.status < 300:
            yield FetchResult(
                source,
                FetchStatus.CHANGED,
                revision_tag=escape_tag(received),
                lines=response.content,
            )
        else:
            logger.warning(
                "Downloading source '%s' failed (response=%d)", source.name, response.status
            )
            yield FetchResult(source, FetchStatus.FAILED, error=f"HTTP {response.status}")
    finally:
        response.release()


@asynccontextmanager
async def open_source(
    session: aiohttp.ClientSession,
    source: Source,
    timeout: int = DEFAULT_TIMEOUT,
) -> AsyncIterator[FetchResult]:
    """
    Open a source for reading.

    Failures to open are reported as a FAILED result, never raised. The line
    stream is only valid inside the context.

    Example:
        >>> async with open_source(session, source) as fetched:
        ...     if fetched.status is FetchStatus.CHANGED:
        ...         async for line in iter_lines(fetched):
        ...             print(line)
    """
    if source.is_file_source:
        async with _open_local(source) as result:
            yield result
    else:
        async with _open_remote(session, source, timeout) as result:
            yield result


async def iter_lines(result: FetchResult) -> AsyncIterator[str]:
    """
    Decode the line stream of a CHANGED result.

    Raises:
        FetchError: If the stream breaks off while being read
    """
    try:
        async for raw in result.lines:
            yield raw.decode("utf-8-sig", errors="replace")
    except (OSError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        raise FetchError(f"Reading source '{result.source.name}' failed: {e}") from e
