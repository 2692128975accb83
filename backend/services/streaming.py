# backend/services/streaming.py
"""
Wire framing for the long-lived response bodies.

Chat:  <utf-8 display chunks> 0x1E 0x1E <json trailer> \\n
TTS:   repeated <uint32 big-endian length><mp3 bytes>, ended by a zero length
"""
import asyncio
import json
import struct
from typing import AsyncIterator, Dict, List, Optional, Tuple

from starlette.responses import StreamingResponse

from core.config import settings
from core.errors import UpstreamUnavailable

TRAILER_SENTINEL = b"\x1e\x1e"
FRAME_HEADER = struct.Struct(">I")
FRAME_TERMINATOR = FRAME_HEADER.pack(0)

CHAT_MEDIA_TYPE = "text/plain; charset=utf-8"
TTS_MEDIA_TYPE = "application/octet-stream"


def encode_trailer(trailer: Dict) -> bytes:
    return TRAILER_SENTINEL + json.dumps(trailer, ensure_ascii=False, default=str).encode("utf-8") + b"\n"


def split_trailer(body: bytes) -> Tuple[str, Dict]:
    """Display text and trailer of a finished chat body. A missing trailer reads as {}."""
    idx = body.rfind(TRAILER_SENTINEL)
    if idx < 0:
        return body.decode("utf-8", errors="replace"), {}
    text = body[:idx].decode("utf-8", errors="replace")
    raw = body[idx + len(TRAILER_SENTINEL):].strip()
    try:
        trailer = json.loads(raw.decode("utf-8")) if raw else {}
    except ValueError:
        trailer = {}
    return text, trailer if isinstance(trailer, dict) else {}


def encode_frame(data: bytes) -> bytes:
    return FRAME_HEADER.pack(len(data)) + data


def decode_frames(body: bytes) -> List[bytes]:
    """Split a TTS body into frames; stops at the terminator or a truncated frame."""
    frames: List[bytes] = []
    pos = 0
    while pos + FRAME_HEADER.size <= len(body):
        (size,) = FRAME_HEADER.unpack_from(body, pos)
        pos += FRAME_HEADER.size
        if size == 0:
            break
        if pos + size > len(body):
            break
        frames.append(body[pos:pos + size])
        pos += size
    return frames


async def iter_with_timeouts(
    source: AsyncIterator,
    chunk_timeout: Optional[float] = None,
    deadline: Optional[float] = None,
) -> AsyncIterator:
    """
    Re-yield `source`, failing with UpstreamUnavailable when one item takes
    longer than `chunk_timeout` or the loop clock passes `deadline`.
    """
    loop = asyncio.get_running_loop()
    chunk_timeout = chunk_timeout or settings.model_chunk_timeout_seconds
    while True:
        wait = chunk_timeout
        if deadline is not None:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise UpstreamUnavailable(f"request exceeded {settings.max_request_seconds}s")
            wait = min(wait, remaining)
        try:
            item = await asyncio.wait_for(source.__anext__(), timeout=wait)
        except StopAsyncIteration:
            return
        except asyncio.TimeoutError:
            raise UpstreamUnavailable(f"no data from upstream for {wait:.0f}s")
        yield item


async def prefetched_response(
    body: AsyncIterator[bytes],
    media_type: str = CHAT_MEDIA_TYPE,
    headers: Optional[Dict[str, str]] = None,
) -> StreamingResponse:
    """
    Pull the first chunk before the response starts, so anything that fails
    early still becomes a normal HTTP error with a status code.
    """
    try:
        first = await body.__anext__()
    except StopAsyncIteration:
        first = None

    async def relay():
        try:
            if first:
                yield first
            async for chunk in body:
                yield chunk
        finally:
            await body.aclose()

    hdrs = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    hdrs.update(headers or {})
    return StreamingResponse(relay(), media_type=media_type, headers=hdrs)
