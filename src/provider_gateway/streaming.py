from __future__ import annotations

import codecs
import json
import time
import uuid
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from .contracts import StreamChunk


class SSELineBuffer:
    """Reassembles complete lines from arbitrarily split network reads.

    Bytes are decoded incrementally, so a multibyte character cut between two
    reads is not mangled. The trailing partial line stays buffered until the
    next ``feed`` or ``flush``.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        rest = rest.rstrip("\r")
        return [rest] if rest else []


def sse_data(line: str) -> str | None:
    """Payload of a ``data:`` line, ``None`` for comments, events, blanks."""
    if not line.startswith("data:"):
        return None
    data = line[len("data:") :]
    if data.startswith(" "):
        data = data[1:]
    return data


async def aiter_sse_data(byte_chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    buffer = SSELineBuffer()
    async for chunk in byte_chunks:
        for line in buffer.feed(chunk):
            data = sse_data(line)
            if data is not None:
                yield data
    for line in buffer.flush():
        data = sse_data(line)
        if data is not None:
            yield data


def sse_encode(data: str) -> bytes:
    return f"data: {data}\n\n".encode("utf-8")


def openai_chunk(
    *,
    chunk_id: str,
    created: int,
    model: str,
    delta: dict[str, Any],
    finish_reason: str | None = None,
    provider: str | None = None,
) -> dict[str, Any]:
    chunk: dict[str, Any] = {
        "id": chunk_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    if provider is not None:
        chunk["provider"] = provider
    return chunk


async def openai_sse_from_chunks(
    *,
    model: str,
    chunks: AsyncIterator[StreamChunk],
) -> AsyncIterator[bytes]:
    """Re-encode normalized chunks as an OpenAI-style SSE body ending in ``[DONE]``."""
    chunk_id = f"chatcmpl-{uuid.uuid4().hex}"
    created = int(time.time())
    provider: str | None = None
    try:
        yield sse_encode(
            json.dumps(openai_chunk(chunk_id=chunk_id, created=created, model=model, delta={"role": "assistant"}))
        )
        async for piece in chunks:
            if not piece.content:
                continue
            provider = piece.provider
            model = piece.model
            yield sse_encode(
                json.dumps(
                    openai_chunk(
                        chunk_id=chunk_id,
                        created=created,
                        model=model,
                        delta={"content": piece.content},
                        provider=provider,
                    )
                )
            )
        yield sse_encode(
            json.dumps(
                openai_chunk(
                    chunk_id=chunk_id,
                    created=created,
                    model=model,
                    delta={},
                    finish_reason="stop",
                    provider=provider,
                )
            )
        )
        yield sse_encode("[DONE]")
    finally:
        aclose = getattr(chunks, "aclose", None)
        if callable(aclose):
            await aclose()
