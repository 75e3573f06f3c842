"""Frame decoder for chat-completions event streams.

Turns the raw byte chunks of a provider response into content deltas.
Parses the line-delimited format:
```
data: {"choices": [{"delta": {"content": "Hel"}}]}

data: {"choices": [{"delta": {"content": "lo"}}]}

data: [DONE]
```

Chunk boundaries carry no meaning: a line may span any number of chunks,
one chunk may hold several lines, and a multi-byte UTF-8 character may be
split between two chunks.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

import httpx

from chatrelay.errors import UpstreamError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SIGNAL = "[DONE]"


def extract_delta(record: Any) -> str | None:
    """Return ``choices[0].delta.content`` when it is a string, else None."""
    try:
        content = record["choices"][0]["delta"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    return content if isinstance(content, str) else None


async def iter_deltas(byte_stream: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Decode a provider byte stream into non-empty content deltas.

    Stops at the ``[DONE]`` sentinel, discarding anything after it. Lines
    that are not data lines, data lines with malformed JSON, and records
    without text content are skipped.

    Raises:
        UpstreamError: If the transport fails or the body cannot be decoded
            while bytes are being read.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    try:
        async for chunk in byte_stream:
            buffer += decoder.decode(chunk)

            while "\n" in buffer:
                line, buffer = buffer.split("\n", 1)
                line = line.strip()

                if not line.startswith(DATA_PREFIX):
                    continue

                data = line[len(DATA_PREFIX):]
                if data == DONE_SIGNAL:
                    return

                try:
                    record = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug("Skipping malformed event line: %.80s", data)
                    continue

                content = extract_delta(record)
                if content:
                    yield content
    except (httpx.HTTPError, httpx.StreamError) as e:
        raise UpstreamError(f"Upstream stream failed: {e}") from e
