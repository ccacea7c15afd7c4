"""asyncio adapters for the sessions.

Sessions are synchronous; each store call runs in a worker thread via
``asyncio.to_thread`` and is awaited before the next one is issued, so chunk
order is preserved and the producer/consumer only ever waits on one store
call at a time.
"""

import asyncio
from collections.abc import AsyncIterable, AsyncIterator

from gridstream.reader import ReadSession
from gridstream.schemas import FileMetadata
from gridstream.writer import WriteSession


async def write_from(session: WriteSession, source: AsyncIterable[bytes]) -> FileMetadata:
    """Pump ``source`` into ``session`` and finish it.

    The next buffer is not pulled from ``source`` until the previous one has
    been flushed. On failure the session is left as is; the caller decides
    whether to ``abort()``.
    """
    async for piece in source:
        if piece:
            await asyncio.to_thread(session.write, piece)
    return await asyncio.to_thread(session.end)


async def iter_chunks(session: ReadSession) -> AsyncIterator[bytes]:
    """Yield the session's slices, fetching one chunk per consumer pull."""
    try:
        while True:
            piece = await asyncio.to_thread(session.next_chunk)
            if piece is None:
                return
            yield piece
    finally:
        session.close()
