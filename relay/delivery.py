import abc
import logging
import time
from typing import Any, AsyncIterable, Callable, List, Optional

log = logging.getLogger(__name__)

EMPTY_PLACEHOLDER = "∅"
PENDING_TEXT = "⏳ …"


def chunk_text(text: str, limit: int) -> List[str]:
    """Cut ``text`` into contiguous pieces of at most ``limit`` characters."""

    if limit <= 0:
        raise ValueError("limit must be positive")
    text = text or ""
    if len(text) <= limit:
        return [text]
    return [text[i : i + limit] for i in range(0, len(text), limit)]


class Outbox(abc.ABC):
    """Outgoing message operations of a platform for one trigger."""

    limit: int = 2000

    @abc.abstractmethod
    async def send_reply(self, text: str) -> Any:
        """Post the reply and return a handle that ``edit_message`` accepts."""

    @abc.abstractmethod
    async def edit_message(self, handle: Any, text: str) -> None:
        ...

    @abc.abstractmethod
    async def send_follow_up(self, text: str) -> None:
        ...

    async def send_typing(self) -> None:
        return None


class DeliveryController:
    """Renders generated text inside a platform's size and edit-rate limits."""

    def __init__(self, min_interval: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.min_interval = min_interval
        self.clock = clock

    async def stream(self, outbox: Outbox, handle: Any, snapshots: AsyncIterable[str]) -> str:
        """Follow a stream of partial snapshots with throttled edits.

        Snapshots arriving before ``min_interval`` has passed are dropped;
        the next edit always shows the newest one. Returns the final text
        after it has been delivered in full.
        """

        last_edit = self.clock()
        shown = PENDING_TEXT
        latest = ""
        edits = 0
        async for partial in snapshots:
            latest = partial
            now = self.clock()
            if now - last_edit < self.min_interval:
                continue
            preview = partial[: outbox.limit]
            if preview and preview != shown:
                await outbox.edit_message(handle, preview)
                shown = preview
                edits += 1
            last_edit = now
        final = getattr(snapshots, "text", latest)
        log.debug("stream finished after %d edits (%d chars)", edits, len(final))
        await self.finish(outbox, handle, final, shown=shown)
        return final or EMPTY_PLACEHOLDER

    async def finish(self, outbox: Outbox, handle: Any, text: str, *, shown: Optional[str] = None) -> None:
        chunks = chunk_text(text or EMPTY_PLACEHOLDER, outbox.limit)
        if chunks[0] != shown:
            await outbox.edit_message(handle, chunks[0])
        for chunk in chunks[1:]:
            await outbox.send_follow_up(chunk)

    async def deliver(self, outbox: Outbox, text: str, handle: Any = None) -> Any:
        chunks = chunk_text(text or EMPTY_PLACEHOLDER, outbox.limit)
        if handle is None:
            handle = await outbox.send_reply(chunks[0])
        else:
            await outbox.edit_message(handle, chunks[0])
        for chunk in chunks[1:]:
            await outbox.send_follow_up(chunk)
        return handle
