from types import SimpleNamespace
from typing import Any, List, Optional

from relay.delivery import Outbox


def delta(text):
    return SimpleNamespace(type="response.output_text.delta", delta=text)


def completed():
    return SimpleNamespace(type="response.completed")


class FakeEventStream:
    def __init__(self, events: List[Any]):
        self.events = list(events)
        self.closed = False
        self.consumed = 0

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self.events:
            if isinstance(event, BaseException):
                raise event
            self.consumed += 1
            yield event

    async def close(self):
        self.closed = True


class FakeResponses:
    def __init__(self, result: Any = None, events: Optional[List[Any]] = None, error: Optional[Exception] = None):
        self.result = result
        self.events = events or []
        self.error = error
        self.calls: List[dict] = []
        self.streams: List[FakeEventStream] = []

    async def create(self, **params):
        self.calls.append(params)
        if self.error is not None:
            raise self.error
        if params.get("stream"):
            stream = FakeEventStream(self.events)
            self.streams.append(stream)
            return stream
        return self.result


class FakeClient:
    def __init__(self, **kwargs):
        self.responses = FakeResponses(**kwargs)
        self.closed = False

    async def close(self):
        self.closed = True


class FakeOutbox(Outbox):
    def __init__(self, limit: int = 2000, fail: bool = False):
        self.limit = limit
        self.fail = fail
        self.ops: List[tuple] = []

    def _check(self, text):
        if len(text) > self.limit:
            raise RuntimeError(f"Must be {self.limit} or fewer in length")

    async def send_reply(self, text):
        if self.fail:
            raise RuntimeError("send failed")
        self._check(text)
        self.ops.append(("reply", text))
        return "handle"

    async def edit_message(self, handle, text):
        if self.fail:
            raise RuntimeError("edit failed")
        self._check(text)
        self.ops.append(("edit", text))

    async def send_follow_up(self, text):
        self._check(text)
        self.ops.append(("follow_up", text))

    async def send_typing(self):
        self.ops.append(("typing", None))

    def kinds(self, kind):
        return [text for op, text in self.ops if op == kind]

    @property
    def visible(self):
        shown = [text for op, text in self.ops if op in ("reply", "edit")]
        return shown[-1] if shown else None


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += seconds
