import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import openai
from openai import AsyncOpenAI

log = logging.getLogger(__name__)

NO_CONTENT = "(no content)"

DELTA_EVENT = "response.output_text.delta"
COMPLETED_EVENT = "response.completed"
INCOMPLETE_EVENT = "response.incomplete"
FAILURE_EVENTS = ("error", "response.failed")


class GenerationError(Exception):
    """The generation service failed or sent something we cannot read."""


def _output_text(response: Any) -> Optional[str]:
    value = getattr(response, "output_text", None)
    return value if isinstance(value, str) else None


def _first_message_text(response: Any) -> Optional[str]:
    for item in getattr(response, "output", None) or []:
        if getattr(item, "type", "message") != "message":
            continue
        for part in getattr(item, "content", None) or []:
            text = getattr(part, "text", None)
            if isinstance(text, str) and text:
                return text
    return None


# known response shapes, most specific first
ANSWER_SHAPES: List[Callable[[Any], Optional[str]]] = [_output_text, _first_message_text]


def extract_answer(response: Any, default: str = NO_CONTENT) -> str:
    for shape in ANSWER_SHAPES:
        text = shape(response)
        if text and text.strip():
            return text
    return default


def _failure_message(event: Any) -> str:
    message = getattr(event, "message", None)
    if not message:
        error = getattr(getattr(event, "response", None), "error", None)
        message = getattr(error, "message", None)
    return str(message or f"generation stream reported {getattr(event, 'type', 'an error')}")


class GenerationStream:
    """Lazy sequence of full-text snapshots of one streamed answer.

    Each item is everything generated so far, not just the newest delta.
    The stream is opened on first use and cannot be restarted; ``final()``
    drains whatever the caller did not consume and returns the whole text.
    """

    def __init__(self, opener: Callable[[], Awaitable[Any]]) -> None:
        self._opener = opener
        self._events: Any = None
        self._iterator: Any = None
        self.text = ""
        self.done = False

    async def __aenter__(self) -> "GenerationStream":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def open(self) -> None:
        if self._iterator is not None:
            return
        try:
            self._events = await self._opener()
        except openai.OpenAIError as exc:
            raise GenerationError(str(exc)) from exc
        self._iterator = self._events.__aiter__()

    async def close(self) -> None:
        self.done = True
        closer = getattr(self._events, "close", None)
        if closer is not None:
            await closer()

    def __aiter__(self) -> "GenerationStream":
        return self

    async def __anext__(self) -> str:
        if self._iterator is None and not self.done:
            await self.open()
        while not self.done:
            try:
                event = await self._iterator.__anext__()
            except StopAsyncIteration:
                self.done = True
                break
            except openai.OpenAIError as exc:
                self.done = True
                raise GenerationError(str(exc)) from exc
            if self._apply(event):
                return self.text
        raise StopAsyncIteration

    def _apply(self, event: Any) -> bool:
        kind = getattr(event, "type", None)
        if kind == DELTA_EVENT:
            delta = getattr(event, "delta", None)
            if not isinstance(delta, str):
                self.done = True
                raise GenerationError(f"malformed stream event: delta is {type(delta).__name__}")
            if not delta:
                return False
            self.text += delta
            return True
        if kind == COMPLETED_EVENT:
            self.done = True
        elif kind == INCOMPLETE_EVENT:
            log.warning("generation stopped early: %s", _failure_message(event))
            self.done = True
        elif kind in FAILURE_EVENTS:
            self.done = True
            raise GenerationError(_failure_message(event))
        return False

    async def final(self) -> str:
        async for _ in self:
            pass
        return self.text


class GenerationDriver:
    """Turns an assembled prompt into text via the OpenAI Responses API."""

    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        model: str = "gpt-5",
        web_search: bool = False,
        reasoning: str = "low",
        verbosity: Optional[str] = None,
    ) -> None:
        self.client = client
        self.model = model
        self.web_search = web_search
        self.reasoning = reasoning
        self.verbosity = verbosity

    @classmethod
    def from_settings(cls, settings, client: Optional[AsyncOpenAI] = None) -> "GenerationDriver":
        return cls(
            client or AsyncOpenAI(api_key=settings.openai_api_key),
            model=settings.model,
            web_search=settings.web_search,
            reasoning=settings.reasoning,
            verbosity=settings.verbosity,
        )

    def tools(self) -> List[Dict[str, str]]:
        tools = []
        if self.web_search:
            tools.append({"type": "web_search"})
        return tools

    def request_params(self, prompt: str, *, stream: bool = False) -> Dict[str, Any]:
        params: Dict[str, Any] = {"model": self.model, "input": prompt}
        if stream:
            params["stream"] = True
        tools = self.tools()
        if tools:
            params["tools"] = tools
        params["reasoning"] = {"effort": self.reasoning}
        if self.verbosity in ("low", "medium", "high"):
            params["text"] = {"verbosity": self.verbosity}
        return params

    async def complete(self, prompt: str) -> str:
        try:
            response = await self.client.responses.create(**self.request_params(prompt))
        except openai.OpenAIError as exc:
            raise GenerationError(str(exc)) from exc
        return extract_answer(response)

    def stream(self, prompt: str) -> GenerationStream:
        params = self.request_params(prompt, stream=True)
        return GenerationStream(lambda: self.client.responses.create(**params))

    async def close(self) -> None:
        await self.client.close()
