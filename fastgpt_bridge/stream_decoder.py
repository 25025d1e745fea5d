"""
Incremental decoder for server-sent-event chat completion streams.

The backend sends repeated ``event: <name>`` / ``data: <json>`` frames. Every
``data`` line is recorded in the event log and handed to the caller's
progress callback in arrival order. Frames named ``fastAnswer`` or ``answer``
carry OpenAI-style completion chunks whose text is accumulated into the final
answer. Decoding stops as soon as a chunk reports ``finish_reason == "stop"``,
even if the connection stays open.
"""
import codecs
import inspect
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, List, Optional, Tuple, Union

from fastgpt_bridge.errors import CallbackError, DecodeError
from fastgpt_bridge.models import ChatResponse, SSEEvent

logger = logging.getLogger(__name__)

FAST_ANSWER_EVENT = "fastAnswer"
ANSWER_EVENT = "answer"
DONE_SENTINEL = "[DONE]"

ProgressCallback = Callable[[SSEEvent], Union[None, Awaitable[None]]]


class MergePolicy(str, Enum):
    """How the fast answer and the streamed answer combine into the final text."""

    CONCAT = "concat"
    PREFER_ANSWER = "prefer_answer"


@dataclass
class _StreamState:
    fast_answer: str = ""
    answer_delta: str = ""
    current_event: str = ""
    done: bool = False
    events: List[Tuple[str, str]] = field(default_factory=list)


async def iter_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield complete text lines from a byte stream.

    Bytes are decoded incrementally, so a multi-byte character split across
    two chunks is joined before decoding. A trailing line without a newline
    is held back until more data arrives or the stream ends.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    async for chunk in chunks:
        pending += decoder.decode(chunk)
        *lines, pending = pending.split("\n")
        for line in lines:
            yield line.rstrip("\r")
    pending += decoder.decode(b"", final=True)
    if pending:
        yield pending.rstrip("\r")


class StreamDecoder:
    """Folds an SSE completion stream into a ChatResponse."""

    def __init__(self, merge: MergePolicy = MergePolicy.CONCAT):
        self.merge = MergePolicy(merge)

    async def decode(
        self,
        chunks: AsyncIterable[bytes],
        on_event: Optional[ProgressCallback] = None,
    ) -> ChatResponse:
        state = _StreamState()
        lines = iter_lines(chunks)
        try:
            async for line in lines:
                await self._feed_line(line, state, on_event)
                if state.done:
                    logger.debug("Stream marked done after %d events", len(state.events))
                    break
        finally:
            await lines.aclose()

        content = self._merge(state.fast_answer, state.answer_delta)
        logger.info(
            "Decoded stream: %d events, %d characters of answer",
            len(state.events), len(content),
        )
        return ChatResponse(content=content, events=state.events)

    def decode_json(self, body: Union[bytes, str]) -> ChatResponse:
        """Decode a non-streaming completion object."""
        try:
            data = json.loads(body)
        except ValueError as e:
            raise DecodeError(f"Completion response is not valid JSON: {e}") from e

        choice = _first_choice(data)
        if choice is None:
            raise DecodeError("Completion response has no choices")
        message = choice.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise DecodeError("Completion response has no message content")
        return ChatResponse(content=content, events=[])

    async def _feed_line(
        self,
        line: str,
        state: _StreamState,
        on_event: Optional[ProgressCallback],
    ) -> None:
        if not line or line.startswith(":"):
            return

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            state.current_event = value.strip()
        elif name == "data":
            if value.strip() == DONE_SENTINEL:
                state.done = True
                return
            event = SSEEvent(name=state.current_event, data=value)
            state.events.append((event.name, event.data))
            if on_event is not None:
                await _notify(on_event, event)
            if event.name in (FAST_ANSWER_EVENT, ANSWER_EVENT):
                self._apply_answer_chunk(event, state)

    @staticmethod
    def _apply_answer_chunk(event: SSEEvent, state: _StreamState) -> None:
        try:
            payload = event.payload()
        except ValueError as e:
            raise DecodeError(f"Malformed JSON in {event.name!r} event: {e}") from e
        if not isinstance(payload, dict):
            raise DecodeError(f"Unexpected {event.name!r} payload: {event.data[:200]}")

        choice = _first_choice(payload)
        if choice is None:
            return

        is_fast = event.name == FAST_ANSWER_EVENT
        accumulated = state.fast_answer if is_fast else state.answer_delta

        delta = _text_at(choice, "delta")
        if delta.strip():
            accumulated += delta
        if not accumulated:
            accumulated = _text_at(choice, "message")

        if is_fast:
            state.fast_answer = accumulated
        else:
            state.answer_delta = accumulated

        if choice.get("finish_reason") == "stop":
            state.done = True

    def _merge(self, fast_answer: str, answer_delta: str) -> str:
        if self.merge is MergePolicy.PREFER_ANSWER:
            return answer_delta if answer_delta.strip() else fast_answer
        return fast_answer + answer_delta


def _first_choice(payload: Any) -> Optional[dict]:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    return choices[0]


def _text_at(choice: dict, key: str) -> str:
    part = choice.get(key)
    if not isinstance(part, dict):
        return ""
    content = part.get("content")
    return content if isinstance(content, str) else ""


async def _notify(on_event: ProgressCallback, event: SSEEvent) -> None:
    try:
        result = on_event(event)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        raise CallbackError(event.name, e) from e
