"""
FastGPT chat client: admission control, retried send and streamed decode.

A call moves through Idle -> Admitted -> Sending -> Streaming and ends in
Completed or Failed. The admission permit and the HTTP response are held in
``async with`` blocks, so both are released on success, error and
cancellation alike.
"""
import logging
import uuid
from enum import Enum
from typing import List, Optional

import httpx

from fastgpt_bridge.admission import AdmissionGate
from fastgpt_bridge.config import Settings
from fastgpt_bridge.errors import TransportError
from fastgpt_bridge.models import ChatMessage, ChatRequest, ChatResponse
from fastgpt_bridge.sender import RetryingSender
from fastgpt_bridge.stream_decoder import MergePolicy, ProgressCallback, StreamDecoder

logger = logging.getLogger(__name__)


class ChatState(str, Enum):
    IDLE = "idle"
    ADMITTED = "admitted"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class ChatCall:
    """Tracks the state of one get_chat_response call for logging."""

    def __init__(self, chat_id: Optional[str]):
        self.chat_id = chat_id or "-"
        self.state = ChatState.IDLE

    def advance(self, state: ChatState) -> None:
        logger.debug("chat %s: %s -> %s", self.chat_id, self.state.value, state.value)
        self.state = state


class ChatClient:
    """Client for a FastGPT-compatible chat completions endpoint.

    Use as an async context manager (or call ``aclose``) so the underlying
    HTTP connection pool is closed.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        api_url: str,
        gate: AdmissionGate,
        stream: bool = True,
        decoder: Optional[StreamDecoder] = None,
        sender: Optional[RetryingSender] = None,
    ):
        self._http = http
        self.gate = gate
        self.stream = stream
        self.decoder = decoder or StreamDecoder()
        self.sender = sender or RetryingSender(http, api_url)

    @classmethod
    def from_settings(
        cls,
        config: Settings,
        gate: Optional[AdmissionGate] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ChatClient":
        headers = {}
        if config.fastgpt_auth_token:
            headers["Authorization"] = f"Bearer {config.fastgpt_auth_token}"
        http = httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(config.request_timeout),
            transport=transport,
        )
        return cls(
            http,
            config.fastgpt_api_url,
            gate or AdmissionGate(config.fastgpt_concurrency_limit),
            stream=config.fastgpt_stream,
            decoder=StreamDecoder(MergePolicy(config.fastgpt_answer_merge)),
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    def build_request(self, prompt: str, image_urls: Optional[List[str]] = None) -> ChatRequest:
        """Build a single-turn request, attaching image URLs as content parts."""
        return ChatRequest(
            chat_id=f"bridge_{uuid.uuid4()}",
            response_item_id=f"resp_{uuid.uuid4()}",
            variables={
                "uid": f"user_{uuid.uuid4()}",
                "name": "BridgeUser",
            },
            messages=[ChatMessage.user(prompt, image_urls)],
            stream=self.stream,
            detail=self.stream,
        )

    async def get_chat_response(
        self,
        prompt: str,
        image_urls: Optional[List[str]] = None,
        on_event: Optional[ProgressCallback] = None,
    ) -> ChatResponse:
        """Ask the backend a question and return the merged answer."""
        logger.info(
            "Sending chat request: %d characters, %d images",
            len(prompt), len(image_urls or []),
        )
        return await self.send(self.build_request(prompt, image_urls), on_event)

    async def send(
        self,
        request: ChatRequest,
        on_event: Optional[ProgressCallback] = None,
    ) -> ChatResponse:
        call = ChatCall(request.chat_id)
        try:
            async with self.gate.slot():
                call.advance(ChatState.ADMITTED)
                call.advance(ChatState.SENDING)
                async with self.sender.open(request) as response:
                    call.advance(ChatState.STREAMING)
                    result = await self._read(response, on_event)
        except httpx.TransportError as e:
            call.advance(ChatState.FAILED)
            raise TransportError(e) from e
        except BaseException:
            call.advance(ChatState.FAILED)
            raise
        call.advance(ChatState.COMPLETED)
        return result

    async def _read(
        self,
        response: httpx.Response,
        on_event: Optional[ProgressCallback],
    ) -> ChatResponse:
        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            return await self.decoder.decode(response.aiter_bytes(), on_event)
        if "json" in content_type or not self.stream:
            return self.decoder.decode_json(await response.aread())
        return await self.decoder.decode(response.aiter_bytes(), on_event)
