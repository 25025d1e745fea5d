"""Shared test fixtures for fastgpt-bridge."""
import json

import httpx
import pytest

from fastgpt_bridge.config import Settings
from fastgpt_bridge.session_store import SessionStore

API_URL = "http://fastgpt.test/api/v1/chat/completions"


def sse_frame(event: str, payload) -> str:
    """Encode one `event:`/`data:` frame the way the backend sends it."""
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"event: {event}\ndata: {data}\n\n"


def answer_chunk(content: str, finish_reason=None) -> dict:
    choice = {"delta": {"content": content}}
    if finish_reason:
        choice["finish_reason"] = finish_reason
    return {"choices": [choice]}


def sse_response(*frames: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        headers={"content-type": "text/event-stream"},
        content="".join(frames).encode("utf-8"),
    )


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        fastgpt_api_url=API_URL,
        fastgpt_auth_token="test-token",
        fastgpt_concurrency_limit=2,
        data_dir=tmp_path / "data",
    )


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "data")
