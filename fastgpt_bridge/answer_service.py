"""
Question -> answer orchestration: chat backend, session store and renderer.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from fastgpt_bridge.chat_client import ChatClient
from fastgpt_bridge.errors import EmptyAnswerError
from fastgpt_bridge.session_store import SessionStore
from fastgpt_bridge.stream_decoder import ProgressCallback

logger = logging.getLogger(__name__)

# Markdown-to-image renderer: render(markdown, output_path) -> path of the image.
Renderer = Callable[[str, Path], Path]


@dataclass
class Answer:
    session_id: str
    markdown: str
    image_path: Optional[Path] = None
    event_count: int = 0


async def answer_question(
    client: ChatClient,
    store: SessionStore,
    user_id: str,
    prompt: str,
    image_urls: Optional[List[str]] = None,
    on_event: Optional[ProgressCallback] = None,
    renderer: Optional[Renderer] = None,
    temp_dir: Optional[Path] = None,
) -> Answer:
    """Answer a question and record the interaction as a new session.

    Raises EmptyAnswerError when the backend produced no text; nothing is
    rendered in that case.
    """
    session_id = await asyncio.to_thread(store.create_session, user_id)
    await store.save_user_input(session_id, prompt)
    if image_urls:
        await store.save_user_images(session_id, image_urls)

    response = await client.get_chat_response(prompt, image_urls, on_event)
    if not response.content.strip():
        logger.warning("Backend returned no answer for session %s", session_id)
        raise EmptyAnswerError(f"No answer was produced for session {session_id}")

    await store.save_response_markdown(session_id, response.content)
    answer = Answer(
        session_id=session_id,
        markdown=response.content,
        event_count=len(response.events),
    )

    if renderer is not None:
        answer.image_path = await _render_into_session(
            store, session_id, response.content, renderer, temp_dir,
        )
    return answer


async def _render_into_session(
    store: SessionStore,
    session_id: str,
    markdown: str,
    renderer: Renderer,
    temp_dir: Optional[Path],
) -> Path:
    temp_dir = temp_dir or store.sessions_dir.parent / "pic" / "temp"
    temp_dir.mkdir(parents=True, exist_ok=True)
    output_path = temp_dir / f"response_{uuid.uuid4()}.png"

    image_path = Path(await asyncio.to_thread(renderer, markdown, output_path))
    try:
        return await store.save_response_image(session_id, image_path)
    finally:
        try:
            image_path.unlink()
        except OSError as e:
            logger.warning("Could not delete temporary image %s: %s", image_path, e)
