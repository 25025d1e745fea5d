"""
File-backed session store.

Each interaction gets its own directory under ``<data_dir>/sessions``::

    <session_id>/
        user_id.txt        owner sentinel, written once at creation
        input.txt          the question
        user_images.json   image URLs the user attached
        response.md        the answer as markdown
        response_<ts>.png  rendered answer images
        .cleaned           marker written when images were purged

Text artifacts are kept forever; only images are garbage-collected.
Writes go to a temporary file that is renamed into place, so a reader sees
either the previous or the new complete artifact. The session directory's
mtime is the "last touched" time and is bumped explicitly on every write.
"""
import asyncio
import json
import logging
import os
import shutil
import tempfile
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from fastgpt_bridge.errors import StorageError
from fastgpt_bridge.models import CleanupReport, Session, StorageStats

logger = logging.getLogger(__name__)

USER_ID_FILE = "user_id.txt"
INPUT_FILE = "input.txt"
RESPONSE_FILE = "response.md"
USER_IMAGES_FILE = "user_images.json"
CLEANED_MARKER = ".cleaned"

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg"}
PREVIEW_LENGTH = 30
MISSING_INPUT_PREVIEW = "(input unavailable)"


def is_image_file(path: Path) -> bool:
    return path.is_file() and path.suffix.lower() in IMAGE_EXTENSIONS


def make_preview(text: str, limit: int = PREVIEW_LENGTH) -> str:
    if len(text) > limit:
        return text[:limit] + "..."
    return text


class SessionStore:
    """Creates, reads and garbage-collects per-interaction session directories."""

    def __init__(self, data_dir: Path):
        self.sessions_dir = Path(data_dir) / "sessions"
        try:
            self.sessions_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create sessions directory {self.sessions_dir}: {e}") from e

    def get_session_dir(self, session_id: str) -> Path:
        if not session_id or session_id.startswith(".") or Path(session_id).name != session_id:
            raise StorageError(f"Invalid session id {session_id!r}", session_id)
        return self.sessions_dir / session_id

    # ------------------------------------------------------------------
    # Creation and writes
    # ------------------------------------------------------------------

    def create_session(self, owner_id: str) -> str:
        """Create a new session directory owned by ``owner_id``."""
        session_id = uuid.uuid4().hex
        session_dir = self.get_session_dir(session_id)
        try:
            session_dir.mkdir(parents=True)
            _atomic_write(session_dir / USER_ID_FILE, owner_id)
        except OSError as e:
            raise StorageError(f"Cannot create session {session_id}: {e}", session_id) from e
        logger.info("Created session %s for user %s", session_id, owner_id)
        return session_id

    async def save_user_input(self, session_id: str, text: str) -> None:
        await self._write_artifact(session_id, INPUT_FILE, text)

    async def save_response_markdown(self, session_id: str, markdown: str) -> None:
        await self._write_artifact(session_id, RESPONSE_FILE, markdown)

    async def save_user_images(self, session_id: str, urls: List[str]) -> None:
        await self._write_artifact(session_id, USER_IMAGES_FILE, json.dumps(list(urls), indent=2))

    async def save_response_image(self, session_id: str, source_path: Path) -> Path:
        """Copy a rendered image into the session and return its new path.

        Deleting ``source_path`` afterwards is up to the caller.
        """
        session_dir = self._existing_session_dir(session_id)
        return await asyncio.to_thread(_copy_image, session_dir, Path(source_path), session_id)

    async def _write_artifact(self, session_id: str, filename: str, content: str) -> None:
        session_dir = self._existing_session_dir(session_id)
        try:
            await asyncio.to_thread(_atomic_write, session_dir / filename, content)
        except OSError as e:
            raise StorageError(f"Cannot write {filename} for session {session_id}: {e}", session_id) from e
        logger.debug("Saved %s for session %s (%d characters)", filename, session_id, len(content))

    def _existing_session_dir(self, session_id: str) -> Path:
        session_dir = self.get_session_dir(session_id)
        if not session_dir.is_dir():
            raise StorageError(f"Session {session_id} does not exist", session_id)
        return session_dir

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_response_markdown(self, session_id: str) -> Optional[str]:
        try:
            return (self.get_session_dir(session_id) / RESPONSE_FILE).read_text(encoding="utf-8")
        except OSError:
            return None

    def get_user_sessions(self, owner_id: str) -> List[Session]:
        """Return the sessions owned by ``owner_id``, most recently touched first.

        This scans every session directory; there is no owner index.
        """
        sessions = []
        for session_dir in self._iter_session_dirs():
            try:
                stored_owner = (session_dir / USER_ID_FILE).read_text(encoding="utf-8").strip()
            except OSError:
                continue
            if stored_owner != owner_id:
                continue
            try:
                sessions.append(self._summarize(session_dir, stored_owner))
            except OSError as e:
                logger.warning("Skipping unreadable session %s: %s", session_dir.name, e)

        sessions.sort(key=lambda s: s.last_modified, reverse=True)
        return sessions

    def storage_stats(self, owner_id: str) -> StorageStats:
        sessions = self.get_user_sessions(owner_id)
        return StorageStats(
            owner_id=owner_id,
            session_count=len(sessions),
            image_count=sum(s.image_count for s in sessions),
            last_activity=sessions[0].last_modified if sessions else None,
        )

    def _summarize(self, session_dir: Path, owner_id: str) -> Session:
        try:
            preview = make_preview((session_dir / INPUT_FILE).read_text(encoding="utf-8"))
        except OSError:
            preview = MISSING_INPUT_PREVIEW

        modified = datetime.fromtimestamp(session_dir.stat().st_mtime, tz=timezone.utc)
        image_count = sum(1 for entry in session_dir.iterdir() if is_image_file(entry))

        return Session(
            id=session_dir.name,
            owner_id=owner_id,
            last_modified=modified,
            input_preview=preview,
            image_count=image_count,
            cleaned=(session_dir / CLEANED_MARKER).exists(),
        )

    def _iter_session_dirs(self):
        try:
            entries = list(self.sessions_dir.iterdir())
        except OSError as e:
            raise StorageError(f"Cannot list sessions in {self.sessions_dir}: {e}") from e
        return (entry for entry in entries if entry.is_dir() and not entry.name.startswith("."))

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def cleanup_session_images(self, session_id: str) -> int:
        """Delete the session's image files and write the cleanup marker.

        Returns the number of files removed. The directory mtime is restored
        afterwards so housekeeping does not count as activity. An existing
        marker is left alone when there was nothing to remove, so it keeps
        the time the images were actually purged.
        """
        session_dir = self.get_session_dir(session_id)
        if not session_dir.is_dir():
            return 0

        before = session_dir.stat()
        removed = 0
        for entry in session_dir.iterdir():
            if not is_image_file(entry):
                continue
            try:
                entry.unlink()
                removed += 1
            except OSError as e:
                logger.warning("Could not delete %s: %s", entry, e)

        if removed == 0 and (session_dir / CLEANED_MARKER).exists():
            logger.debug("Session %s already cleaned", session_id)
            return 0

        try:
            (session_dir / CLEANED_MARKER).write_text(
                f"Images cleaned at {datetime.now(timezone.utc).isoformat()}\n",
                encoding="utf-8",
            )
            os.utime(session_dir, ns=(before.st_atime_ns, before.st_mtime_ns))
        except OSError as e:
            raise StorageError(f"Cannot mark session {session_id} as cleaned: {e}", session_id) from e
        return removed

    def cleanup_expired(self, expiry_days: float) -> CleanupReport:
        """Purge images from orphaned sessions and sessions idle for ``expiry_days``."""
        report = CleanupReport()
        cutoff = time.time() - timedelta(days=expiry_days).total_seconds()

        for session_dir in self._iter_session_dirs():
            session_id = session_dir.name
            orphaned = not (session_dir / USER_ID_FILE).exists()
            try:
                expired = session_dir.stat().st_mtime < cutoff
            except OSError:
                continue
            if not (orphaned or expired):
                continue

            try:
                count = self.cleanup_session_images(session_id)
            except StorageError:
                logger.exception("Failed to clean session %s", session_id)
                continue
            if count > 0:
                report.sessions_cleaned += 1
                report.files_removed += count
                logger.info(
                    "Removed %d image files from %s session %s",
                    count, "orphaned" if orphaned else "expired", session_id,
                )

        if report.sessions_cleaned:
            logger.info(
                "Cleanup finished: %d sessions, %d image files removed",
                report.sessions_cleaned, report.files_removed,
            )
        return report

    async def periodic_cleanup(self, expiry_days: float) -> CleanupReport:
        return await asyncio.to_thread(self.cleanup_expired, expiry_days)


def _atomic_write(path: Path, content: str) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
    os.utime(path.parent)


def _copy_image(session_dir: Path, source: Path, session_id: str) -> Path:
    suffix = source.suffix.lower() if source.suffix.lower() in IMAGE_EXTENSIONS else ".png"
    target = session_dir / f"response_{int(time.time())}{suffix}"
    # Two renders within the same second must not overwrite each other.
    counter = 1
    while target.exists():
        target = session_dir / f"response_{int(time.time())}_{counter}{suffix}"
        counter += 1
    try:
        shutil.copyfile(source, target)
        os.utime(session_dir)
    except OSError as e:
        raise StorageError(f"Cannot copy response image into session {session_id}: {e}", session_id) from e
    logger.info("Saved response image %s", target)
    return target
