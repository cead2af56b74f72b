"""
Stream Control

Owns at most one media session (one MediaEngine instance) at a time.

Session lifecycle:
    start_live()        LOADING → (playing) → PLAYING
    capture_snapshot()  LOADING → (playing) → PLAYING → pause() → (pause)
                        → PAUSED → seek to end of last seekable range → FROZEN
                        LOADING → (no playing before deadline) → STALLED
    dispose()           engine released, no session

Key Invariants:
    - A new session always retires the previous one first (engine disposed,
      not merely paused), and the old engine is gone before the new one loads
    - readiness → pause → seek is driven only by one-shot engine events
    - Every listener is bound to its session and does nothing once that
      session is no longer current
    - A stall is logged and reflected in the phase, never raised
"""
import asyncio
import functools
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import structlog

from sensorview.services.media_engine import (
    EVENT_LOADED_METADATA,
    EVENT_PAUSE,
    EVENT_PLAYING,
    MediaEngine,
)

logger = structlog.get_logger("stream_control")

DEFAULT_PLAYLIST_PATH = "/stream/index.m3u8"


class SessionKind(str, Enum):
    """Why the session was opened."""
    LIVE = "live"
    SNAPSHOT = "snapshot"


class SessionPhase(str, Enum):
    """Where a session is in its lifecycle."""
    LOADING = "LOADING"    # play() issued, engine not yet playing
    PLAYING = "PLAYING"    # engine reported playback
    PAUSED = "PAUSED"      # snapshot paused, no seekable range to jump to
    FROZEN = "FROZEN"      # snapshot paused on the most recent frame
    STALLED = "STALLED"    # snapshot never reached playback in time


@dataclass
class StreamSession:
    """One lifetime of a media engine, from acquisition to disposal."""
    session_id: str
    kind: SessionKind
    engine: MediaEngine
    phase: SessionPhase = SessionPhase.LOADING
    started_at: float = field(default_factory=time.time)
    watchdog: Optional[asyncio.Task] = None


class StreamController:
    """Starts live playback or freezes a single frame, one session at a time."""

    def __init__(
        self,
        engine_factory: Callable[[], MediaEngine],
        playlist_path: str = DEFAULT_PLAYLIST_PATH,
        snapshot_timeout_s: Optional[float] = None,
    ):
        self._engine_factory = engine_factory
        self.playlist_path = playlist_path
        self.snapshot_timeout_s = snapshot_timeout_s
        self._session: Optional[StreamSession] = None

    @property
    def session(self) -> Optional[StreamSession]:
        return self._session

    @property
    def status(self) -> Optional[dict]:
        """Current session summary, or None when no session exists."""
        if self._session is None:
            return None
        return {
            "session_id": self._session.session_id,
            "kind": self._session.kind.value,
            "phase": self._session.phase.value,
        }

    def _is_current(self, session: StreamSession) -> bool:
        return self._session is session

    # ============ Operations ============

    async def start_live(self) -> StreamSession:
        """Retire any session, then play the playlist continuously."""
        session = await self._open_session(SessionKind.LIVE)
        if not self._is_current(session):
            return session

        engine = session.engine
        engine.one(EVENT_LOADED_METADATA, functools.partial(self._on_loaded_metadata, session))
        engine.one(EVENT_PLAYING, functools.partial(self._on_live_playing, session))
        await engine.play()
        return session

    async def capture_snapshot(self) -> StreamSession:
        """Retire any session, then play just long enough to freeze the newest frame."""
        session = await self._open_session(SessionKind.SNAPSHOT)
        if not self._is_current(session):
            return session

        session.engine.one(EVENT_PLAYING, functools.partial(self._on_snapshot_playing, session))
        await session.engine.play()

        if self.snapshot_timeout_s and self._is_current(session):
            session.watchdog = asyncio.create_task(self._watch_snapshot(session))
        return session

    async def dispose(self) -> None:
        """Release the current session, if any."""
        session, self._session = self._session, None
        if session is not None:
            await self._retire(session)

    # ============ Session Management ============

    async def _open_session(self, kind: SessionKind) -> StreamSession:
        """
        Install a fresh session, retire the previous one, then prime the engine.

        The swap happens before any await so a concurrent call always sees
        (and retires) the newest session. If this session is superseded while
        the old one is being disposed, it is left unprimed.
        """
        previous = self._session
        session = StreamSession(
            session_id=f"ses_{uuid.uuid4().hex[:12]}",
            kind=kind,
            engine=self._engine_factory(),
        )
        self._session = session

        if previous is not None:
            await self._retire(previous)

        if not self._is_current(session):
            logger.info(
                "[STREAM] Session superseded before loading",
                session_id=session.session_id,
                kind=kind.value,
            )
            return session

        # Re-resolve the playlist instead of resuming any earlier load
        await session.engine.reset()
        session.engine.src(self.playlist_path)

        logger.info(
            "[STREAM] Session opened",
            session_id=session.session_id,
            kind=kind.value,
            playlist=self.playlist_path,
            previous_session_id=previous.session_id if previous else None,
        )
        return session

    async def _retire(self, session: StreamSession) -> None:
        if session.watchdog is not None and session.watchdog is not asyncio.current_task():
            session.watchdog.cancel()
        session.watchdog = None
        try:
            await session.engine.dispose()
        except Exception as e:
            logger.error(
                "[STREAM] Engine dispose failed",
                session_id=session.session_id,
                error=str(e),
            )
        logger.info(
            "[STREAM] Session retired",
            session_id=session.session_id,
            kind=session.kind.value,
            phase=session.phase.value,
            lifetime_s=round(time.time() - session.started_at, 3),
        )

    def _stale(self, session: StreamSession, event: str) -> bool:
        if self._is_current(session):
            return False
        logger.info(
            "[STREAM] Stale session event ignored",
            session_id=session.session_id,
            media_event=event,
            current_session_id=self._session.session_id if self._session else None,
        )
        return True

    # ============ Live Listeners ============

    def _on_loaded_metadata(self, session: StreamSession) -> None:
        if self._stale(session, EVENT_LOADED_METADATA):
            return
        logger.info(
            "[STREAM] Video metadata loaded",
            session_id=session.session_id,
            video_size=f"{session.engine.video_width()}x{session.engine.video_height()}",
        )

    def _on_live_playing(self, session: StreamSession) -> None:
        if self._stale(session, EVENT_PLAYING):
            return
        session.phase = SessionPhase.PLAYING
        logger.info("[STREAM] Live playback started", session_id=session.session_id)

    # ============ Snapshot Listeners ============

    async def _on_snapshot_playing(self, session: StreamSession) -> None:
        if self._stale(session, EVENT_PLAYING):
            return
        session.phase = SessionPhase.PLAYING
        # Arm before pausing so the confirmation cannot be missed
        session.engine.one(EVENT_PAUSE, functools.partial(self._on_snapshot_paused, session))
        await session.engine.pause()

    async def _on_snapshot_paused(self, session: StreamSession) -> None:
        if self._stale(session, EVENT_PAUSE):
            return
        session.phase = SessionPhase.PAUSED

        ranges = session.engine.seekable()
        if ranges.length < 1:
            # Engine may still be buffering; keep the current position
            logger.info("[STREAM] Snapshot paused without seekable range", session_id=session.session_id)
            return

        latest = ranges.end(ranges.length - 1)
        await session.engine.current_time(latest)
        if self._is_current(session):
            session.phase = SessionPhase.FROZEN
            logger.info(
                "[STREAM] Snapshot frozen on latest frame",
                session_id=session.session_id,
                position_s=latest,
            )

    async def _watch_snapshot(self, session: StreamSession) -> None:
        await asyncio.sleep(self.snapshot_timeout_s)
        if self._is_current(session) and session.phase == SessionPhase.LOADING:
            session.phase = SessionPhase.STALLED
            logger.warning(
                "[STREAM] Snapshot stalled waiting for playback",
                session_id=session.session_id,
                timeout_s=self.snapshot_timeout_s,
            )
