"""
Media Engine

The stream controller drives playback through the MediaEngine protocol:

    reset()              discard playlist state and any running decoder
    src(path)            set the playlist resource
    play()               start decoding
    one(event, cb)       one-shot listener: loadedmetadata, playing, pause
    pause()              stop decoding, then emit "pause"
    current_time(t)      move the play position (renders that frame when paused)
    seekable()           TimeRanges currently seekable
    dispose()            release everything

HlsEngine is the concrete engine. It loads the HLS playlist over HTTP to
know the seekable range, and runs FFmpeg to decode the stream into a JPEG
"surface" file that the dashboard serves as the current frame.

    [index.m3u8 + .ts] --HTTP--> [FFmpeg] --update--> [frame.jpg]
"""
import asyncio
import os
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Sequence, runtime_checkable
from urllib.parse import urljoin

import httpx
import structlog

logger = structlog.get_logger("media_engine")


EVENT_LOADED_METADATA = "loadedmetadata"
EVENT_PLAYING = "playing"
EVENT_PAUSE = "pause"

Listener = Callable[[], Any]


# ============ Time Ranges ============

class TimeRanges:
    """Ordered (start, end) ranges in seconds."""

    def __init__(self, ranges: Sequence[tuple[float, float]] = ()):
        self._ranges = list(ranges)

    @property
    def length(self) -> int:
        return len(self._ranges)

    def __len__(self) -> int:
        return len(self._ranges)

    def start(self, index: int) -> float:
        return self._ranges[index][0]

    def end(self, index: int) -> float:
        return self._ranges[index][1]


# ============ One-Shot Events ============

class OneShotEvents:
    """
    Listener registry where each listener fires at most once.

    Listeners may be plain callables or return an awaitable; awaitables are
    scheduled as tasks so emitting never blocks the emitter.
    """

    def __init__(self):
        self._listeners: dict[str, list[Listener]] = {}
        self._tasks: set[asyncio.Task] = set()

    def one(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def emit(self, event: str) -> list[asyncio.Task]:
        """Fire and drop all listeners for `event`. Returns scheduled tasks."""
        scheduled = []
        for listener in self._listeners.pop(event, []):
            try:
                result = listener()
            except Exception as e:
                logger.error("[MEDIA] Listener failed", media_event=event, error=str(e))
                continue
            if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)
                scheduled.append(task)
        return scheduled

    def pending(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[MEDIA] Listener task failed", error=str(exc), error_type=type(exc).__name__)

    def clear(self) -> None:
        """Drop listeners and cancel listener tasks still running."""
        self._listeners.clear()
        current = asyncio.current_task() if _loop_running() else None
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._tasks.clear()


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


# ============ Engine Protocol ============

@runtime_checkable
class MediaEngine(Protocol):
    """What the stream controller needs from a playback engine."""

    async def reset(self) -> None: ...

    def src(self, path: str) -> None: ...

    async def play(self) -> None: ...

    def one(self, event: str, listener: Listener) -> None: ...

    async def pause(self) -> None: ...

    async def current_time(self, position_s: float) -> None: ...

    def seekable(self) -> TimeRanges: ...

    def video_width(self) -> int: ...

    def video_height(self) -> int: ...

    async def dispose(self) -> None: ...


# ============ HLS Playlist ============

@dataclass
class HlsPlaylist:
    """Media playlist summary: segment durations and live/VOD flag."""
    segment_durations: list[float] = field(default_factory=list)
    media_sequence: int = 0
    target_duration: float = 0.0
    ended: bool = False

    @property
    def duration(self) -> float:
        return sum(self.segment_durations)

    @classmethod
    def parse(cls, text: str) -> "HlsPlaylist":
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        if not lines or lines[0] != "#EXTM3U":
            raise ValueError("Not an HLS playlist (missing #EXTM3U)")

        playlist = cls()
        for line in lines[1:]:
            if line.startswith("#EXTINF:"):
                value = line[len("#EXTINF:"):].split(",", 1)[0]
                playlist.segment_durations.append(float(value))
            elif line.startswith("#EXT-X-MEDIA-SEQUENCE:"):
                playlist.media_sequence = int(line.split(":", 1)[1])
            elif line.startswith("#EXT-X-TARGETDURATION:"):
                playlist.target_duration = float(line.split(":", 1)[1])
            elif line == "#EXT-X-ENDLIST":
                playlist.ended = True
        return playlist


# ============ FFmpeg-backed Engine ============

_VIDEO_STREAM_RE = re.compile(r"Stream #\d+:\d+.*?: Video: .*?\b(\d{2,5})x(\d{2,5})\b")


class HlsEngine:
    """
    MediaEngine decoding an HLS stream with FFmpeg into a JPEG surface.

    Events:
        loadedmetadata - FFmpeg reported the input video stream (size known)
        playing        - FFmpeg reported its first progress block
        pause          - decoder stopped and playlist refreshed

    A missing playlist or FFmpeg binary stalls silently: no events fire.
    """

    STOP_TIMEOUT_S = 5.0
    RENDER_TIMEOUT_S = 15.0
    RENDER_WINDOW_S = 1.0   # decode this much before the seek target
    LIVE_FPS = 2

    def __init__(
        self,
        base_url: str,
        surface_path: str,
        ffmpeg_path: str = "ffmpeg",
        fetch_timeout_s: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url
        self.surface_path = surface_path
        self.ffmpeg_path = ffmpeg_path
        self.fetch_timeout_s = fetch_timeout_s
        self._client = client
        self._owns_client = client is None
        self._events = OneShotEvents()
        self._src: Optional[str] = None
        self._playlist: Optional[HlsPlaylist] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._run_task: Optional[asyncio.Task] = None
        self._position_s = 0.0
        self._paused = True
        self._size = (0, 0)
        self._disposed = False

    # ----- protocol -----

    async def reset(self) -> None:
        await self._stop_decoder()
        self._src = None
        self._playlist = None
        self._position_s = 0.0
        self._paused = True
        self._size = (0, 0)

    def src(self, path: str) -> None:
        self._src = path

    async def play(self) -> None:
        if self._disposed:
            raise RuntimeError("Engine has been disposed")
        if self._src is None:
            raise RuntimeError("No source set")
        if self._run_task is not None and not self._run_task.done():
            return
        self._paused = False
        self._run_task = asyncio.create_task(self._run(), name="hls-engine")

    def one(self, event: str, listener: Listener) -> None:
        self._events.one(event, listener)

    async def pause(self) -> None:
        if self._paused:
            return
        self._paused = True
        await self._stop_decoder()
        try:
            self._playlist = await self._load_playlist()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("[HLS] Playlist refresh failed on pause", url=self.url, error=str(e))
        self._events.emit(EVENT_PAUSE)

    async def current_time(self, position_s: float) -> None:
        self._position_s = max(0.0, position_s)
        if self._paused and self._src is not None:
            await self._render_frame(self._position_s)

    def seekable(self) -> TimeRanges:
        if self._playlist is None or self._playlist.duration <= 0:
            return TimeRanges()
        return TimeRanges([(0.0, self._playlist.duration)])

    def video_width(self) -> int:
        return self._size[0]

    def video_height(self) -> int:
        return self._size[1]

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._events.clear()
        await self._stop_decoder()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ----- state -----

    @property
    def url(self) -> str:
        return urljoin(self.base_url, self._src or "")

    @property
    def position(self) -> float:
        return self._position_s

    # ----- internals -----

    async def _load_playlist(self) -> HlsPlaylist:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.fetch_timeout_s))
        response = await self._client.get(self.url, headers={"Cache-Control": "no-cache"})
        response.raise_for_status()
        return HlsPlaylist.parse(response.text)

    def _decoder_command(self) -> list[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner", "-nostdin", "-nostats",
            "-progress", "pipe:1",
            "-live_start_index", "0",
            "-i", self.url,
            "-an",
            "-vf", f"fps={self.LIVE_FPS}",
            "-q:v", "5",
            "-f", "image2",
            "-update", "1",
            # Each frame goes to a temp file renamed over the surface, so readers never see a partial JPEG
            "-atomic_writing", "1",
            "-y", self.surface_path,
        ]

    async def _run(self) -> None:
        """Load the playlist, then decode until stopped or the stream ends."""
        try:
            self._playlist = await self._load_playlist()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("[HLS] Playlist unavailable", url=self.url, error=str(e))
            return

        logger.info(
            "[HLS] Playlist loaded",
            url=self.url,
            segments=len(self._playlist.segment_durations),
            media_sequence=self._playlist.media_sequence,
            target_duration_s=self._playlist.target_duration,
            ended=self._playlist.ended,
        )

        os.makedirs(os.path.dirname(self.surface_path) or ".", exist_ok=True)
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._decoder_command(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            logger.error("[HLS] ffmpeg not installed", ffmpeg_path=self.ffmpeg_path)
            return

        logger.info("[HLS] Decoder started", url=self.url, pid=self._process.pid)
        await asyncio.gather(
            self._read_progress(self._process.stdout),
            self._read_diagnostics(self._process.stderr),
        )
        returncode = await self._process.wait()
        if not self._paused:
            logger.info("[HLS] Decoder exited", url=self.url, returncode=returncode)

    async def _read_progress(self, stream: asyncio.StreamReader) -> None:
        announced = False
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace").strip()
            if line.startswith("out_time_us="):
                try:
                    self._position_s = int(line.split("=", 1)[1]) / 1_000_000
                except ValueError:
                    pass  # "N/A" before the first frame
            elif line.startswith("progress=") and not announced:
                announced = True
                self._events.emit(EVENT_PLAYING)

    async def _read_diagnostics(self, stream: asyncio.StreamReader) -> None:
        announced = False
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace")
            if announced:
                continue
            match = _VIDEO_STREAM_RE.search(line)
            if match:
                announced = True
                self._size = (int(match.group(1)), int(match.group(2)))
                self._events.emit(EVENT_LOADED_METADATA)

    async def _stop_decoder(self) -> None:
        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            try:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.STOP_TIMEOUT_S)
                except asyncio.TimeoutError:
                    logger.warning("[HLS] Decoder didn't terminate, killing", pid=process.pid)
                    process.kill()
                    await process.wait()
            except ProcessLookupError:
                pass

        task, self._run_task = self._run_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _render_frame(self, position_s: float) -> None:
        """Decode the window ending at `position_s`; the last frame wins."""
        start = max(0.0, position_s - self.RENDER_WINDOW_S)
        temp_path = f"{self.surface_path}.{uuid.uuid4().hex[:8]}.tmp.jpg"
        cmd = [
            self.ffmpeg_path,
            "-hide_banner", "-nostdin", "-loglevel", "error",
            "-live_start_index", "0",
            "-ss", f"{start:.3f}",
            "-i", self.url,
            "-t", f"{self.RENDER_WINDOW_S:.3f}",
            "-an",
            "-q:v", "5",
            "-update", "1",
            "-y", temp_path,
        ]
        proc = None
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.RENDER_TIMEOUT_S)
        except FileNotFoundError:
            logger.error("[HLS] ffmpeg not installed", ffmpeg_path=self.ffmpeg_path)
            return
        except asyncio.TimeoutError:
            logger.warning("[HLS] Frame render timed out", position_s=position_s)
            return
        finally:
            # Timeout or cancellation (session retired) must not leave FFmpeg running
            if proc is not None and proc.returncode is None:
                await self._kill_render(proc)
            if (proc is None or proc.returncode != 0) and os.path.exists(temp_path):
                os.remove(temp_path)

        if proc.returncode == 0 and os.path.exists(temp_path):
            # Atomic rename to avoid serving partial files
            os.replace(temp_path, self.surface_path)
            logger.info("[HLS] Frame rendered", position_s=round(position_s, 3))
        else:
            stderr_text = stderr.decode("utf-8", errors="replace") if stderr else ""
            logger.warning(
                "[HLS] Frame render failed",
                position_s=position_s,
                returncode=proc.returncode,
                stderr=stderr_text[-200:],
            )

    async def _kill_render(self, proc: asyncio.subprocess.Process) -> None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        logger.info("[HLS] Frame render aborted", pid=proc.pid)


def hls_engine_factory(
    base_url: str,
    surface_path: str,
    ffmpeg_path: str = "ffmpeg",
    fetch_timeout_s: float = 5.0,
) -> Callable[[], HlsEngine]:
    """Factory producing a fresh HlsEngine per stream session."""
    def factory() -> HlsEngine:
        return HlsEngine(
            base_url=base_url,
            surface_path=surface_path,
            ffmpeg_path=ffmpeg_path,
            fetch_timeout_s=fetch_timeout_s,
        )
    return factory
