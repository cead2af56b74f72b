"""
Media Engine Tests

Tests to verify:
1. HLS playlist parsing (durations, live vs ended)
2. One-shot listeners fire exactly once
3. HlsEngine seekable range follows the loaded playlist
4. FFmpeg progress/diagnostic output is turned into engine events
5. Frame renders never leave FFmpeg running or temp files behind

Run with: pytest tests/test_media_engine.py -v
"""
import asyncio
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from sensorview.services.media_engine import (
    HlsEngine,
    HlsPlaylist,
    MediaEngine,
    OneShotEvents,
    TimeRanges,
)

LIVE_PLAYLIST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:2
#EXT-X-MEDIA-SEQUENCE:41
#EXTINF:2.000,
index41.ts
#EXTINF:2.000,
index42.ts
#EXTINF:1.500,
index43.ts
"""


def _engine_with_playlist(text: str, status_code: int = 200) -> HlsEngine:
    def handler(request):
        return httpx.Response(status_code, text=text)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HlsEngine(
        base_url="http://camera.local:8080",
        surface_path="/tmp/sensorview-test/frame.jpg",
        client=client,
    )


# ============================================
# Test: Playlist Parsing
# ============================================

class TestHlsPlaylist:
    """Media playlist summary."""

    def test_parses_live_playlist(self):
        playlist = HlsPlaylist.parse(LIVE_PLAYLIST)

        assert playlist.segment_durations == [2.0, 2.0, 1.5]
        assert playlist.duration == 5.5
        assert playlist.media_sequence == 41
        assert playlist.target_duration == 2.0
        assert playlist.ended is False

    def test_endlist_marks_vod(self):
        playlist = HlsPlaylist.parse(LIVE_PLAYLIST + "#EXT-X-ENDLIST\n")

        assert playlist.ended is True

    def test_empty_playlist_has_no_duration(self):
        playlist = HlsPlaylist.parse("#EXTM3U\n#EXT-X-TARGETDURATION:2\n")

        assert playlist.duration == 0

    @pytest.mark.parametrize("text", ["", "index0.ts\n", "<html>404</html>"])
    def test_rejects_non_playlist(self, text):
        with pytest.raises(ValueError):
            HlsPlaylist.parse(text)


# ============================================
# Test: Time Ranges and Events
# ============================================

class TestTimeRanges:

    def test_empty(self):
        ranges = TimeRanges()

        assert ranges.length == 0
        assert len(ranges) == 0

    def test_indexing(self):
        ranges = TimeRanges([(0.0, 4.0), (10.0, 16.0)])

        assert ranges.length == 2
        assert ranges.start(1) == 10.0
        assert ranges.end(ranges.length - 1) == 16.0


class TestOneShotEvents:
    """Each listener fires at most once."""

    def test_listener_fires_once(self):
        events = OneShotEvents()
        calls = []
        events.one("playing", lambda: calls.append("playing"))

        events.emit("playing")
        events.emit("playing")

        assert calls == ["playing"]
        assert events.pending("playing") == 0

    def test_other_events_untouched(self):
        events = OneShotEvents()
        events.one("pause", lambda: None)

        events.emit("playing")

        assert events.pending("pause") == 1

    def test_failing_listener_does_not_stop_others(self):
        events = OneShotEvents()
        calls = []

        def broken():
            raise RuntimeError("boom")

        events.one("playing", broken)
        events.one("playing", lambda: calls.append("second"))
        events.emit("playing")

        assert calls == ["second"]

    @pytest.mark.asyncio
    async def test_async_listener_is_scheduled(self):
        events = OneShotEvents()
        calls = []

        async def listener():
            calls.append("async")

        events.one("pause", listener)
        tasks = events.emit("pause")
        await asyncio.gather(*tasks)

        assert calls == ["async"]

    @pytest.mark.asyncio
    async def test_clear_drops_listeners_and_cancels_tasks(self):
        events = OneShotEvents()

        async def slow():
            await asyncio.sleep(10)

        events.one("pause", slow)
        events.one("playing", lambda: None)
        tasks = events.emit("pause")
        events.clear()
        await asyncio.sleep(0)

        assert events.pending("playing") == 0
        assert tasks[0].cancelled()


# ============================================
# Test: HLS Engine
# ============================================

class TestHlsEngine:
    """HlsEngine behaviour that does not need an FFmpeg binary."""

    def test_satisfies_protocol(self):
        engine = HlsEngine(base_url="http://camera.local:8080", surface_path="/tmp/frame.jpg")

        assert isinstance(engine, MediaEngine)

    def test_url_joins_base_and_source(self):
        engine = HlsEngine(base_url="http://camera.local:8080", surface_path="/tmp/frame.jpg")
        engine.src("/stream/index.m3u8")

        assert engine.url == "http://camera.local:8080/stream/index.m3u8"

    def test_decoder_reports_progress_to_stdout(self):
        engine = HlsEngine(base_url="http://camera.local:8080", surface_path="/tmp/frame.jpg")
        engine.src("/stream/index.m3u8")

        cmd = engine._decoder_command()

        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-progress") + 1] == "pipe:1"
        assert cmd[cmd.index("-i") + 1] == "http://camera.local:8080/stream/index.m3u8"
        assert cmd[-1] == "/tmp/frame.jpg"

    def test_nothing_seekable_before_playlist(self):
        engine = HlsEngine(base_url="http://camera.local:8080", surface_path="/tmp/frame.jpg")

        assert engine.seekable().length == 0

    @pytest.mark.asyncio
    async def test_play_without_source_raises(self):
        engine = HlsEngine(base_url="http://camera.local:8080", surface_path="/tmp/frame.jpg")

        with pytest.raises(RuntimeError):
            await engine.play()

    @pytest.mark.asyncio
    async def test_play_after_dispose_raises(self):
        engine = _engine_with_playlist(LIVE_PLAYLIST)
        engine.src("/stream/index.m3u8")
        await engine.dispose()

        with pytest.raises(RuntimeError):
            await engine.play()
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_pause_refreshes_playlist_and_emits(self):
        engine = _engine_with_playlist(LIVE_PLAYLIST)
        engine.src("/stream/index.m3u8")
        engine._paused = False
        paused = []
        engine.one("pause", lambda: paused.append(True))

        await engine.pause()

        assert paused == [True]
        ranges = engine.seekable()
        assert ranges.length == 1
        assert ranges.end(0) == 5.5
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_pause_emits_even_if_playlist_unavailable(self):
        engine = _engine_with_playlist("", status_code=404)
        engine.src("/stream/index.m3u8")
        engine._paused = False
        paused = []
        engine.one("pause", lambda: paused.append(True))

        await engine.pause()

        assert paused == [True]
        assert engine.seekable().length == 0
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_progress_output_emits_playing_once(self):
        engine = HlsEngine(base_url="http://camera.local:8080", surface_path="/tmp/frame.jpg")
        playing = []
        engine.one("playing", lambda: playing.append(True))

        reader = asyncio.StreamReader()
        reader.feed_data(b"out_time_us=N/A\nprogress=continue\nout_time_us=1500000\nprogress=continue\n")
        reader.feed_eof()
        await engine._read_progress(reader)

        assert playing == [True]
        assert engine.position == 1.5

    @pytest.mark.asyncio
    async def test_stream_info_emits_loadedmetadata(self):
        engine = HlsEngine(base_url="http://camera.local:8080", surface_path="/tmp/frame.jpg")
        loaded = []
        engine.one("loadedmetadata", lambda: loaded.append((engine.video_width(), engine.video_height())))

        reader = asyncio.StreamReader()
        reader.feed_data(
            b"Input #0, hls, from 'http://camera.local:8080/stream/index.m3u8':\n"
            b"  Stream #0:0: Video: h264 (High) ([27][0][0][0] / 0x001B), yuv420p(progressive), 1280x720, 30 fps\n"
        )
        reader.feed_eof()
        await engine._read_diagnostics(reader)

        assert loaded == [(1280, 720)]

    def test_live_surface_is_written_atomically(self):
        engine = HlsEngine(base_url="http://camera.local:8080", surface_path="/tmp/frame.jpg")
        engine.src("/stream/index.m3u8")

        cmd = engine._decoder_command()

        assert cmd[cmd.index("-atomic_writing") + 1] == "1"
        assert cmd[cmd.index("-f") + 1] == "image2"


# ============================================
# Test: Frame Rendering
# ============================================

class FakeRender:
    """Stands in for a one-shot FFmpeg render process."""

    def __init__(self, output_path: str, returncode: int = 0, hang: bool = False):
        self.pid = 4242
        self.output_path = output_path
        self.final_returncode = returncode
        self.hang = hang
        self.returncode = None
        self.killed = False

    async def communicate(self):
        if self.hang:
            await asyncio.sleep(3600)
        Path(self.output_path).write_bytes(b"\xff\xd8\xff\xd9")
        self.returncode = self.final_returncode
        stderr = b"" if self.final_returncode == 0 else b"Invalid data found when processing input"
        return b"", stderr

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        return self.returncode


class RenderSpawner:
    """Replacement for asyncio.create_subprocess_exec that records renders."""

    def __init__(self, **render_kwargs):
        self.render_kwargs = render_kwargs
        self.renders: list[FakeRender] = []

    async def __call__(self, *cmd, **kwargs):
        render = FakeRender(cmd[-1], **self.render_kwargs)
        self.renders.append(render)
        return render


class TestFrameRendering:
    """Seeking while paused renders one frame with a one-shot FFmpeg run."""

    def _paused_engine(self, tmp_path) -> HlsEngine:
        engine = HlsEngine(base_url="http://camera.local:8080", surface_path=str(tmp_path / "frame.jpg"))
        engine.src("/stream/index.m3u8")
        return engine

    @pytest.mark.asyncio
    async def test_rendered_frame_replaces_surface(self, tmp_path):
        engine = self._paused_engine(tmp_path)
        spawner = RenderSpawner()

        with patch("asyncio.create_subprocess_exec", spawner):
            await engine.current_time(12.0)

        assert engine.position == 12.0
        assert (tmp_path / "frame.jpg").read_bytes() == b"\xff\xd8\xff\xd9"
        assert [p.name for p in tmp_path.iterdir()] == ["frame.jpg"]

    @pytest.mark.asyncio
    async def test_failed_render_leaves_no_temp_file(self, tmp_path):
        engine = self._paused_engine(tmp_path)

        with patch("asyncio.create_subprocess_exec", RenderSpawner(returncode=1)):
            await engine.current_time(12.0)

        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_cancelled_render_kills_ffmpeg(self, tmp_path):
        """Retiring the session mid-render must not leave FFmpeg running."""
        engine = self._paused_engine(tmp_path)
        spawner = RenderSpawner(hang=True)

        with patch("asyncio.create_subprocess_exec", spawner):
            task = asyncio.create_task(engine.current_time(5.0))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert len(spawner.renders) == 1
        assert spawner.renders[0].killed is True

    @pytest.mark.asyncio
    async def test_render_timeout_kills_ffmpeg(self, tmp_path):
        engine = self._paused_engine(tmp_path)
        engine.RENDER_TIMEOUT_S = 0.05
        spawner = RenderSpawner(hang=True)

        with patch("asyncio.create_subprocess_exec", spawner):
            await engine.current_time(5.0)

        assert spawner.renders[0].killed is True
        assert not (tmp_path / "frame.jpg").exists()

    @pytest.mark.asyncio
    async def test_each_render_uses_its_own_temp_file(self, tmp_path):
        engine = self._paused_engine(tmp_path)
        spawner = RenderSpawner()

        with patch("asyncio.create_subprocess_exec", spawner):
            await engine.current_time(5.0)
            await engine.current_time(6.0)

        first, second = (render.output_path for render in spawner.renders)
        assert first != second
        assert first.endswith(".jpg")
