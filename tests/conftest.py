"""
Pytest configuration and fixtures for Sensor Viewer tests.
"""
import asyncio
import os
import sys
import tempfile

# Add repo root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set test environment before importing app
_TEST_ROOT = tempfile.mkdtemp(prefix="sensorview-tests-")
os.environ["VIDEO_DIR"] = os.path.join(_TEST_ROOT, "video")
os.environ["FRAME_PATH"] = os.path.join(_TEST_ROOT, "frame", "frame.jpg")
os.environ["MQTT_PORT"] = "0"
os.environ["DISPLAY_TIMEZONE"] = "UTC"
os.environ["DEBUG"] = "true"

import pytest

from sensorview.services.media_engine import OneShotEvents, TimeRanges


class FakeEngine:
    """
    In-memory MediaEngine. Records every call into a shared log and lets
    tests fire engine events by hand.
    """

    def __init__(self, name: str, log: list, ranges=((0.0, 12.0),)):
        self.name = name
        self.log = log
        self.ranges = TimeRanges(ranges)
        self.events = OneShotEvents()
        self.position = None
        self.source = None
        self.disposed = False
        self.dispose_delay_s = 0.0

    async def reset(self):
        self.log.append((self.name, "reset"))

    def src(self, path):
        self.source = path
        self.log.append((self.name, "src", path))

    async def play(self):
        self.log.append((self.name, "play"))

    def one(self, event, listener):
        self.events.one(event, listener)

    async def pause(self):
        self.log.append((self.name, "pause"))

    async def current_time(self, position_s):
        self.position = position_s
        self.log.append((self.name, "current_time", position_s))

    def seekable(self):
        return self.ranges

    def video_width(self):
        return 1280

    def video_height(self):
        return 720

    async def dispose(self):
        if self.dispose_delay_s:
            await asyncio.sleep(self.dispose_delay_s)
        self.disposed = True
        self.events.clear()
        self.log.append((self.name, "dispose"))

    async def fire(self, event):
        """Emit `event` and wait for any async listeners it scheduled."""
        await asyncio.gather(*self.events.emit(event))


class FakeEngineFactory:
    """Hands out FakeEngines named engine-1, engine-2, ... sharing one call log."""

    def __init__(self, ranges=((0.0, 12.0),)):
        self.log: list = []
        self.engines: list[FakeEngine] = []
        self.ranges = ranges

    def __call__(self) -> FakeEngine:
        engine = FakeEngine(f"engine-{len(self.engines) + 1}", self.log, self.ranges)
        self.engines.append(engine)
        return engine


@pytest.fixture
def engine_factory():
    return FakeEngineFactory()


@pytest.fixture
def sample_payload():
    """Station payload as published on the MQTT topic."""
    return {
        "timestamp": "2024-05-01T03:04:00Z",
        "errorFlag": 0,
        "windVelocity": 3.47,
        "windDirection": 182.25,
        "temperature": 23.456,
        "humidity": 61.9,
        "airPressure": 1013.8,
        "illuminance": 52000.7,
        "rainLevel": 0,
        "ultraVioletA": 1.29,
        "ultraVioletB": 0.1,
        "accelerationX": 0.01,
        "accelerationY": -0.02,
        "accelerationZ": 0.98,
        "inclinationXZ": 1.05,
        "inclinationYZ": -0.5,
        "maxWindVelocity": 5.2,
        "directMaxWindVelocity": 190.0,
        "maxInstWindVelocity": 7.89,
        "directMaxInstWindVelocity": 200.11,
    }
