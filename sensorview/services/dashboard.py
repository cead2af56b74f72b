"""
Dashboard Coordinator

Binds the two user-selectable modes to the stream controller and the
polling scheduler, and holds the readings shown on screen.

State Machine:
    IDLE     → select_live()     → LIVE
    SNAPSHOT → select_live()     → LIVE
    IDLE     → select_snapshot() → SNAPSHOT
    LIVE     → select_snapshot() → SNAPSHOT
    any      → teardown()        → IDLE

    LIVE:     continuous playback + polling every period_ms
    SNAPSHOT: one frozen frame, polling stopped

Key Invariants:
    - LIVE implies polling is active; SNAPSHOT implies it is not
    - A transition overtaken by a newer one does not finish its own steps
    - Readings only change after a fully successful fetch cycle; the
      timestamp is assigned before any value
"""
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional

import structlog

from sensorview.panels import DEFAULT_PANELS, build_readings
from sensorview.schemas import SensorFieldSpec, SensorReading
from sensorview.services.formatter import format_payload, parse_timestamp, timestamp_label
from sensorview.services.polling import PollingScheduler
from sensorview.services.stream_control import StreamController

logger = structlog.get_logger("dashboard")

FetchFn = Callable[[], Awaitable[Mapping[str, Any]]]
FormatFn = Callable[[Mapping[str, Any], Any], dict[str, str]]


class DashboardMode(str, Enum):
    """Dashboard modes."""
    IDLE = "IDLE"          # No mode chosen yet
    LIVE = "LIVE"          # Live view: stream + polling
    SNAPSHOT = "SNAPSHOT"  # Single frozen frame, no polling


class DashboardCoordinator:
    """Top-level state owner for one station dashboard."""

    def __init__(
        self,
        stream: StreamController,
        scheduler: PollingScheduler,
        fetch_sensor: FetchFn,
        panels: Optional[dict[str, tuple[SensorFieldSpec, ...]]] = None,
        period_ms: int = 1000,
        display_tz: tzinfo = timezone.utc,
        formatter: FormatFn = format_payload,
    ):
        self.stream = stream
        self.scheduler = scheduler
        self.fetch_sensor = fetch_sensor
        self.panels = panels if panels is not None else DEFAULT_PANELS
        self.period_ms = period_ms
        self.display_tz = display_tz
        self.formatter = formatter

        self.readings: dict[str, list[SensorReading]] = build_readings(self.panels)
        self.captured_at: datetime = datetime.now(timezone.utc)
        self._mode = DashboardMode.IDLE
        self._transition = 0

    @property
    def mode(self) -> DashboardMode:
        return self._mode

    @property
    def is_polling(self) -> bool:
        return self.scheduler.is_active

    @property
    def timestamp_label(self) -> str:
        return timestamp_label(self.captured_at, self.display_tz)

    # ============ Mode Transitions ============

    async def select_live(self) -> DashboardMode:
        """Play the stream continuously and poll sensors."""
        self._transition += 1
        transition = self._transition
        previous = self._mode

        await self.stream.start_live()
        if transition != self._transition:
            logger.info("[DASHBOARD] Live transition superseded", transition=transition)
            return self._mode

        self.scheduler.start(self.period_ms, self.fetch_cycle)
        self._mode = DashboardMode.LIVE
        logger.info(
            "[DASHBOARD] Mode transition",
            previous_mode=previous.value,
            new_mode=self._mode.value,
            period_ms=self.period_ms,
        )
        return self._mode

    async def select_snapshot(self) -> DashboardMode:
        """Stop polling and freeze the most recent frame."""
        self._transition += 1
        transition = self._transition
        previous = self._mode

        self.scheduler.stop()
        self._mode = DashboardMode.SNAPSHOT

        await self.stream.capture_snapshot()
        if transition != self._transition:
            logger.info("[DASHBOARD] Snapshot transition superseded", transition=transition)
            return self._mode

        logger.info(
            "[DASHBOARD] Mode transition",
            previous_mode=previous.value,
            new_mode=self._mode.value,
        )
        return self._mode

    async def teardown(self) -> None:
        """Release the stream session and stop polling."""
        previous = self._mode
        self._transition += 1
        self.scheduler.stop()
        self._mode = DashboardMode.IDLE
        await self.stream.dispose()
        logger.info("[DASHBOARD] Torn down", previous_mode=previous.value)

    # ============ Polling Body ============

    async def fetch_cycle(self) -> None:
        """
        Fetch, format and apply one sensor payload.

        Everything that can fail runs before anything is assigned, so a
        failing cycle leaves the timestamp and values as they were.
        """
        payload = await self.fetch_sensor()
        captured_at = parse_timestamp(payload.get("timestamp"))
        values = self.formatter(payload, self.panels.values())

        self.captured_at = captured_at
        for readings in self.readings.values():
            for reading in readings:
                if reading.key and reading.key in values:
                    reading.value = values[reading.key]

        logger.debug(
            "[DASHBOARD] Readings updated",
            captured_at=captured_at.isoformat(),
            fields=len(values),
        )

    # ============ Read Model ============

    def snapshot(self) -> dict:
        """Plain-data view of everything the presentation layer paints."""
        return {
            "mode": self._mode.value,
            "is_polling": self.is_polling,
            "captured_at": self.captured_at.isoformat(),
            "timestamp_label": self.timestamp_label,
            "stream": self.stream.status,
            "panels": [
                {"name": name, "readings": [r.model_dump() for r in readings]}
                for name, readings in self.readings.items()
            ],
        }
