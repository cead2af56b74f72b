"""
Sensor Viewer - FastAPI Application

Serves the station's HLS stream and latest sensor reading, and hosts the
dashboard coordinator that switches between live view and snapshot.
"""
import argparse
import os
from contextlib import asynccontextmanager
from pathlib import Path
from zoneinfo import ZoneInfo

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sensorview.config import Settings, get_settings
from sensorview.routes import dashboard, sensor, stream
from sensorview.sensor_feed import MqttSensorListener, SensorFeed
from sensorview.services.dashboard import DashboardCoordinator
from sensorview.services.media_engine import hls_engine_factory
from sensorview.services.polling import PollingScheduler
from sensorview.services.sensor_client import SensorClient
from sensorview.services.stream_control import StreamController

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(ensure_ascii=False),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()
settings = get_settings()


def build_coordinator(settings: Settings, sensor_client: SensorClient) -> DashboardCoordinator:
    """Wire the stream controller, scheduler and sensor client together."""
    stream_controller = StreamController(
        engine_factory=hls_engine_factory(
            base_url=settings.resolved_stream_base_url,
            surface_path=settings.frame_path,
            ffmpeg_path=settings.ffmpeg_path,
            fetch_timeout_s=settings.fetch_timeout_s,
        ),
        playlist_path=settings.playlist_path,
        snapshot_timeout_s=settings.snapshot_timeout_s,
    )
    return DashboardCoordinator(
        stream=stream_controller,
        scheduler=PollingScheduler(cycle_timeout_s=settings.cycle_timeout_s),
        fetch_sensor=sensor_client.fetch,
        period_ms=settings.polling_period_ms,
        display_tz=ZoneInfo(settings.display_timezone),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown."""
    # Startup
    logger.info("Starting Sensor Viewer", version=settings.app_version, port=settings.http_port)
    Path(settings.video_dir).mkdir(parents=True, exist_ok=True)

    feed = SensorFeed()
    app.state.sensor_feed = feed

    listener = None
    if settings.mqtt_port:
        listener = MqttSensorListener(feed, settings.mqtt_host, settings.mqtt_port, settings.mqtt_topic)
        listener.start()
    else:
        logger.info("MQTT disabled (MQTT_PORT=0); /api/sensor serves the initial reading")

    sensor_client = SensorClient(settings.resolved_sensor_url, timeout_s=settings.fetch_timeout_s)
    await sensor_client.initialize()
    coordinator = build_coordinator(settings, sensor_client)
    app.state.coordinator = coordinator

    yield

    # Shutdown
    logger.info("Shutting down Sensor Viewer")
    await app.state.coordinator.teardown()
    await app.state.coordinator.scheduler.aclose()
    await sensor_client.close()
    if listener is not None:
        listener.stop()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Live camera stream and environmental sensor dashboard",
    lifespan=lifespan,
)

# Include routers
app.include_router(sensor.router)
app.include_router(stream.router)
app.include_router(dashboard.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {
        "status": "healthy",
        "version": settings.app_version,
    }


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "dashboard": "/api/dashboard",
        "sensor": "/api/sensor",
        "playlist": settings.playlist_path,
        "health": "/health",
    }


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler to keep internals out of responses."""
    logger.exception("Unhandled exception", path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


def apply_cli_overrides(settings: Settings, args: argparse.Namespace) -> None:
    """
    Apply command line values to the cached settings.

    They are exported to the environment too, so a reloader process that
    rebuilds Settings sees the same values.
    """
    overrides = {
        "http_port": args.http,
        "mqtt_port": args.mqtt,
        "video_dir": args.dir,
        "http_host": args.host,
    }
    for name, value in overrides.items():
        setattr(settings, name, value)
        os.environ[name.upper()] = str(value)


def main():
    """Command line entry point."""
    parser = argparse.ArgumentParser(description="Sensor Viewer")
    parser.add_argument("--http", type=int, default=settings.http_port, help="http listen port")
    parser.add_argument("--mqtt", type=int, default=settings.mqtt_port, help="mqtt broker port (0 disables)")
    parser.add_argument("--dir", default=settings.video_dir, help="hls video saved dir")
    parser.add_argument("--host", default=settings.http_host, help="http listen address")
    args = parser.parse_args()
    apply_cli_overrides(settings, args)

    import uvicorn
    uvicorn.run(
        "sensorview.main:app",
        host=settings.http_host,
        port=settings.http_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
