"""
Sensor API Routes

Serves the latest reading received from the station, in the station's own
camelCase JSON shape.
"""
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from sensorview.sensor_feed import SensorFeed


router = APIRouter(prefix="/api", tags=["sensor"])


def _feed(request: Request) -> SensorFeed:
    return request.app.state.sensor_feed


@router.get("/sensor")
async def get_latest_sensor(request: Request):
    """
    Latest sensor payload.

    PUBLIC ENDPOINT - No authentication required.

    Before the first MQTT message arrives, only the timestamp is meaningful
    (all readings are zero).
    """
    payload = _feed(request).latest
    return JSONResponse(
        content=payload.model_dump(by_alias=True),
        headers={"Cache-Control": "no-store"},
    )
