"""
Dashboard API Routes

The presentation layer reads the dashboard state from here and selects
modes with the two POST endpoints. Mode selection mirrors the two buttons
of the viewer: "映像取得" (live) and "画像取得" (snapshot).
"""
import os

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import FileResponse

from sensorview.config import get_settings
from sensorview.schemas import DashboardStateResponse, ModeChangeResponse
from sensorview.services.dashboard import DashboardCoordinator


router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


def _coordinator(request: Request) -> DashboardCoordinator:
    return request.app.state.coordinator


def _mode_response(coordinator: DashboardCoordinator) -> ModeChangeResponse:
    return ModeChangeResponse(
        mode=coordinator.mode.value,
        is_polling=coordinator.is_polling,
        stream=coordinator.stream.status,
    )


@router.get("", response_model=DashboardStateResponse)
async def get_dashboard_state(request: Request):
    """
    Current mode, capture timestamp label and ordered panel readings.

    Values stay at the last successful poll; nothing is cleared on error.
    """
    return DashboardStateResponse(**_coordinator(request).snapshot())


@router.post("/live", response_model=ModeChangeResponse)
async def select_live(request: Request):
    """Start live playback and periodic sensor polling."""
    coordinator = _coordinator(request)
    await coordinator.select_live()
    return _mode_response(coordinator)


@router.post("/snapshot", response_model=ModeChangeResponse)
async def select_snapshot(request: Request):
    """Stop polling and freeze the most recent camera frame."""
    coordinator = _coordinator(request)
    await coordinator.select_snapshot()
    return _mode_response(coordinator)


@router.get("/frame")
async def get_frame():
    """The frame currently shown by the stream session."""
    frame_path = get_settings().frame_path
    if not os.path.isfile(frame_path):
        raise HTTPException(status_code=404, detail="No frame captured yet")
    return FileResponse(frame_path, media_type="image/jpeg", headers={"Cache-Control": "no-store"})
