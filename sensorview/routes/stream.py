"""
HLS file serving.

The camera encoder writes index.m3u8 and its .ts segments into VIDEO_DIR;
this route hands them out unchanged and never lets a client cache them.
"""
from pathlib import Path

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from sensorview.config import get_settings


router = APIRouter(prefix="/stream", tags=["stream"])

_MEDIA_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
}


def resolve_stream_file(video_dir: str, file_name: str) -> Path:
    """
    Map a request file name onto VIDEO_DIR.

    Raises:
        HTTPException 404: name escapes the directory or file does not exist
    """
    base = Path(video_dir).resolve()
    candidate = (base / file_name).resolve()
    if candidate.parent != base or not candidate.is_file():
        raise HTTPException(status_code=404, detail="Stream file not found")
    return candidate


@router.get("/{file_name}")
async def get_stream_file(file_name: str):
    """Playlist or segment from the HLS output directory."""
    path = resolve_stream_file(get_settings().video_dir, file_name)
    return FileResponse(
        path,
        media_type=_MEDIA_TYPES.get(path.suffix, "application/octet-stream"),
        headers={"Cache-Control": "no-store"},
    )
