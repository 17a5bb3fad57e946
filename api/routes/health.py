from fastapi import APIRouter
from config.settings import settings
from core.executor import ProcessExecutor

router = APIRouter()

@router.get("/")
def health_check():
    ffmpeg_ok = ProcessExecutor.check_available(settings.ffmpeg_path)
    return {
        "status": "healthy" if ffmpeg_ok else "degraded",
        "ffmpeg_available": ffmpeg_ok,
        "ffprobe_available": ProcessExecutor.check_available(settings.ffprobe_path),
    }

@router.get("/encoder")
def encoder_status():
    version = ProcessExecutor.version(settings.ffmpeg_path)
    if version:
        return {"available": True, "path": settings.ffmpeg_path, "version": version}
    return {"available": False, "path": settings.ffmpeg_path}
