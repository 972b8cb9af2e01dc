from fastapi import FastAPI, File, Form, Query, Request, UploadFile, HTTPException
from fastapi.responses import JSONResponse, Response
from typing import Dict, Optional, Tuple
import logging
import sys
import threading
from uuid import uuid4
from pathlib import Path
from dotenv import load_dotenv


# Load environment variables
load_dotenv()

from badgephoto.compositor import decode_image, encode_png
from badgephoto.env_config import get_config_summary, load_settings, startup_validation
from badgephoto.errors import PipelineError
from badgephoto.pipeline import PipelineServices, PipelineSession, SessionRegistry, build_services
from badgephoto.types import CropShape, ProcessedImage

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger("app")

PIPELINE_VERSION = "1.0.0"

# ============================================================================
# Upload validation
# ============================================================================
ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp"}

IMAGE_MAGIC_BYTES = {
    b"\xff\xd8\xff": "image/jpeg",
    b"\x89PNG\r\n\x1a\n": "image/png",
    b"RIFF": "image/webp",
}

# Pipeline error code -> HTTP status
ERROR_STATUS = {
    "not_ready": 503,
    "no_face_detected": 409,
    "stale_result": 409,
    "no_image_loaded": 409,
    "backend_incompatible": 422,
    "unsupported_output_shape": 422,
    "invalid_geometry": 422,
    "fetch_failure": 502,
    "unknown_backend": 400,
    "config_error": 500,
}
# ============================================================================

settings = load_settings()
if settings.debug:
    logging.getLogger("badgephoto").setLevel(logging.DEBUG)

services: PipelineServices = build_services(settings)


def _remove_upload(path: str):
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as e:
        logger.warning("[UPLOAD] Could not delete %s: %s", path, e)


def _delete_upload(session: PipelineSession):
    """Remove the stored upload of an evicted session"""
    if session.source_path:
        _remove_upload(session.source_path)
        session.source_path = None


# session_id -> PipelineSession (in-memory, single process, LRU + idle TTL)
_sessions = SessionRegistry(settings.max_sessions, settings.session_ttl, on_evict=_delete_upload)

app = FastAPI()


# ============================================================================
# STARTUP & HEALTH
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Validate configuration and start loading models in the background."""
    startup_validation(settings)
    Path(settings.upload_dir).mkdir(parents=True, exist_ok=True)

    # Requests arriving before the models are loaded get 503 (NotReady)
    threading.Thread(target=services.warm_up, name="model-warmup", daemon=True).start()


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    status_code = ERROR_STATUS.get(exc.code, 500)
    if status_code >= 500:
        logger.error("[%s] %s %s: %s", exc.code, request.method, request.url.path, exc)
    else:
        logger.info("[%s] %s %s: %s", exc.code, request.method, request.url.path, exc)

    return JSONResponse({
        "success": False,
        "code": exc.code,
        "error": str(exc)
    }, status_code=status_code)


@app.get("/api/health", response_class=JSONResponse)
async def health():
    """
    Basic health check endpoint for load balancers and uptime monitoring.
    Reports readiness of each capability; models load after startup.
    """
    return JSONResponse({
        "status": "ok",
        "service": "badgephoto-api",
        "version": PIPELINE_VERSION,
        "face_detector_ready": services.detector.ready,
        "backends": services.orchestrator.status()
    })


@app.get("/api/config-check", response_class=JSONResponse)
async def config_check():
    """
    Configuration check endpoint for debugging.

    Returns non-secret configuration summary (model sources with
    credentials masked, sizes, providers, warnings).
    """
    summary = get_config_summary(settings)
    summary["default_backend"] = services.default_backend
    return JSONResponse(summary)


# ============================================================================
# Upload
# ============================================================================

def get_file_extension(filename: str) -> str:
    return Path(filename or "").suffix.lower()


def is_allowed_file(filename: str) -> bool:
    return get_file_extension(filename) in ALLOWED_EXTENSIONS


def validate_image_bytes(content: bytes) -> Tuple[bool, str, str]:
    """
    Validate image content by checking magic bytes.

    Returns:
        Tuple of (is_valid, detected_type, error_message)
    """
    if len(content) < 8:
        return False, "", "File too small to be a valid image"

    detected_type = None
    for magic, mime_type in IMAGE_MAGIC_BYTES.items():
        if content[:len(magic)] == magic:
            detected_type = mime_type
            break

    # WebP: RIFF container must say WEBP
    if detected_type == "image/webp" and b"WEBP" not in content[:12]:
        detected_type = None

    if not detected_type:
        return False, "", "Invalid image format (magic bytes check failed)"

    return True, detected_type, ""


def _get_session(session_id: str) -> PipelineSession:
    session = _sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _get_or_create_session(session_id: Optional[str]) -> PipelineSession:
    if session_id:
        return _get_session(session_id)

    return _sessions.add(PipelineSession(services, session_id=str(uuid4())))


@app.post("/upload", response_class=JSONResponse)
async def upload_file(photo: UploadFile = File(...), session_id: Optional[str] = Form(None)):
    if not is_allowed_file(photo.filename):
        return JSONResponse({
            "success": False,
            "error": f"Only .jpg, .jpeg, .png and .webp files are accepted. Uploaded: {photo.filename}",
            "session_id": session_id
        }, status_code=400)

    content = await photo.read()

    if len(content) == 0:
        return JSONResponse({
            "success": False,
            "error": "Empty file",
            "session_id": session_id
        }, status_code=400)

    if len(content) > settings.max_upload_bytes:
        return JSONResponse({
            "success": False,
            "error": f"File too large, maximum {settings.max_upload_bytes // (1024 * 1024)}MB",
            "session_id": session_id
        }, status_code=413)

    is_valid, detected_type, validation_error = validate_image_bytes(content)
    if not is_valid:
        return JSONResponse({
            "success": False,
            "error": f"Invalid file format: {validation_error}",
            "session_id": session_id
        }, status_code=400)

    try:
        image = decode_image(content)
    except ValueError as e:
        return JSONResponse({
            "success": False,
            "error": f"Could not decode image: {e}",
            "session_id": session_id
        }, status_code=400)

    session = _get_or_create_session(session_id)

    image_id = str(uuid4())
    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    saved_file_path = upload_dir / f"{image_id}{get_file_extension(photo.filename)}"
    saved_file_path.write_bytes(content)
    logger.info("[UPLOAD] Stored locally: %s (%s, %d bytes)", saved_file_path, detected_type, len(content))

    previous_path = session.source_path
    session.source_path = str(saved_file_path)
    generation = session.set_image(image)
    if previous_path:
        _remove_upload(previous_path)

    return JSONResponse({
        "success": True,
        "session_id": session.session_id,
        "image_id": image_id,
        "generation": generation,
        "width": int(image.shape[1]),
        "height": int(image.shape[0])
    })


# ============================================================================
# Session actions
# ============================================================================

def _png_response(result: ProcessedImage, headers: Optional[Dict[str, str]] = None) -> Response:
    all_headers = {
        "X-Generation": str(result.generation),
        "X-Result-Kind": result.kind,
    }
    all_headers.update(headers or {})
    return Response(content=encode_png(result.pixels), media_type="image/png", headers=all_headers)


def _segmentation_headers(result: ProcessedImage) -> Dict[str, str]:
    segmentation = result.metadata.get("segmentation", {})
    return {
        "X-Backend-Used": segmentation.get("backend_name") or "",
        "X-Input-Layout": segmentation.get("input_layout_used") or "native",
    }


@app.post("/api/sessions/{session_id}/detect", response_class=JSONResponse)
def detect_faces(session_id: str):
    session = _get_session(session_id)
    detections, generation = session.run_detection()

    return JSONResponse({
        "success": True,
        "generation": generation,
        "count": len(detections),
        "detections": [d.to_dict() for d in detections]
    })


@app.post("/api/sessions/{session_id}/crop")
def crop_face(session_id: str, shape: CropShape = Query(CropShape.RECT)):
    session = _get_session(session_id)
    return _png_response(session.crop(shape))


@app.post("/api/sessions/{session_id}/remove-background")
def remove_background(session_id: str, backend: Optional[str] = Query(None)):
    session = _get_session(session_id)
    result = session.remove_background(backend)
    return _png_response(result, _segmentation_headers(result))


@app.post("/api/sessions/{session_id}/remove-background-round")
def remove_background_round(session_id: str, backend: Optional[str] = Query(None)):
    session = _get_session(session_id)
    result = session.remove_background_and_crop_round(backend)
    return _png_response(result, _segmentation_headers(result))


@app.post("/api/sessions/{session_id}/round-with-background")
def round_with_background(session_id: str):
    session = _get_session(session_id)
    return _png_response(session.round_crop_with_background())
