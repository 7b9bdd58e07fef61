"""Photo booth HTTP service.

Serve with ``uvicorn --factory photobooth_service:create_app``; settings are
loaded from the environment when the app is built, not at import.
"""

import asyncio
import logging
import os
import time
import uuid
from collections import deque
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from fastapi import BackgroundTasks, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from booth_errors import BoothError, CompositionFailed, EditFailed, UploadFailed
from booth_settings import BoothSettings, load_settings
from print_sheet import run_print_job
from removal_chain import run_animation_job
from strip_composer import compose_strip, resize_for_upload
from style_editor import StyleEditor, fan_out_edits

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_EXTENSION = ".jpg"
ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp"}

ERROR_STATUS = {
    UploadFailed: 400,
    EditFailed: 502,
    CompositionFailed: 500,
}

logger = logging.getLogger("photobooth")


def configure_logging(service_log: Path) -> logging.Logger:
    logger.setLevel(logging.INFO)
    service_log = Path(service_log)
    service_log.parent.mkdir(parents=True, exist_ok=True)
    for handler in list(logger.handlers):
        if isinstance(handler, logging.FileHandler) and handler.baseFilename != str(service_log.resolve()):
            logger.removeHandler(handler)
            handler.close()
    if not any(isinstance(handler, logging.FileHandler) for handler in logger.handlers):
        file_handler = logging.FileHandler(service_log)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        logger.addHandler(file_handler)
    if not any(type(handler) is logging.StreamHandler for handler in logger.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        logger.addHandler(stream_handler)
    logger.propagate = False
    return logger


class InputSummary(BaseModel):
    filename: str
    url: str
    source_ref: Optional[str] = None


class OutputSummary(BaseModel):
    photo_id: int
    past: str
    future: str
    composite: str
    animation: str


class StageMetrics(BaseModel):
    upload_seconds: float
    edit_seconds: float
    compose_seconds: float
    total_seconds: float


class SubmitResponse(BaseModel):
    success: bool = True
    job_id: str
    input: InputSummary
    output: OutputSummary
    metrics: StageMetrics
    debug: Optional[Dict[str, Any]] = None


def _read_log_tail(service_log: Path, lines: int = 60) -> Optional[str]:
    if not os.path.exists(service_log):
        return None
    try:
        with open(service_log, "r", encoding="utf-8", errors="replace") as log_file:
            tail = deque(log_file, maxlen=lines)
        return "".join(tail)
    except OSError:
        return None


def _safe_extension(filename: Optional[str]) -> str:
    extension = os.path.splitext(filename or "")[1].lower()
    if extension not in ALLOWED_EXTENSIONS:
        return DEFAULT_EXTENSION
    return extension


def _dedupe_path(candidate_path: str) -> str:
    if not os.path.exists(candidate_path):
        return candidate_path
    stem, ext = os.path.splitext(candidate_path)
    counter = 1
    while True:
        updated = f"{stem}_{counter}{ext}"
        if not os.path.exists(updated):
            return updated
        counter += 1


def _claim_path(photo_dir: Path, photo_id: int) -> Path:
    return photo_dir / f".{photo_id}.claim"


def _reserve_photo_id(photo_dir: Path) -> int:
    """Claim a millisecond id whose composite name is free.

    The claim file is created with O_EXCL so two requests in the same
    millisecond never share an id. Call ``_release_photo_id`` once the
    composite exists or the request has failed.
    """
    photo_id = int(time.time() * 1000)
    while True:
        if not (photo_dir / f"{photo_id}.jpg").exists():
            try:
                fd = os.open(_claim_path(photo_dir, photo_id), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                pass
            else:
                os.close(fd)
                return photo_id
        photo_id += 1


def _release_photo_id(photo_dir: Path, photo_id: int) -> None:
    try:
        os.remove(_claim_path(photo_dir, photo_id))
    except FileNotFoundError:
        pass


async def _run_followups(print_args: Tuple[Any, ...], animation_args: Tuple[Any, ...]) -> None:
    """Print and animate side by side; neither waits on the other."""
    outcomes = await asyncio.gather(
        run_print_job(*print_args),
        run_animation_job(*animation_args),
        return_exceptions=True,
    )
    for label, outcome in zip(("print", "animation"), outcomes):
        if isinstance(outcome, Exception):
            logger.error("%s job crashed: %s", label, outcome)


def _flag(value: Optional[str]) -> bool:
    return bool(value) and value.strip().lower() in {"1", "true", "yes", "on"}


def _http_error(exc: BoothError, job_id: str) -> HTTPException:
    status_code = ERROR_STATUS.get(type(exc), 500)
    return HTTPException(status_code=status_code, detail=exc.to_detail(job_id))


async def _store_upload(photo: Optional[UploadFile], upload_dir: Path, photo_id: int) -> Tuple[Path, bytes]:
    data = await photo.read() if photo is not None else b""
    if not data:
        raise UploadFailed("No file uploaded")
    filename = f"photo_{photo_id}{_safe_extension(photo.filename)}"
    stored = Path(_dedupe_path(str(upload_dir / filename)))
    stored.write_bytes(data)
    return stored, data


def create_app(settings: Optional[BoothSettings] = None, editor: Optional[StyleEditor] = None) -> FastAPI:
    settings = settings or load_settings()
    settings.ensure_dirs()
    configure_logging(settings.service_log)
    editor = editor or StyleEditor(settings)

    app = FastAPI(title="Photo Booth Service")
    app.state.settings = settings
    app.state.editor = editor

    @app.post("/submit")
    async def submit(
        background_tasks: BackgroundTasks,
        photo: Optional[UploadFile] = File(None),
        past_prompt: Optional[str] = Form(None),
        future_prompt: Optional[str] = Form(None),
        remove_prompt: Optional[str] = Form(None),
        debug: Optional[str] = Form(None),
    ):
        job_id = str(uuid.uuid4())
        logger.info("job %s: received /submit request", job_id)
        overall_start = time.perf_counter()
        photo_id = _reserve_photo_id(settings.photo_dir)

        try:
            original_path, data = await _store_upload(photo, settings.upload_dir, photo_id)
            logger.info("job %s: saved original to %s", job_id, original_path)
            try:
                upload_bytes = await asyncio.to_thread(resize_for_upload, data)
            except CompositionFailed as exc:
                raise UploadFailed("Uploaded file is not a readable image.", detail=exc.message) from exc

            stage_start = time.perf_counter()
            source_ref = await editor.upload(upload_bytes, original_path.name)
            upload_elapsed = time.perf_counter() - stage_start

            stage_start = time.perf_counter()
            styled = await fan_out_edits(
                editor,
                source_ref,
                past_prompt or settings.past_prompt,
                future_prompt or settings.future_prompt,
            )
            past_bytes = await editor.fetch(styled.past.image_ref)
            future_bytes = await editor.fetch(styled.future.image_ref)
            edit_elapsed = time.perf_counter() - stage_start
            logger.info(
                "job %s: edits complete in %.2fs (past=%s, future=%s)",
                job_id,
                edit_elapsed,
                styled.past.image_ref[:120],
                styled.future.image_ref[:120],
            )

            stage_start = time.perf_counter()
            composite = await asyncio.to_thread(
                compose_strip,
                past_bytes,
                data,
                future_bytes,
                settings.template_path,
                settings.photo_dir / f"{photo_id}.jpg",
            )
            compose_elapsed = time.perf_counter() - stage_start
            logger.info("job %s: saved composite %s", job_id, composite.path)
        except BoothError as exc:
            logger.error("job %s: submission failed (%s): %s", job_id, exc.code, exc.message)
            raise _http_error(exc, job_id) from exc
        finally:
            _release_photo_id(settings.photo_dir, photo_id)

        background_tasks.add_task(
            _run_followups,
            (composite.path, settings.photo_dir, photo_id, settings.print_server_url),
            (editor, settings, composite.path, photo_id, remove_prompt or settings.remove_prompt),
        )

        metrics = StageMetrics(
            upload_seconds=upload_elapsed,
            edit_seconds=edit_elapsed,
            compose_seconds=compose_elapsed,
            total_seconds=time.perf_counter() - overall_start,
        )
        response = SubmitResponse(
            job_id=job_id,
            input=InputSummary(
                filename=original_path.name,
                url=f"/uploads/{original_path.name}",
                source_ref=None if source_ref.startswith("data:") else source_ref,
            ),
            output=OutputSummary(
                photo_id=photo_id,
                past=styled.past.image_ref,
                future=styled.future.image_ref,
                composite=f"/photos/{composite.path.name}",
                animation=f"/photos/{photo_id}.gif",
            ),
            metrics=metrics,
        )
        if _flag(debug):
            response.debug = {
                "stage_metrics": metrics.model_dump(),
                "service_log_tail": _read_log_tail(settings.service_log),
            }
        logger.info("job %s: responded in %.2fs; animation queued", job_id, metrics.total_seconds)
        return response.model_dump(exclude_none=True)

    @app.post("/upload")
    async def upload(photo: Optional[UploadFile] = File(None)):
        job_id = str(uuid.uuid4())
        try:
            stored, _ = await _store_upload(photo, settings.upload_dir, int(time.time() * 1000))
        except UploadFailed as exc:
            raise _http_error(exc, job_id) from exc
        logger.info("Saved file: %s", stored)
        return {"success": True, "filename": stored.name, "url": f"/uploads/{stored.name}"}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/")
    async def root():
        return {
            "message": "photo server online",
            "submit_endpoint": "/submit",
            "upload_endpoint": "/upload",
            "docs": "/docs",
            "example_submit": 'curl -F "photo=@path/to/photo.jpg" http://localhost:8000/submit',
        }

    app.mount("/uploads", StaticFiles(directory=str(settings.upload_dir)), name="uploads")
    app.mount("/photos", StaticFiles(directory=str(settings.photo_dir)), name="photos")
    return app