import os
import shutil
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from transition_graph import DurationPolicy

repo_dir = os.path.dirname(os.path.abspath(__file__))
env_path = os.path.join(repo_dir, ".env")
venv_env_path = os.path.join(repo_dir, ".venv", ".env")

DEFAULT_PAST_PROMPT = (
    "Reimagine this photo as if it were taken 50 years in the past. Keep the people and poses, "
    "restyle clothing, hair and setting to match the era."
)
DEFAULT_FUTURE_PROMPT = (
    "Reimagine this photo as if it were taken 50 years in the future. Keep the people and poses, "
    "restyle clothing, hair and setting to match the era."
)
DEFAULT_REMOVE_PROMPT = "Remove one person from this photo and fill the empty space naturally."

# Allow AWS_* env names to populate (and override) SPACES_* variables.
ENV_FALLBACKS = {
    "SPACES_ENDPOINT": "AWS_S3_ENDPOINT_URL",
    "SPACES_ACCESS_KEY": "AWS_ACCESS_KEY_ID",
    "SPACES_SECRET_KEY": "AWS_SECRET_ACCESS_KEY",
    "SPACES_REGION": "AWS_REGION",
}


class ImageHostKind(str, Enum):
    INLINE = "inline"
    SPACES = "spaces"


class BoothSettings(BaseModel):
    fal_key: Optional[str] = None
    fal_base_url: str = "https://fal.run"
    fal_edit_model: str = "fal-ai/nano-banana/edit"

    image_host: ImageHostKind = ImageHostKind.INLINE
    spaces_endpoint: Optional[str] = None
    spaces_region: Optional[str] = None
    spaces_access_key: Optional[str] = None
    spaces_secret_key: Optional[str] = None
    spaces_bucket: Optional[str] = None
    spaces_base_path: Optional[str] = "photobooth"
    spaces_public_url: Optional[str] = None

    upload_dir: Path = Field(default_factory=lambda: Path(repo_dir) / "uploads")
    photo_dir: Path = Field(default_factory=lambda: Path(repo_dir) / "photos")
    template_path: Path = Field(default_factory=lambda: Path(repo_dir) / "assets" / "background.ppm")
    service_log: Optional[Path] = None
    print_server_url: Optional[str] = None
    ffmpeg_binary: str = Field(default_factory=lambda: shutil.which("ffmpeg") or "ffmpeg")

    past_prompt: str = Field(default=DEFAULT_PAST_PROMPT, min_length=1)
    future_prompt: str = Field(default=DEFAULT_FUTURE_PROMPT, min_length=1)
    remove_prompt: str = Field(default=DEFAULT_REMOVE_PROMPT, min_length=1)

    removal_passes: int = Field(default=3, ge=1)
    pass_delay_seconds: float = Field(default=1.5, ge=0)
    edit_timeout_seconds: float = Field(default=120.0, gt=0)
    pass_timeout_seconds: float = Field(default=240.0, gt=0)
    render_timeout_seconds: float = Field(default=300.0, gt=0)

    still_duration: float = Field(default=2.0, gt=0)
    transition_duration: float = Field(default=1.0, gt=0)
    duration_policy: DurationPolicy = DurationPolicy.OVERLAP

    @field_validator("fal_key", "print_server_url", "spaces_public_url", "spaces_bucket", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if value in ("", "null"):
            return None
        return value

    @field_validator("fal_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _check_timing(self):
        if self.transition_duration >= self.still_duration:
            raise ValueError("TRANSITION_DURATION must be shorter than STILL_DURATION.")
        if self.service_log is None:
            self.service_log = self.photo_dir / "photobooth.log"
        return self

    def ensure_dirs(self) -> None:
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.photo_dir.mkdir(parents=True, exist_ok=True)


# Environment variable -> BoothSettings field.
ENV_FIELDS: Dict[str, str] = {
    "FAL_KEY": "fal_key",
    "FAL_BASE_URL": "fal_base_url",
    "FAL_EDIT_MODEL": "fal_edit_model",
    "IMAGE_HOST": "image_host",
    "SPACES_ENDPOINT": "spaces_endpoint",
    "SPACES_REGION": "spaces_region",
    "SPACES_ACCESS_KEY": "spaces_access_key",
    "SPACES_SECRET_KEY": "spaces_secret_key",
    "SPACES_BUCKET": "spaces_bucket",
    "SPACES_BASE_PATH": "spaces_base_path",
    "SPACES_PUBLIC_URL": "spaces_public_url",
    "UPLOAD_DIR": "upload_dir",
    "PHOTO_DIR": "photo_dir",
    "TEMPLATE_PATH": "template_path",
    "SERVICE_LOG": "service_log",
    "PRINT_SERVER_URL": "print_server_url",
    "FFMPEG_BINARY": "ffmpeg_binary",
    "PAST_PROMPT": "past_prompt",
    "FUTURE_PROMPT": "future_prompt",
    "REMOVE_PROMPT": "remove_prompt",
    "REMOVAL_PASSES": "removal_passes",
    "PASS_DELAY_SECONDS": "pass_delay_seconds",
    "EDIT_TIMEOUT_SECONDS": "edit_timeout_seconds",
    "PASS_TIMEOUT_SECONDS": "pass_timeout_seconds",
    "RENDER_TIMEOUT_SECONDS": "render_timeout_seconds",
    "STILL_DURATION": "still_duration",
    "TRANSITION_DURATION": "transition_duration",
    "DURATION_POLICY": "duration_policy",
}


def load_settings(environ: Optional[Dict[str, str]] = None, *, read_env_files: bool = True) -> BoothSettings:
    """Build the settings object from ``.env`` files and the process environment.

    ``.venv/.env`` is read first without overriding, then ``.env`` with
    override. Passing ``environ`` skips the process environment entirely,
    which is what the tests do.
    """
    if environ is None:
        if read_env_files:
            load_dotenv(dotenv_path=venv_env_path, override=False)
            load_dotenv(dotenv_path=env_path, override=True)
        environ = dict(os.environ)
    else:
        environ = dict(environ)

    for target, source in ENV_FALLBACKS.items():
        value = environ.get(source)
        if value:
            environ[target] = value

    values = {field: environ[name] for name, field in ENV_FIELDS.items() if environ.get(name) not in (None, "")}
    return BoothSettings(**values)
