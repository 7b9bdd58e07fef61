from typing import Any, Dict, Optional


class BoothError(Exception):
    """Base class for failures raised by the photo booth pipeline."""

    code = "booth_error"

    def __init__(self, message: str, *, detail: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_detail(self, job_id: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if job_id:
            payload["job_id"] = job_id
        if self.detail is not None:
            payload["diagnostics"] = self.detail
        return payload


class UploadFailed(BoothError):
    """Raised when a request carries no usable photo."""

    code = "upload_failed"


class EditFailed(BoothError):
    """Raised when the image-edit service errors or returns no image."""

    code = "edit_failed"

    def __init__(
        self,
        message: str,
        *,
        prompt: Optional[str] = None,
        status: Optional[int] = None,
        detail: Optional[Any] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.prompt = prompt
        self.status = status

    def to_detail(self, job_id: Optional[str] = None) -> Dict[str, Any]:
        payload = super().to_detail(job_id)
        if self.prompt is not None:
            payload["prompt"] = self.prompt
        if self.status is not None:
            payload["status"] = self.status
        return payload


class CompositionFailed(BoothError):
    """Raised when the strip template or a source image cannot be read."""

    code = "composition_failed"


class ChainAborted(BoothError):
    """Raised when any pass of the removal chain fails."""

    code = "chain_aborted"

    def __init__(self, message: str, *, pass_number: Optional[int] = None, detail: Optional[Any] = None) -> None:
        super().__init__(message, detail=detail)
        self.pass_number = pass_number


class RenderFailed(BoothError):
    """Raised when ffmpeg exits non-zero or leaves no output behind."""

    code = "render_failed"

    def __init__(
        self,
        message: str,
        *,
        returncode: Optional[int] = None,
        stderr: Optional[str] = None,
        detail: Optional[Any] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.returncode = returncode
        self.stderr = stderr
