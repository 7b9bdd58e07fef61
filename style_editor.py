"""Calls to the generative image-edit service.

``StyleEditor`` wraps the three operations the pipeline needs from the
service: hosting an image so the service can resolve it, running one edit,
and fetching the produced image back. ``fan_out_edits`` runs the two style
edits side by side and only succeeds if both do.
"""

import asyncio
import base64
import binascii
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from booth_errors import EditFailed
from booth_settings import BoothSettings
from spaces_storage import build_image_host

logger = logging.getLogger("photobooth.style_editor")


class EditResult(BaseModel):
    image_ref: str
    prompt: str


class StyledPair(BaseModel):
    past: EditResult
    future: EditResult


def extract_image_url(body: Any) -> Optional[str]:
    """Return the first image reference in an edit response, or ``None``.

    The service answers either ``{"images": [...]}`` or, through some client
    wrappers, ``{"data": {"images": [...]}}``. Each entry is a bare URL
    string or an object carrying a ``url``.
    """
    if not isinstance(body, dict):
        return None
    images = body.get("images")
    if images is None and isinstance(body.get("data"), dict):
        images = body["data"].get("images")
    if not isinstance(images, list) or not images:
        return None
    first = images[0]
    if isinstance(first, str):
        return first or None
    if isinstance(first, dict):
        url = first.get("url")
        return url if isinstance(url, str) and url else None
    return None


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:2000]


def decode_data_uri(ref: str) -> bytes:
    header, _, payload = ref.partition(",")
    if not header.endswith(";base64"):
        raise ValueError("Only base64 data URIs are supported.")
    return base64.b64decode(payload, validate=True)


class StyleEditor:
    def __init__(
        self,
        settings: BoothSettings,
        image_host: Optional[Any] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.image_host = image_host or build_image_host(settings)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.edit_timeout_seconds,
            transport=self._transport,
            follow_redirects=True,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.fal_key:
            headers["Authorization"] = f"Key {self.settings.fal_key}"
        return headers

    async def upload(self, data: bytes, name: str) -> str:
        if not data:
            raise EditFailed(f"Refusing to upload empty image {name}.")
        return await self.image_host.upload(data, name)

    async def edit(self, source_ref: str, prompt: str) -> EditResult:
        if not prompt or not prompt.strip():
            raise EditFailed("Edit prompt must not be empty.", prompt=prompt)
        if not source_ref:
            raise EditFailed("Source image reference is missing.", prompt=prompt)

        url = f"{self.settings.fal_base_url}/{self.settings.fal_edit_model}"
        payload = {
            "prompt": prompt,
            "image_urls": [source_ref],
            "num_images": 1,
            "output_format": "jpeg",
        }
        try:
            async with self._client() as client:
                response = await client.post(url, json=payload, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise EditFailed(
                f"Edit request timed out after {self.settings.edit_timeout_seconds:.0f}s.", prompt=prompt
            ) from exc
        except httpx.HTTPError as exc:
            raise EditFailed(f"Edit request failed: {exc}", prompt=prompt) from exc

        if not response.is_success:
            body = _response_body(response)
            logger.error("edit service returned HTTP %s for prompt %r: %s", response.status_code, prompt, body)
            raise EditFailed(
                f"Edit service returned HTTP {response.status_code}.",
                prompt=prompt,
                status=response.status_code,
                detail=body,
            )

        body = _response_body(response)
        image_ref = extract_image_url(body)
        if not image_ref:
            raise EditFailed(
                "Edit service returned no image.",
                prompt=prompt,
                status=response.status_code,
                detail=body,
            )
        logger.info("edit complete for prompt %r -> %s", prompt[:60], image_ref[:120])
        return EditResult(image_ref=image_ref, prompt=prompt)

    async def fetch(self, image_ref: str) -> bytes:
        if image_ref.startswith("data:"):
            try:
                return decode_data_uri(image_ref)
            except (ValueError, binascii.Error) as exc:
                raise EditFailed(f"Could not decode inline image: {exc}") from exc
        try:
            async with self._client() as client:
                response = await client.get(image_ref)
        except httpx.HTTPError as exc:
            raise EditFailed(f"Failed to fetch image {image_ref}: {exc}") from exc
        if not response.is_success:
            raise EditFailed(f"Failed to fetch image {image_ref}.", status=response.status_code)
        return response.content


async def fan_out_edits(editor: StyleEditor, source_ref: str, past_prompt: str, future_prompt: str) -> StyledPair:
    outcomes = await asyncio.gather(
        editor.edit(source_ref, past_prompt),
        editor.edit(source_ref, future_prompt),
        return_exceptions=True,
    )
    for label, outcome in zip(("past", "future"), outcomes):
        if isinstance(outcome, EditFailed):
            logger.error("%s edit failed: %s", label, outcome.message)
            raise outcome
        if isinstance(outcome, Exception):
            raise EditFailed(f"{label} edit failed: {outcome}") from outcome
        if isinstance(outcome, BaseException):
            raise outcome
    past, future = outcomes
    return StyledPair(past=past, future=future)
