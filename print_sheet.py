"""Print sheet layout and hand-off to the print server."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

import httpx
import numpy as np
from PIL import Image, ImageOps

logger = logging.getLogger("photobooth.print_sheet")

STRIP_SIZE = (600, 1800)
SHEET_SIZE = (1200, 1800)
PRINT_GAMMA = 0.8
PRINT_DPI = 300
PRINT_QUALITY = 95
PRINT_TIMEOUT_SECONDS = 60.0


def apply_gamma(image: Image.Image, gamma: float) -> Image.Image:
    """Apply ``out = in ** (1 / gamma)`` per channel on 0..1 values."""
    pixels = np.asarray(image.convert("RGB"), dtype=np.float32) / 255.0
    corrected = np.power(pixels, 1.0 / gamma)
    return Image.fromarray(np.clip(corrected * 255.0 + 0.5, 0, 255).astype(np.uint8))


def build_print_sheet(composite_path: Path, output_path: Path) -> Path:
    """Place two copies of the strip side by side on a 4x6 sheet at 300 dpi."""
    with Image.open(composite_path) as composite:
        strip = ImageOps.fit(composite.convert("RGB"), STRIP_SIZE, method=Image.LANCZOS)

    sheet = Image.new("RGB", SHEET_SIZE, (255, 255, 255))
    sheet.paste(strip, (0, 0))
    sheet.paste(strip, (STRIP_SIZE[0], 0))
    sheet = apply_gamma(sheet, PRINT_GAMMA)

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    sheet.save(
        output_path,
        format="JPEG",
        quality=PRINT_QUALITY,
        subsampling=0,
        dpi=(PRINT_DPI, PRINT_DPI),
    )
    return output_path


async def send_to_print_server(
    sheet_path: Path,
    url: str,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Any:
    sheet_path = Path(sheet_path)
    async with httpx.AsyncClient(timeout=PRINT_TIMEOUT_SECONDS, transport=transport) as client:
        with sheet_path.open("rb") as handle:
            response = await client.post(url, files={"file": (sheet_path.name, handle, "image/jpeg")})
    response.raise_for_status()
    try:
        return response.json()
    except ValueError:
        return response.text


async def run_print_job(
    composite_path: Path,
    photo_dir: Path,
    photo_id: int,
    url: Optional[str],
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[Path]:
    """Build the print sheet and send it. Failures are logged, never raised."""
    if not url:
        logger.info("photo %s: PRINT_SERVER_URL not set; skipping print", photo_id)
        return None
    sheet_path = Path(photo_dir) / f"{photo_id}_print.jpg"
    try:
        await asyncio.to_thread(build_print_sheet, Path(composite_path), sheet_path)
        reply = await send_to_print_server(sheet_path, url, transport=transport)
    except (OSError, httpx.HTTPError) as exc:
        logger.error("photo %s: print failed: %s", photo_id, exc)
        return None
    logger.info("photo %s: print server response: %s", photo_id, reply)
    return sheet_path
