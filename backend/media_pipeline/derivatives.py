from __future__ import annotations

import asyncio
import io
import logging
from functools import partial
from typing import Callable, Sequence

from PIL import Image, ImageOps

from .config import VariantSpec
from .errors import ProcessingFailure

logger = logging.getLogger(__name__)

# (raw_bytes, width, height, target_format) -> encoded bytes
Resizer = Callable[[bytes, int, int, str], bytes]

ORIGINAL_VARIANT = "original"


def _pil_format(target_format: str) -> str:
    f = target_format.strip().lower()
    return "JPEG" if f in ("jpg", "jpeg") else f.upper()


def _open_checked(raw: bytes, max_image_pixels: int | None) -> Image.Image:
    im = Image.open(io.BytesIO(raw))
    if max_image_pixels and im.width * im.height > max_image_pixels:
        raise ValueError(f"Image is {im.width}x{im.height}; max is {max_image_pixels} pixels")
    # Honour camera orientation before cropping.
    im = ImageOps.exif_transpose(im)
    has_alpha = im.mode in ("RGBA", "LA") or (im.mode == "P" and "transparency" in im.info)
    return im.convert("RGBA" if has_alpha else "RGB")


def _encode(im: Image.Image, target_format: str, quality: int) -> bytes:
    fmt = _pil_format(target_format)
    if fmt == "JPEG" and im.mode != "RGB":
        im = im.convert("RGB")
    buf = io.BytesIO()
    im.save(buf, format=fmt, quality=quality)
    return buf.getvalue()


def resize_and_encode(
    raw: bytes,
    width: int,
    height: int,
    target_format: str = "webp",
    *,
    quality: int = 85,
    max_image_pixels: int | None = None,
) -> bytes:
    """Centre-crop and resize to exactly width x height, then re-encode."""
    im = _open_checked(raw, max_image_pixels)
    out = ImageOps.fit(im, (width, height), method=Image.Resampling.LANCZOS)
    return _encode(out, target_format, quality)


def encode_original(
    raw: bytes,
    max_side: int,
    target_format: str = "webp",
    *,
    quality: int = 85,
    max_image_pixels: int | None = None,
) -> bytes:
    """Re-encode the upload itself, keeping aspect ratio, longest side capped."""
    im = _open_checked(raw, max_image_pixels)
    im.thumbnail((max_side, max_side), Image.Resampling.LANCZOS)
    return _encode(im, target_format, quality)


def image_size(data: bytes) -> tuple[int, int]:
    with Image.open(io.BytesIO(data)) as im:
        return im.size


class DerivativeGenerator:
    def __init__(
        self,
        *,
        target_format: str = "webp",
        max_concurrency: int = 4,
        quality: int = 85,
        max_image_pixels: int | None = None,
        original_max_side: int = 2048,
        resizer: Resizer | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.target_format = target_format.lower()
        self.max_concurrency = max_concurrency
        self.quality = quality
        self.max_image_pixels = max_image_pixels
        self.original_max_side = original_max_side
        self._resizer: Resizer = resizer or partial(
            resize_and_encode, quality=quality, max_image_pixels=max_image_pixels
        )

    @property
    def extension(self) -> str:
        return "jpg" if self.target_format == "jpeg" else self.target_format

    def _render_one(self, raw: bytes, spec: VariantSpec) -> bytes:
        data = self._resizer(raw, spec.width, spec.height, self.target_format)
        size = image_size(data)
        if size != (spec.width, spec.height):
            raise ValueError(f"Rendered {size[0]}x{size[1]}, expected {spec.width}x{spec.height}")
        return data

    async def generate(self, raw_bytes: bytes, specs: Sequence[VariantSpec]) -> dict[str, bytes]:
        """
        Render every variant, at most max_concurrency at a time.

        All or nothing: the first failing variant cancels the rest and raises
        ProcessingFailure naming it. Results keep the order of specs.
        """
        names = [s.name for s in specs]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate variant names in {names}")
        if not specs:
            return {}

        sem = asyncio.Semaphore(self.max_concurrency)

        async def render(spec: VariantSpec) -> bytes:
            async with sem:
                try:
                    return await asyncio.to_thread(self._render_one, raw_bytes, spec)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    raise ProcessingFailure(spec.name, e) from e

        tasks = [asyncio.create_task(render(s), name=f"variant:{s.name}") for s in specs]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for t in tasks:
                t.cancel()
            raise

        failed = [t for t in tasks if t.done() and not t.cancelled() and t.exception() is not None]
        if failed:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            err = failed[0].exception()
            logger.warning("variant render failed: %s", err)
            raise err

        return {spec.name: t.result() for spec, t in zip(specs, tasks)}

    async def render_original(self, raw_bytes: bytes) -> bytes:
        try:
            return await asyncio.to_thread(
                encode_original,
                raw_bytes,
                self.original_max_side,
                self.target_format,
                quality=self.quality,
                max_image_pixels=self.max_image_pixels,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ProcessingFailure(ORIGINAL_VARIANT, e) from e
