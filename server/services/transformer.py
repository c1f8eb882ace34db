"""Image transformer backed by Pillow.

Pillow is CPU-bound and synchronous, so identify and transform run in a
worker thread. Transform output goes to a uniquely named temporary file that
the coordinator uploads and then removes.
"""

import asyncio
import io
import uuid
from pathlib import Path
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from core.logging import get_logger
from models.image import ImageInfo, ImageRequest, TransformOptions, TransformResult
from services.errors import TransformError

logger = get_logger(__name__)

PIL_FORMATS = {
    "jpg": "JPEG",
    "jpeg": "JPEG",
    "png": "PNG",
    "gif": "GIF",
}


class Transformer:
    """Resize, crop and identify images."""

    def __init__(self, tmp_dir: str = "/tmp", jpeg_quality: int = 85):
        self.tmp_dir = Path(tmp_dir)
        self.jpeg_quality = jpeg_quality

    async def identify(self, source: bytes) -> ImageInfo:
        """Read format, dimensions and frame count of an original."""
        return await asyncio.to_thread(self._identify, source)

    async def transform(self, image: ImageRequest, source: bytes,
                        animated_gif: Optional[bool] = None) -> TransformResult:
        """Apply the request's options to source and write the result to a temp file.

        animated_gif comes from the cached original params; when None the
        frame count is read from source.
        """
        return await asyncio.to_thread(self._transform, image, source, animated_gif)

    def _identify(self, source: bytes) -> ImageInfo:
        try:
            with Image.open(io.BytesIO(source)) as img:
                return ImageInfo(
                    format=img.format,
                    width=img.width,
                    height=img.height,
                    mode=img.mode,
                    frames=getattr(img, "n_frames", 1),
                )
        except (UnidentifiedImageError, OSError) as e:
            raise TransformError(f"cannot identify image: {e}") from e

    def _transform(self, image: ImageRequest, source: bytes,
                   animated_gif: Optional[bool] = None) -> TransformResult:
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        output = self.tmp_dir / uuid.uuid4().hex

        try:
            with Image.open(io.BytesIO(source)) as img:
                if animated_gif is None:
                    animated_gif = img.format == "GIF" and getattr(img, "n_frames", 1) > 1
                if animated_gif or not image.options.has_action:
                    # Animated GIFs lose their frames when resized; serve as-is
                    output.write_bytes(source)
                else:
                    result = self._apply(img, image.options)
                    self._save(result, output, image.ext)
        except TransformError:
            output.unlink(missing_ok=True)
            raise
        except (UnidentifiedImageError, OSError, ValueError) as e:
            output.unlink(missing_ok=True)
            raise TransformError(f"transform failed: {e}") from e

        size = output.stat().st_size
        logger.debug("Transformed image", action=image.options.action, size=size)
        return TransformResult(path=str(output), size=size)

    def _apply(self, img: Image.Image, options: TransformOptions) -> Image.Image:
        action = options.action.lower()
        if action.startswith("r"):
            return self._resize(img, options.width, options.height)
        if action.startswith("c"):
            return self._crop(img, options)
        raise TransformError(f"unsupported action: {options.action}")

    @staticmethod
    def _resize(img: Image.Image, width, height) -> Image.Image:
        if width and height:
            return ImageOps.contain(img, (width, height), method=Image.Resampling.LANCZOS)
        if width:
            height = max(1, round(img.height * width / img.width))
        elif height:
            width = max(1, round(img.width * height / img.height))
        else:
            return img.copy()
        return img.resize((width, height), Image.Resampling.LANCZOS)

    @staticmethod
    def _crop(img: Image.Image, options: TransformOptions) -> Image.Image:
        left = options.crop_x or 0
        top = options.crop_y or 0
        right = min(img.width, left + (options.width or img.width - left))
        bottom = min(img.height, top + (options.height or img.height - top))
        if left >= right or top >= bottom:
            raise TransformError(
                f"crop box ({left}, {top}, {right}, {bottom}) is outside {img.width}x{img.height}"
            )
        return img.crop((left, top, right, bottom))

    def _save(self, img: Image.Image, output: Path, ext: str) -> None:
        fmt = PIL_FORMATS.get(ext.lower())
        if fmt is None:
            raise TransformError(f"unsupported output format: {ext}")
        params = {}
        if fmt == "JPEG":
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            params["quality"] = self.jpeg_quality
        img.save(output, format=fmt, **params)
