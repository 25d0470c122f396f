"""Format-specific encoders.

Each export format has its own encoder class; :class:`EncoderRegistry` maps an
:class:`ExportFormat` to its encoder so the orchestrator never branches on the
format itself. Encoders are tagged with an :class:`EncoderKind` that tells the
orchestrator which capture/encode pipeline feeds them.
"""

from __future__ import annotations

import asyncio
import base64
import inspect
import io
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import ClassVar, Dict, Iterator, Optional, Sequence

from PIL import Image, ImageColor

from src.datatypes import AppConfig, DocumentBackend, DocumentConfig

from ..models import Bitmap, EncodedArtifact, ExportFormat, ExportRequest, Frame
from .animation import AnimatedEncoder, AnimationOptions, PillowGifEncoder, gif_frame_delays
from .document import PrintSurface, build_print_surface, render_pdf
from .errors import EncodeError
from .naming import prepare_filename

__all__ = [
    "AnimatedFormatEncoder",
    "DocumentEncoder",
    "EncoderKind",
    "EncoderRegistry",
    "FormatEncoder",
    "JpegEncoder",
    "PngEncoder",
    "StaticEncoder",
    "SvgEncoder",
    "build_registry",
    "map_png_compression_level",
]

logger = logging.getLogger(__name__)


class EncoderKind(str, Enum):
    """Which pipeline feeds an encoder."""

    STATIC = "static"
    ANIMATED = "animated"
    DOCUMENT = "document"


def _normalise_compression_level(level: int) -> int:
    try:
        value = int(level)
    except Exception:
        return 1
    return max(0, min(2, value))


def map_png_compression_level(level: int) -> int:
    """Translate the user configured level into a PNG compress level."""

    normalised = _normalise_compression_level(level)
    mapping = {0: 0, 1: 6, 2: 9}
    return mapping.get(normalised, 6)


def _clamp_quality(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


class FormatEncoder(ABC):
    """Common surface shared by every format encoder."""

    format: ClassVar[ExportFormat]
    kind: ClassVar[EncoderKind]

    def __init__(self, product_name: str = "mockflow") -> None:
        self.product_name = product_name

    @property
    def mime_type(self) -> str:
        return self.format.mime_type

    @property
    def extension(self) -> str:
        return self.format.extension

    def suggest_filename(self) -> str:
        return prepare_filename(self.product_name, self.extension)

    def artifact(self, data: bytes) -> EncodedArtifact:
        if not data:
            raise EncodeError(f"{self.format.value} encoder produced an empty payload")
        return EncodedArtifact(
            data=data,
            mime_type=self.mime_type,
            suggested_filename=self.suggest_filename(),
        )


class StaticEncoder(FormatEncoder):
    """Encoders that turn one bitmap into bytes."""

    kind = EncoderKind.STATIC

    @abstractmethod
    def encode_bitmap(self, bitmap: Bitmap, *, quality: Optional[int] = None) -> bytes:
        """Return the encoded payload for *bitmap*."""

    async def encode(self, bitmap: Bitmap, request: ExportRequest) -> EncodedArtifact:
        """Encode off the event loop and wrap the payload as an artifact."""

        try:
            data = await asyncio.to_thread(self.encode_bitmap, bitmap, quality=request.quality)
        except EncodeError:
            raise
        except (OSError, ValueError, MemoryError) as exc:
            raise EncodeError(f"{self.format.value} encoding failed: {exc}") from exc
        logger.debug("Encoded %s %dx%d -> %d bytes", self.format.value, bitmap.width, bitmap.height, len(data))
        return self.artifact(data)


class PngEncoder(StaticEncoder):
    """Lossless PNG; identical bitmaps always produce identical bytes."""

    format = ExportFormat.PNG

    def __init__(self, product_name: str = "mockflow", *, compression_level: int = 1) -> None:
        super().__init__(product_name)
        self.compress_level = map_png_compression_level(compression_level)

    def encode_bitmap(self, bitmap: Bitmap, *, quality: Optional[int] = None) -> bytes:
        image = bitmap.image
        if image.mode not in ("RGB", "RGBA", "L", "LA", "P", "1"):
            image = image.convert("RGBA" if bitmap.has_alpha else "RGB")
        buffer = io.BytesIO()
        image.save(buffer, format="PNG", compress_level=self.compress_level)
        return buffer.getvalue()


class JpegEncoder(StaticEncoder):
    """
    Lossy JPEG.

    Transparent pixels are flattened onto the matte colour. Chroma subsampling is
    pinned to 4:2:0 for every quality so payload size only shrinks as quality drops.
    """

    format = ExportFormat.JPG

    def __init__(
        self,
        product_name: str = "mockflow",
        *,
        default_quality: int = 90,
        matte_color: str = "#ffffff",
    ) -> None:
        super().__init__(product_name)
        self.default_quality = _clamp_quality(default_quality, 1, 100)
        self.matte = ImageColor.getrgb(matte_color)[:3]

    def _flatten(self, image: Image.Image) -> Image.Image:
        if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
            rgba = image.convert("RGBA")
            canvas = Image.new("RGB", rgba.size, self.matte)
            canvas.paste(rgba, mask=rgba.getchannel("A"))
            return canvas
        return image.convert("RGB")

    def encode_bitmap(self, bitmap: Bitmap, *, quality: Optional[int] = None) -> bytes:
        resolved = self.default_quality if quality is None else _clamp_quality(quality, 1, 100)
        buffer = io.BytesIO()
        self._flatten(bitmap.image).save(
            buffer,
            format="JPEG",
            quality=resolved,
            subsampling=2,
            optimize=False,
        )
        return buffer.getvalue()


class SvgEncoder(StaticEncoder):
    """
    SVG wrapper around a PNG.

    The document holds a single ``<image>`` element whose ``href`` is the PNG as a
    base64 data URI. Nothing is vectorised; scaling the SVG up still shows pixels.
    """

    format = ExportFormat.SVG

    def __init__(self, product_name: str = "mockflow", *, png: Optional[PngEncoder] = None) -> None:
        super().__init__(product_name)
        self.png = png or PngEncoder(product_name)

    def encode_bitmap(self, bitmap: Bitmap, *, quality: Optional[int] = None) -> bytes:
        payload = base64.b64encode(self.png.encode_bitmap(bitmap)).decode("ascii")
        width, height = bitmap.size
        document = (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            '<svg xmlns="http://www.w3.org/2000/svg" xmlns:xlink="http://www.w3.org/1999/xlink"\n'
            f'     width="{width}" height="{height}" viewBox="0 0 {width} {height}">\n'
            f'  <image xlink:href="data:image/png;base64,{payload}" width="{width}" height="{height}"/>\n'
            "</svg>\n"
        )
        return document.encode("utf-8")


class DocumentEncoder(FormatEncoder):
    """
    Document output.

    With the print-dialog backend the encoder only prepares a :class:`PrintSurface`;
    there are no bytes to deliver and no way to learn whether the user saved a PDF.
    The Pillow backend writes PDF bytes that are delivered like any other artifact.
    """

    format = ExportFormat.PDF
    kind = EncoderKind.DOCUMENT

    def __init__(self, product_name: str = "mockflow", *, config: Optional[DocumentConfig] = None) -> None:
        super().__init__(product_name)
        self.config = config or DocumentConfig()

    @property
    def uses_print_dialog(self) -> bool:
        return self.config.backend is DocumentBackend.PRINT_DIALOG

    async def build_surface(self, bitmap: Bitmap) -> PrintSurface:
        return await asyncio.to_thread(
            build_print_surface,
            bitmap.image,
            self.config,
            self.suggest_filename(),
        )

    async def encode(self, bitmap: Bitmap, request: ExportRequest) -> EncodedArtifact:
        data = await asyncio.to_thread(render_pdf, bitmap.image, self.config, scale=request.scale or 1)
        return self.artifact(data)


class AnimatedFormatEncoder(FormatEncoder):
    """GIF output delegating frame encoding to an :class:`AnimatedEncoder`."""

    format = ExportFormat.GIF
    kind = EncoderKind.ANIMATED

    def __init__(
        self,
        product_name: str = "mockflow",
        *,
        backend: Optional[AnimatedEncoder] = None,
        quality: int = 10,
        repeat: int = 0,
        background: str = "#ffffff",
    ) -> None:
        super().__init__(product_name)
        self.backend = backend or PillowGifEncoder()
        self.quality = _clamp_quality(quality, 1, 30)
        self.repeat = int(repeat)
        self.background = ImageColor.getrgb(background)[:3]

    def options_for(self, frames: Sequence[Frame], frame_duration: int) -> AnimationOptions:
        first = frames[0].bitmap
        return AnimationOptions(
            width=first.width,
            height=first.height,
            quality=self.quality,
            frame_duration=int(frame_duration),
            repeat=self.repeat,
            background=self.background,
        )

    async def encode_frames(self, frames: Sequence[Frame], options: AnimationOptions) -> bytes:
        """Run the backend (sync backends in a worker thread) and verify the frame count."""

        if not frames:
            raise EncodeError("Cannot build an animation without frames")
        encode = self.backend.encode
        try:
            if inspect.iscoroutinefunction(encode):
                result = await encode(frames, options)
            else:
                result = await asyncio.to_thread(encode, frames, options)
                if inspect.isawaitable(result):
                    result = await result
        except EncodeError:
            raise
        except Exception as exc:
            raise EncodeError(f"Animated encoder failed: {exc}") from exc

        if not isinstance(result, (bytes, bytearray)) or not result:
            raise EncodeError("Animated encoder returned no data")
        delays = gif_frame_delays(bytes(result))
        if delays is None:
            raise EncodeError("Animated encoder returned an unreadable GIF")
        if len(delays) != len(frames):
            raise EncodeError(f"Animated payload holds {len(delays)} frame(s), expected {len(frames)}")
        return bytes(result)

    async def encode(self, frames: Sequence[Frame], frame_duration: int) -> EncodedArtifact:
        if not frames:
            raise EncodeError("Cannot build an animation without frames")
        data = await self.encode_frames(frames, self.options_for(frames, frame_duration))
        return self.artifact(data)


class EncoderRegistry:
    """Lookup table from :class:`ExportFormat` to its encoder."""

    def __init__(self, encoders: Sequence[FormatEncoder] = ()) -> None:
        self._encoders: Dict[ExportFormat, FormatEncoder] = {}
        for encoder in encoders:
            self.register(encoder)

    def register(self, encoder: FormatEncoder) -> None:
        self._encoders[encoder.format] = encoder

    def get(self, fmt: ExportFormat | str) -> FormatEncoder:
        resolved = ExportFormat.parse(fmt)
        try:
            return self._encoders[resolved]
        except KeyError as exc:
            raise EncodeError(f"No encoder registered for {resolved.value}") from exc

    def __contains__(self, fmt: object) -> bool:
        return fmt in self._encoders

    def __iter__(self) -> Iterator[FormatEncoder]:
        return iter(self._encoders.values())


def build_registry(cfg: AppConfig, *, animated_backend: Optional[AnimatedEncoder] = None) -> EncoderRegistry:
    """Construct the default encoder set from configuration."""

    product = cfg.export.product_name
    png = PngEncoder(product, compression_level=cfg.raster.compression_level)
    return EncoderRegistry(
        [
            png,
            JpegEncoder(
                product,
                default_quality=cfg.raster.jpeg_default_quality,
                matte_color=cfg.raster.jpeg_matte_color,
            ),
            SvgEncoder(product, png=png),
            DocumentEncoder(product, config=cfg.document),
            AnimatedFormatEncoder(
                product,
                backend=animated_backend,
                quality=cfg.animation.quality,
                repeat=cfg.animation.repeat,
                background=cfg.export.background_color,
            ),
        ]
    )
