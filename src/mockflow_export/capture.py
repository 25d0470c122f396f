"""Rasterising export targets into bitmaps."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Union

from PIL import Image, ImageColor

from .models import Bitmap, Frame
from .render.errors import CaptureError, ExportError, ExportRequestError

__all__ = [
    "CaptureService",
    "CrossOriginTaintError",
    "DetachedTargetError",
    "FrameHook",
    "ImageRenderer",
    "Renderer",
    "SequenceCapture",
    "SEQUENCE_PROGRESS_SHARE",
]

logger = logging.getLogger(__name__)

SEQUENCE_PROGRESS_SHARE = 80

RenderResult = Union[Bitmap, Image.Image]
FrameHook = Callable[[int, Any], Union[None, Awaitable[None]]]


class DetachedTargetError(RuntimeError):
    """The target is no longer mounted and cannot be rendered."""


class CrossOriginTaintError(RuntimeError):
    """The target embeds cross-origin content that may not be read back."""


class Renderer(Protocol):
    """Rasteriser collaborator; ``capture`` may return a value or an awaitable."""

    def capture(
        self,
        target: Any,
        *,
        scale: int,
        background_color: Optional[str],
        cross_origin_enabled: bool,
    ) -> Union[RenderResult, Awaitable[RenderResult]]:
        ...


class ImageRenderer:
    """
    Renderer for compositions that are already drawn as Pillow images.

    A target is either a ``PIL.Image.Image`` at 1x or any object exposing
    ``snapshot() -> Image``. Targets may also expose ``attached`` (``False`` once
    unmounted) and ``cross_origin_tainted`` (``True`` when they embed content that
    needs cross-origin access).
    """

    def __init__(self, resample: Image.Resampling = Image.Resampling.LANCZOS) -> None:
        self.resample = resample

    def _snapshot(self, target: Any) -> Image.Image:
        if target is None or getattr(target, "attached", True) is False:
            raise DetachedTargetError("Export target is not attached")
        if isinstance(target, Image.Image):
            return target
        snapshot = getattr(target, "snapshot", None)
        if not callable(snapshot):
            raise TypeError(f"Cannot render object of type {type(target).__name__}")
        image = snapshot()
        if not isinstance(image, Image.Image):
            raise TypeError("snapshot() must return a PIL image")
        return image

    def _rasterise(self, image: Image.Image, scale: int, background_color: Optional[str]) -> Image.Image:
        work = image.convert("RGBA")
        if scale != 1:
            work = work.resize((work.width * scale, work.height * scale), self.resample)
        if background_color is None:
            return work
        canvas = Image.new("RGB", work.size, ImageColor.getrgb(background_color)[:3])
        canvas.paste(work, mask=work.getchannel("A"))
        return canvas

    async def capture(
        self,
        target: Any,
        *,
        scale: int,
        background_color: Optional[str],
        cross_origin_enabled: bool,
    ) -> Bitmap:
        image = self._snapshot(target)
        if getattr(target, "cross_origin_tainted", False) and not cross_origin_enabled:
            raise CrossOriginTaintError("Target contains cross-origin images; enable cross-origin capture")
        rendered = await asyncio.to_thread(self._rasterise, image, scale, background_color)
        return Bitmap(rendered)


class CaptureService:
    """Single-frame capture with validation and error translation."""

    def __init__(
        self,
        renderer: Renderer,
        *,
        background_color: str = "#ffffff",
        cross_origin_enabled: bool = True,
    ) -> None:
        self._renderer = renderer
        self.background_color = background_color
        self.cross_origin_enabled = cross_origin_enabled

    async def capture(self, target: Any, *, scale: int, transparent_background: bool = False) -> Bitmap:
        """
        Rasterise *target* at *scale*.

        Raises:
            ExportRequestError: If *scale* is not a positive integer.
            CaptureError: If the renderer fails or returns something that is not a usable bitmap.
        """

        if isinstance(scale, bool) or not isinstance(scale, int) or scale <= 0:
            raise ExportRequestError(f"scale must be a positive integer, got {scale!r}")
        background = None if transparent_background else self.background_color
        try:
            result = self._renderer.capture(
                target,
                scale=scale,
                background_color=background,
                cross_origin_enabled=self.cross_origin_enabled,
            )
            if inspect.isawaitable(result):
                result = await result
            else:
                await asyncio.sleep(0)
        except CaptureError:
            raise
        except Exception as exc:
            raise CaptureError(f"Renderer failed: {exc}") from exc

        if isinstance(result, Image.Image):
            result = Bitmap(result)
        if not isinstance(result, Bitmap):
            raise CaptureError(f"Renderer returned {type(result).__name__}, expected a bitmap")
        if result.width <= 0 or result.height <= 0:
            raise CaptureError("Renderer returned an empty bitmap")
        logger.debug("Captured %dx%d bitmap at scale=%d", result.width, result.height, scale)
        return result


class SequenceCapture:
    """
    Multi-frame capture for animated exports.

    ``before_frame(index, target)`` runs before each capture and may change what the
    target shows (scroll position, typing state). Without it every frame captures
    the target as-is, so frames may be identical.
    """

    def __init__(self, capture_service: CaptureService, *, before_frame: Optional[FrameHook] = None) -> None:
        self._capture = capture_service
        self.before_frame = before_frame

    async def capture_sequence(
        self,
        target: Any,
        frame_count: int,
        frame_delay: int,
        scale: int,
        *,
        transparent_background: bool = False,
        progress: Optional[Callable[[int], None]] = None,
    ) -> List[Frame]:
        """
        Capture *frame_count* frames sequentially, each stamped with *frame_delay* ms.

        Progress is reported before each capture as a share of the first
        ``SEQUENCE_PROGRESS_SHARE`` percent. The first failure discards every frame
        captured so far and propagates as :class:`CaptureError`.
        """

        if int(frame_count) < 1:
            raise ExportRequestError(f"frame_count must be >= 1, got {frame_count!r}")
        if int(frame_delay) <= 0:
            raise ExportRequestError(f"frame_delay must be > 0 ms, got {frame_delay!r}")

        frames: List[Frame] = []
        try:
            for index in range(frame_count):
                if progress is not None:
                    progress(round(index / frame_count * SEQUENCE_PROGRESS_SHARE))
                await self._run_hook(index, target)
                bitmap = await self._capture.capture(
                    target,
                    scale=scale,
                    transparent_background=transparent_background,
                )
                frames.append(Frame(bitmap=bitmap, delay=int(frame_delay)))
        except BaseException:
            discarded = len(frames)
            frames.clear()
            if discarded:
                logger.debug("Discarded %d captured frame(s) after failure", discarded)
            raise
        return frames

    async def _run_hook(self, index: int, target: Any) -> None:
        if self.before_frame is None:
            return
        try:
            result = self.before_frame(index, target)
            if inspect.isawaitable(result):
                await result
        except ExportError:
            raise
        except Exception as exc:
            raise CaptureError(f"Frame hook failed before frame {index}: {exc}") from exc
