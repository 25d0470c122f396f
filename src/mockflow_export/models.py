"""Value types shared by the capture, encode and delivery stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image

from .render.errors import ExportRequestError, UnsupportedOptionError

__all__ = [
    "Bitmap",
    "DeliveryMode",
    "EncodedArtifact",
    "ExportFormat",
    "ExportOutcome",
    "ExportPhase",
    "ExportProgress",
    "ExportRequest",
    "ExportSnapshot",
    "ExportState",
    "Frame",
]


class ExportFormat(str, Enum):
    """Output formats offered by the export panel."""

    PNG = "png"
    JPG = "jpg"
    SVG = "svg"
    PDF = "pdf"
    GIF = "gif"

    @classmethod
    def parse(cls, value: "ExportFormat | str") -> "ExportFormat":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        if normalized == "jpeg":
            normalized = "jpg"
        try:
            return cls(normalized)
        except ValueError as exc:
            choices = ", ".join(member.value for member in cls)
            raise ExportRequestError(f"Unknown export format {value!r} (expected one of {choices})") from exc

    @property
    def mime_type(self) -> str:
        return _MIME_TYPES[self]

    @property
    def extension(self) -> str:
        return self.value

    @property
    def is_animated(self) -> bool:
        return self is ExportFormat.GIF


_MIME_TYPES = {
    ExportFormat.PNG: "image/png",
    ExportFormat.JPG: "image/jpeg",
    ExportFormat.SVG: "image/svg+xml",
    ExportFormat.PDF: "application/pdf",
    ExportFormat.GIF: "image/gif",
}


class ExportPhase(str, Enum):
    CAPTURING = "capturing"
    ENCODING = "encoding"
    FINALIZING = "finalizing"


class ExportState(str, Enum):
    """Lifecycle of one orchestrator instance."""

    IDLE = "idle"
    CAPTURING = "capturing"
    ENCODING = "encoding"
    FINALIZING = "finalizing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_busy(self) -> bool:
        return self is not ExportState.IDLE


class DeliveryMode(str, Enum):
    DOWNLOAD = "download"
    CLIPBOARD = "clipboard"


@dataclass(frozen=True)
class ExportRequest:
    """
    One user-invoked export.

    ``quality`` only applies to ``jpg``; ``frame_count`` and ``frame_duration`` only
    apply to ``gif``. Leaving any of them, or ``scale``, as ``None`` picks the
    configured defaults. Values supplied for a format that does not use them are
    ignored, not rejected.
    """

    format: ExportFormat
    scale: Optional[int] = None
    quality: Optional[int] = None
    transparent_background: bool = False
    include_device_frame: bool = True
    frame_count: Optional[int] = None
    frame_duration: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "format", ExportFormat.parse(self.format))

    def validate(self) -> "ExportRequest":
        """Return ``self`` after checking value ranges, raising ``ExportRequestError`` otherwise."""

        if self.scale is not None and (
            isinstance(self.scale, bool) or not isinstance(self.scale, int) or self.scale <= 0
        ):
            raise ExportRequestError(f"scale must be a positive integer, got {self.scale!r}")
        if self.format is ExportFormat.JPG and self.quality is not None:
            if not 1 <= int(self.quality) <= 100:
                raise ExportRequestError(f"quality must be between 1 and 100, got {self.quality!r}")
        if self.format.is_animated:
            if self.frame_count is not None and int(self.frame_count) < 1:
                raise ExportRequestError(f"frame_count must be >= 1, got {self.frame_count!r}")
            if self.frame_duration is not None and int(self.frame_duration) <= 0:
                raise ExportRequestError(f"frame_duration must be > 0 ms, got {self.frame_duration!r}")
        return self

    def ignored_options(self) -> Tuple[str, ...]:
        """Names of options that were supplied but have no effect for this format."""

        ignored = []
        if self.quality is not None and self.format is not ExportFormat.JPG:
            ignored.append("quality")
        if not self.format.is_animated:
            if self.frame_count is not None:
                ignored.append("frame_count")
            if self.frame_duration is not None:
                ignored.append("frame_duration")
        if self.transparent_background and self.format in (ExportFormat.JPG, ExportFormat.PDF):
            ignored.append("transparent_background")
        return tuple(ignored)

    def check_options(self, *, strict: bool = False) -> Tuple[str, ...]:
        """
        Report format-irrelevant options.

        The pipeline calls this permissively; ``strict=True`` turns the first ignored
        option into an ``UnsupportedOptionError`` for callers that want to reject them.
        """

        ignored = self.ignored_options()
        if strict and ignored:
            raise UnsupportedOptionError(
                f"Option(s) {', '.join(ignored)} do not apply to {self.format.value} exports"
            )
        return ignored


@dataclass(frozen=True)
class Bitmap:
    """In-memory raster produced by a renderer."""

    image: Image.Image

    @property
    def width(self) -> int:
        return int(self.image.width)

    @property
    def height(self) -> int:
        return int(self.image.height)

    @property
    def size(self) -> Tuple[int, int]:
        return (self.width, self.height)

    @property
    def mode(self) -> str:
        return self.image.mode

    @property
    def has_alpha(self) -> bool:
        return self.image.mode in ("RGBA", "LA", "PA") or "transparency" in self.image.info


@dataclass(frozen=True)
class Frame:
    bitmap: Bitmap
    delay: int


@dataclass(frozen=True)
class EncodedArtifact:
    data: bytes = field(repr=False)
    mime_type: str
    suggested_filename: str

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def is_text(self) -> bool:
        return self.mime_type == "image/svg+xml"


@dataclass(frozen=True)
class ExportProgress:
    percent: int
    phase: ExportPhase

    def __post_init__(self) -> None:
        if not 0 <= self.percent <= 100:
            raise ValueError(f"progress percent must be within 0..100, got {self.percent}")


@dataclass(frozen=True)
class ExportSnapshot:
    """State + progress pair published to listeners on every change."""

    state: ExportState
    progress: Optional[ExportProgress] = None


@dataclass(frozen=True)
class ExportOutcome:
    """
    Result of :meth:`ExportOrchestrator.export`.

    ``skipped`` is set when the call was dropped because another export was running.
    ``location`` is the saved file for downloads; clipboard and print-dialog exports
    have none.
    """

    state: ExportState
    format: Optional[ExportFormat] = None
    filename: Optional[str] = None
    location: Optional[Path] = None
    error: Optional[str] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.state is ExportState.SUCCEEDED and not self.skipped
