"""Batch export of several mockups into one ZIP archive, plus one-off helpers."""

from __future__ import annotations

import asyncio
import io
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Set

from src.datatypes import BatchConfig

from .capture import CaptureService
from .delivery import write_atomic
from .models import EncodedArtifact, ExportFormat, ExportPhase, ExportProgress, ExportRequest, Frame
from .progress import ProgressTracker
from .render.encoders import AnimatedFormatEncoder, EncoderRegistry, StaticEncoder
from .render.errors import DeliveryError, ExportError, ExportRequestError
from .render.naming import batch_archive_name, batch_member_name

__all__ = ["BatchExporter", "BatchItem", "BatchResult", "export_static_gif"]

logger = logging.getLogger(__name__)

ARCHIVE_FOLDER = "mockups"
CAPTURE_SHARE = 80
PACKAGING_START = 85
_ESTIMATED_BYTES_PER_MOCKUP = 200 * 1024
_BATCH_FORMATS = (ExportFormat.PNG, ExportFormat.JPG)

ProgressCallback = Callable[[ExportProgress], None]


@dataclass(frozen=True)
class BatchItem:
    """A named export target."""

    name: str
    target: Any


@dataclass
class BatchResult:
    archive: Path
    members: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def _unique(name: str, taken: Set[str]) -> str:
    if name not in taken:
        return name
    stem, dot, ext = name.rpartition(".")
    if not dot:
        stem, ext = name, ""
    counter = 2
    while True:
        candidate = f"{stem}-{counter}.{ext}" if ext else f"{stem}-{counter}"
        if candidate not in taken:
            return candidate
        counter += 1


def _build_archive(members: Sequence[tuple[str, bytes]], level: int) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=level) as archive:
        for name, data in members:
            archive.writestr(f"{ARCHIVE_FOLDER}/{name}", data)
    return buffer.getvalue()


class BatchExporter:
    """
    Capture several targets, encode each as PNG or JPEG and bundle them as a ZIP.

    Items that fail to capture or encode are logged and left out; the batch only
    fails when none of them could be exported or the archive cannot be written.
    """

    def __init__(
        self,
        capture: CaptureService,
        encoders: EncoderRegistry,
        download_dir: Path | str,
        *,
        config: Optional[BatchConfig] = None,
        product_name: str = "mockflow",
    ) -> None:
        self.capture = capture
        self.encoders = encoders
        self.download_dir = Path(download_dir)
        self.config = config or BatchConfig()
        self.product_name = product_name

    @property
    def format(self) -> ExportFormat:
        fmt = ExportFormat.parse(self.config.format)
        if fmt not in _BATCH_FORMATS:
            raise ExportRequestError(f"Batch exports support png or jpg, not {fmt.value}")
        return fmt

    def estimate_size(self, count: int) -> int:
        """Rough archive size in bytes for *count* mockups at the configured settings."""

        quality_factor = 1.0 if self.format is ExportFormat.PNG else self.config.quality / 100
        return int(count * _ESTIMATED_BYTES_PER_MOCKUP * self.config.scale * quality_factor)

    async def export(
        self,
        items: Sequence[BatchItem],
        *,
        progress: Optional[ProgressCallback] = None,
        day: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> BatchResult:
        if not items:
            raise ExportRequestError("Batch export needs at least one mockup")
        fmt = self.format
        encoder = self.encoders.get(fmt)
        assert isinstance(encoder, StaticEncoder)
        request = ExportRequest(
            format=fmt,
            scale=self.config.scale,
            quality=self.config.quality if fmt is ExportFormat.JPG else None,
        ).validate()

        tracker = ProgressTracker()

        def report(percent: int, phase: ExportPhase) -> None:
            current = tracker.advance(percent, phase)
            if progress is not None:
                progress(current)

        total = len(items)
        taken: Set[str] = set()
        members: List[tuple[str, bytes]] = []
        skipped: List[str] = []
        report(0, ExportPhase.CAPTURING)
        for index, item in enumerate(items):
            report(round((index + 0.5) / total * CAPTURE_SHARE), ExportPhase.CAPTURING)
            try:
                bitmap = await self.capture.capture(item.target, scale=request.scale)
                artifact = await encoder.encode(bitmap, request)
            except ExportError as exc:
                logger.error("Failed to export mockup %r: %s", item.name, exc)
                skipped.append(item.name)
            else:
                member = _unique(
                    batch_member_name(self.config.naming_pattern, item.name, index, fmt.extension, now=now),
                    taken,
                )
                taken.add(member)
                members.append((member, artifact.data))
            report(round((index + 1) / total * CAPTURE_SHARE), ExportPhase.CAPTURING)

        if not members:
            raise ExportError(f"None of the {total} mockup(s) could be exported")

        report(PACKAGING_START, ExportPhase.FINALIZING)
        data = await asyncio.to_thread(_build_archive, members, self.config.zip_compression_level)
        target = self.download_dir / batch_archive_name(self.product_name, day)
        try:
            await asyncio.to_thread(write_atomic, target, data)
        except OSError as exc:
            raise DeliveryError(f"Unable to save '{target}': {exc.strerror or exc}") from exc
        report(100, ExportPhase.FINALIZING)
        logger.info("Saved batch %s (%d of %d mockups)", target, len(members), total)
        return BatchResult(archive=target, members=[name for name, _ in members], skipped=skipped)


async def export_static_gif(
    capture: CaptureService,
    encoder: AnimatedFormatEncoder,
    target: Any,
    *,
    scale: int = 1,
    duration: int = 2000,
) -> EncodedArtifact:
    """Capture *target* once and encode it as a single-frame GIF shown for *duration* ms."""

    if int(duration) <= 0:
        raise ExportRequestError(f"duration must be > 0 ms, got {duration!r}")
    bitmap = await capture.capture(target, scale=scale)
    return await encoder.encode([Frame(bitmap=bitmap, delay=int(duration))], int(duration))
