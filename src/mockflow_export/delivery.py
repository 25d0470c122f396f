"""Handing encoded artifacts to the user: file download, clipboard, print surface."""

from __future__ import annotations

import asyncio
import atexit
import logging
import os
import tempfile
import threading
import weakref
import webbrowser
from pathlib import Path
from typing import Callable, Dict, Optional, Set

from .clipboard import ImageClipboard, TextClipboard
from .models import DeliveryMode, EncodedArtifact
from .render.document import PrintSurface
from .render.errors import DeliveryError

__all__ = ["DeliveryService", "write_atomic"]

logger = logging.getLogger(__name__)

Opener = Callable[[str], object]

_LIVE_SERVICES: "weakref.WeakSet[DeliveryService]" = weakref.WeakSet()


@atexit.register
def _sweep_surfaces() -> None:
    for service in list(_LIVE_SERVICES):
        service.close()


def write_atomic(path: Path, data: bytes) -> Path:
    """
    Write *data* to *path* through a temporary sibling file.

    The temporary file is removed on every exit path; *path* only ever appears
    complete.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "wb",
            delete=False,
            dir=str(path.parent),
            prefix=".partial-",
        ) as handle:
            temp_path = Path(handle.name)
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    finally:
        if temp_path is not None and temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                logger.warning("Could not remove temporary file %s", temp_path)
    return path


class DeliveryService:
    """Deliver artifacts as downloads, clipboard contents or print surfaces."""

    def __init__(
        self,
        download_dir: Path | str,
        *,
        image_clipboard: Optional[ImageClipboard] = None,
        text_clipboard: Optional[TextClipboard] = None,
        opener: Opener = webbrowser.open,
        surface_ttl_seconds: float = 60.0,
    ) -> None:
        self.download_dir = Path(download_dir)
        self.image_clipboard = image_clipboard or ImageClipboard()
        self.text_clipboard = text_clipboard or TextClipboard()
        self._opener = opener
        self.surface_ttl_seconds = surface_ttl_seconds
        self._pending_surfaces: Dict[Path, threading.Timer] = {}
        self._lock = threading.Lock()
        _LIVE_SERVICES.add(self)

    async def deliver(self, artifact: EncodedArtifact, mode: DeliveryMode) -> Optional[Path]:
        """Dispatch to :meth:`download` or :meth:`copy_to_clipboard`."""

        if DeliveryMode(mode) is DeliveryMode.CLIPBOARD:
            await self.copy_to_clipboard(artifact)
            return None
        return await self.download(artifact)

    async def download(self, artifact: EncodedArtifact) -> Path:
        """Save *artifact* under its suggested filename in the download directory."""

        target = self.download_dir / artifact.suggested_filename
        try:
            saved = await asyncio.to_thread(write_atomic, target, artifact.data)
        except OSError as exc:
            raise DeliveryError(f"Unable to save '{target}': {exc.strerror or exc}") from exc
        logger.info("Saved %s (%d bytes)", saved, artifact.size)
        return saved

    async def copy_to_clipboard(self, artifact: EncodedArtifact) -> str:
        """Write the artifact to the clipboard, returning the mechanism used."""

        if artifact.is_text:
            text = artifact.data.decode("utf-8")
            tool = await asyncio.to_thread(self.text_clipboard.copy_text, text)
        else:
            tool = await asyncio.to_thread(self.image_clipboard.copy_image, artifact.data, artifact.mime_type)
        logger.info("Copied %s to clipboard via %s", artifact.mime_type, tool)
        return tool

    async def present_document(self, surface: PrintSurface) -> None:
        """
        Open *surface* in the browser so the user can print or save it as PDF.

        Fire-and-forget: whether a window opened or a PDF was saved cannot be
        observed, so nothing here raises. A timer thread removes the surface file after
        ``surface_ttl_seconds``; :meth:`close` and interpreter exit remove it sooner.
        """

        path: Optional[Path] = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                suffix=".html",
                prefix="print-",
                delete=False,
            ) as handle:
                path = Path(handle.name)
                handle.write(surface.html)
            timer = threading.Timer(self.surface_ttl_seconds, self._release_surface, args=(path,))
            timer.daemon = True
            with self._lock:
                self._pending_surfaces[path] = timer
            self._opener(path.resolve().as_uri())
        except Exception as exc:
            logger.warning("Print surface for %s could not be opened: %s", surface.suggested_filename, exc)
            if path is not None:
                self._release_surface(path)
            return

        timer.start()
        logger.info("Opened print surface %dx%d for %s", surface.width, surface.height, surface.suggested_filename)

    def _release_surface(self, path: Path) -> None:
        with self._lock:
            timer = self._pending_surfaces.pop(path, None)
        if timer is not None:
            timer.cancel()
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove print surface %s: %s", path, exc)

    @property
    def pending_surfaces(self) -> Set[Path]:
        with self._lock:
            return set(self._pending_surfaces)

    def close(self) -> None:
        """Remove any print surfaces still waiting for their timer."""

        for path in self.pending_surfaces:
            self._release_surface(path)
