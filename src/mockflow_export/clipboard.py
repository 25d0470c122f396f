"""System clipboard writers for encoded artifacts.

Raster payloads go through the platform's image clipboard tool:

- Linux/BSD: ``wl-copy`` (Wayland) or ``xclip`` (X11), fed on stdin
- macOS: ``osascript`` reading a temporary file
- Windows: PowerShell's ``System.Windows.Forms.Clipboard`` reading a temporary file

Text payloads (SVG documents) use ``pyperclip``.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Tuple

import pyperclip

from .render.errors import DeliveryError

__all__ = ["ImageClipboard", "TextClipboard"]

logger = logging.getLogger(__name__)

_MAC_CLASSES = {
    "image/png": "«class PNGf»",
    "image/jpeg": "JPEG picture",
    "image/gif": "GIF picture",
}

Which = Callable[[str], Optional[str]]


class ImageClipboard:
    """Copy image bytes to the system clipboard using native tools."""

    def __init__(
        self,
        *,
        timeout: float = 5.0,
        platform: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
        which: Which = shutil.which,
    ) -> None:
        self.timeout = timeout
        self._platform = platform or sys.platform
        self._environ = environ if environ is not None else os.environ
        self._which = which

    def detect_tool(self) -> Optional[str]:
        """Return the name of the clipboard tool that would be used, or ``None``."""

        if self._platform == "darwin":
            return "osascript" if self._which("osascript") else None
        if self._platform == "win32":
            return "powershell" if self._which("powershell") else None
        session_type = self._environ.get("XDG_SESSION_TYPE", "").lower()
        if session_type == "wayland" and self._which("wl-copy"):
            return "wl-copy"
        if (session_type == "x11" or self._environ.get("DISPLAY")) and self._which("xclip"):
            return "xclip"
        for candidate in ("wl-copy", "xclip"):
            if self._which(candidate):
                return candidate
        return None

    @property
    def available(self) -> bool:
        return self.detect_tool() is not None

    def _stdin_argv(self, tool: str, mime_type: str) -> List[str]:
        if tool == "wl-copy":
            return ["wl-copy", "--type", mime_type]
        return ["xclip", "-selection", "clipboard", "-t", mime_type, "-i"]

    def _file_argv(self, tool: str, path: Path, mime_type: str) -> List[str]:
        if tool == "osascript":
            clip_class = _MAC_CLASSES.get(mime_type, "«class PNGf»")
            script = f'set the clipboard to (read (POSIX file "{path}") as {clip_class})'
            return ["osascript", "-e", script]
        literal = str(path).replace("'", "''")
        command = (
            "Add-Type -AssemblyName System.Windows.Forms; "
            "Add-Type -AssemblyName System.Drawing; "
            f"$img = [System.Drawing.Image]::FromFile('{literal}'); "
            "[System.Windows.Forms.Clipboard]::SetImage($img); "
            "$img.Dispose()"
        )
        return ["powershell", "-NoProfile", "-STA", "-Command", command]

    def _run(self, argv: List[str], payload: Optional[bytes]) -> Tuple[int, str]:
        # wl-copy and xclip leave a forked child owning the selection; it inherits
        # stderr, so a pipe there would never reach EOF.
        with tempfile.TemporaryFile() as err_file:
            try:
                completed = subprocess.run(
                    argv,
                    input=payload,
                    stdin=None if payload is not None else subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=err_file,
                    timeout=self.timeout,
                    shell=False,
                    check=False,
                )
            except subprocess.TimeoutExpired as exc:
                raise DeliveryError(f"Clipboard tool {argv[0]} timed out after {self.timeout:.0f}s") from exc
            except OSError as exc:
                raise DeliveryError(f"Clipboard tool {argv[0]} could not be started: {exc}") from exc
            err_file.seek(0)
            stderr = err_file.read().decode("utf-8", errors="replace").strip()
        return completed.returncode, stderr

    def copy_image(self, data: bytes, mime_type: str) -> str:
        """
        Place *data* on the clipboard as *mime_type* and return the tool name used.

        Raises:
            DeliveryError: If no tool is available or the tool reports a failure.
        """

        tool = self.detect_tool()
        if tool is None:
            raise DeliveryError("No image clipboard tool available (install wl-clipboard or xclip)")

        if tool in ("wl-copy", "xclip"):
            code, stderr = self._run(self._stdin_argv(tool, mime_type), data)
        else:
            suffix = "." + mime_type.rsplit("/", 1)[-1]
            temp_path: Optional[Path] = None
            try:
                with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as handle:
                    handle.write(data)
                    temp_path = Path(handle.name)
                code, stderr = self._run(self._file_argv(tool, temp_path, mime_type), None)
            finally:
                if temp_path is not None:
                    try:
                        temp_path.unlink()
                    except OSError as exc:
                        logger.warning("Could not remove clipboard temp file %s: %s", temp_path, exc)
        if code != 0:
            raise DeliveryError(f"Clipboard tool {tool} failed ({code}): {stderr or 'no output'}")
        logger.debug("Copied %d bytes (%s) to clipboard via %s", len(data), mime_type, tool)
        return tool


class TextClipboard:
    """pyperclip-backed clipboard for text payloads."""

    def copy_text(self, text: str) -> str:
        try:
            pyperclip.copy(text)
        except pyperclip.PyperclipException as exc:
            raise DeliveryError(f"Clipboard copy failed: {exc}") from exc
        return "pyperclip"
