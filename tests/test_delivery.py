from __future__ import annotations

import asyncio
import os
import subprocess
import sys
import time
from pathlib import Path
from types import SimpleNamespace

import pyperclip
import pytest

from src.mockflow_export import clipboard as clipboard_module
from src.mockflow_export import delivery as delivery_module
from src.mockflow_export.clipboard import ImageClipboard, TextClipboard
from src.mockflow_export.delivery import DeliveryService, write_atomic
from src.mockflow_export.models import DeliveryMode, EncodedArtifact
from src.mockflow_export.render.document import PrintSurface
from src.mockflow_export.render.errors import DeliveryError
from tests.helpers.export_stubs import FakeImageClipboard, FakeTextClipboard, RecordingOpener


def _artifact(name: str = "mockflow-export-1.png", data: bytes = b"\x89PNG-data") -> EncodedArtifact:
    return EncodedArtifact(data=data, mime_type="image/png", suggested_filename=name)


def _wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "condition not met in time"
        time.sleep(0.01)


def test_write_atomic_leaves_no_partial_files(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "out.png"

    write_atomic(target, b"payload")

    assert target.read_bytes() == b"payload"
    assert [p.name for p in target.parent.iterdir()] == ["out.png"]


def test_write_atomic_cleans_up_on_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def _boom(src, dst):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr("src.mockflow_export.delivery.os.replace", _boom)

    with pytest.raises(OSError):
        write_atomic(tmp_path / "out.png", b"payload")

    assert list(tmp_path.iterdir()) == []


def test_download_saves_under_suggested_name(tmp_path: Path) -> None:
    service = DeliveryService(tmp_path, image_clipboard=FakeImageClipboard())

    saved = asyncio.run(service.deliver(_artifact(), DeliveryMode.DOWNLOAD))

    assert saved == tmp_path / "mockflow-export-1.png"
    assert saved.read_bytes() == b"\x89PNG-data"


def test_download_errors_become_delivery_errors(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    service = DeliveryService(blocker)

    with pytest.raises(DeliveryError, match="Unable to save"):
        asyncio.run(service.download(_artifact()))


def test_clipboard_mode_routes_by_payload_kind(tmp_path: Path) -> None:
    images = FakeImageClipboard()
    texts = FakeTextClipboard()
    service = DeliveryService(tmp_path, image_clipboard=images, text_clipboard=texts)
    svg = EncodedArtifact(data=b"<svg/>", mime_type="image/svg+xml", suggested_filename="a.svg")

    assert asyncio.run(service.deliver(_artifact(), DeliveryMode.CLIPBOARD)) is None
    asyncio.run(service.deliver(svg, "clipboard"))

    assert images.copies == [(b"\x89PNG-data", "image/png")]
    assert texts.texts == ["<svg/>"]
    assert list(tmp_path.iterdir()) == []


def test_present_document_opens_file_uri_and_releases_on_close(tmp_path: Path) -> None:
    opener = RecordingOpener()
    service = DeliveryService(tmp_path, opener=opener, surface_ttl_seconds=60)
    surface = PrintSurface(html="<html>print me</html>", width=10, height=20, suggested_filename="x.pdf")

    asyncio.run(service.present_document(surface))

    (path,) = service.pending_surfaces
    assert opener.urls == [path.resolve().as_uri()]
    assert path.read_text(encoding="utf-8") == "<html>print me</html>"
    service.close()
    assert not path.exists()
    assert service.pending_surfaces == set()


def test_present_document_releases_surface_after_ttl(tmp_path: Path) -> None:
    service = DeliveryService(tmp_path, opener=RecordingOpener(), surface_ttl_seconds=0)
    surface = PrintSurface(html="<html/>", width=1, height=1, suggested_filename="x.pdf")

    async def _run():
        await service.present_document(surface)
        return service.pending_surfaces

    pending = asyncio.run(_run())
    _wait_until(lambda: not service.pending_surfaces)

    assert len(pending) == 1
    assert service.pending_surfaces == set()
    assert not any(path.exists() for path in pending)


def test_present_document_never_raises(tmp_path: Path, caplog) -> None:
    service = DeliveryService(tmp_path, opener=RecordingOpener(error=RuntimeError("popup blocked")))
    surface = PrintSurface(html="<html/>", width=1, height=1, suggested_filename="x.pdf")

    with caplog.at_level("WARNING"):
        asyncio.run(service.present_document(surface))

    assert "popup blocked" in caplog.text
    assert service.pending_surfaces == set()


def test_surface_outlives_its_event_loop_and_is_still_released(tmp_path: Path) -> None:
    service = DeliveryService(tmp_path, opener=RecordingOpener(), surface_ttl_seconds=0.05)
    surface = PrintSurface(html="<html/>", width=1, height=1, suggested_filename="x.pdf")

    asyncio.run(service.present_document(surface))
    (path,) = service.pending_surfaces
    assert path.exists()

    _wait_until(lambda: not path.exists())
    assert service.pending_surfaces == set()


def test_exit_sweep_removes_pending_surfaces(tmp_path: Path) -> None:
    service = DeliveryService(tmp_path, opener=RecordingOpener(), surface_ttl_seconds=60)
    surface = PrintSurface(html="<html/>", width=1, height=1, suggested_filename="x.pdf")
    asyncio.run(service.present_document(surface))
    (path,) = service.pending_surfaces

    delivery_module._sweep_surfaces()

    assert not path.exists()
    assert service.pending_surfaces == set()


@pytest.mark.parametrize(
    ("platform", "environ", "available", "expected"),
    [
        ("linux", {"XDG_SESSION_TYPE": "wayland"}, {"wl-copy", "xclip"}, "wl-copy"),
        ("linux", {"XDG_SESSION_TYPE": "x11"}, {"wl-copy", "xclip"}, "xclip"),
        ("linux", {"DISPLAY": ":0"}, {"xclip"}, "xclip"),
        ("linux", {}, {"wl-copy"}, "wl-copy"),
        ("linux", {}, set(), None),
        ("darwin", {}, {"osascript"}, "osascript"),
        ("win32", {}, {"powershell"}, "powershell"),
    ],
)
def test_image_clipboard_tool_detection(platform, environ, available, expected) -> None:
    clip = ImageClipboard(platform=platform, environ=environ, which=lambda name: name if name in available else None)

    assert clip.detect_tool() == expected
    assert clip.available is (expected is not None)


def test_image_clipboard_pipes_payload_to_wl_copy(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []

    def _fake_run(argv, **kwargs):
        calls.append((argv, kwargs))
        return SimpleNamespace(returncode=0, stderr=b"")

    monkeypatch.setattr(clipboard_module.subprocess, "run", _fake_run)
    clip = ImageClipboard(platform="linux", environ={"XDG_SESSION_TYPE": "wayland"}, which=lambda name: name)

    assert clip.copy_image(b"png-bytes", "image/png") == "wl-copy"

    argv, kwargs = calls[0]
    assert argv == ["wl-copy", "--type", "image/png"]
    assert kwargs["input"] == b"png-bytes"
    assert kwargs["shell"] is False


def test_image_clipboard_reports_tool_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    def _failing(argv, **kwargs):
        kwargs["stderr"].write(b"Error: Can't open display")
        return SimpleNamespace(returncode=1)

    monkeypatch.setattr(clipboard_module.subprocess, "run", _failing)
    clip = ImageClipboard(platform="linux", environ={"DISPLAY": ":0"}, which=lambda name: name)

    with pytest.raises(DeliveryError, match="Can't open display"):
        clip.copy_image(b"png-bytes", "image/png")


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
def test_image_clipboard_returns_while_tool_child_keeps_selection(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    received = tmp_path / "received.bin"
    tool = tmp_path / "xclip"
    tool.write_text('#!/bin/sh\ncat > "$CLIP_OUT"\n( sleep 5 ) &\nexit 0\n', encoding="utf-8")
    tool.chmod(0o755)
    monkeypatch.setenv("PATH", f"{tmp_path}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.setenv("CLIP_OUT", str(received))
    clip = ImageClipboard(timeout=2, platform="linux", environ={"DISPLAY": ":0"}, which=lambda name: name)

    started = time.monotonic()
    assert clip.copy_image(b"png-bytes", "image/png") == "xclip"

    assert time.monotonic() - started < 2
    assert received.read_bytes() == b"png-bytes"


def test_image_clipboard_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    def _slow(argv, **kwargs):
        raise subprocess.TimeoutExpired(argv, kwargs["timeout"])

    monkeypatch.setattr(clipboard_module.subprocess, "run", _slow)
    clip = ImageClipboard(timeout=1, platform="linux", environ={"DISPLAY": ":0"}, which=lambda name: name)

    with pytest.raises(DeliveryError, match="timed out"):
        clip.copy_image(b"png-bytes", "image/png")


def test_macos_clipboard_removes_temp_file(monkeypatch: pytest.MonkeyPatch) -> None:
    seen = []

    def _fake_run(argv, **kwargs):
        script = argv[2]
        path = Path(script.split('POSIX file "', 1)[1].split('"', 1)[0])
        seen.append(path)
        assert path.read_bytes() == b"png-bytes"
        return SimpleNamespace(returncode=0, stderr=b"")

    monkeypatch.setattr(clipboard_module.subprocess, "run", _fake_run)
    clip = ImageClipboard(platform="darwin", which=lambda name: name)

    assert clip.copy_image(b"png-bytes", "image/png") == "osascript"
    assert seen and not seen[0].exists()


def test_missing_clipboard_tool_is_a_delivery_error() -> None:
    clip = ImageClipboard(platform="linux", environ={}, which=lambda name: None)

    with pytest.raises(DeliveryError, match="No image clipboard tool"):
        clip.copy_image(b"png-bytes", "image/png")


def test_text_clipboard_uses_pyperclip(monkeypatch: pytest.MonkeyPatch) -> None:
    copied = []
    monkeypatch.setattr(pyperclip, "copy", copied.append)

    assert TextClipboard().copy_text("<svg/>") == "pyperclip"
    assert copied == ["<svg/>"]


def test_text_clipboard_wraps_pyperclip_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fail(text):
        raise pyperclip.PyperclipException("no copy/paste mechanism")

    monkeypatch.setattr(pyperclip, "copy", _fail)

    with pytest.raises(DeliveryError, match="no copy/paste mechanism"):
        TextClipboard().copy_text("<svg/>")
