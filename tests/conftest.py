from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest
from PIL import Image

from src.datatypes import AppConfig
from src.mockflow_export.capture import CaptureService, ImageRenderer
from src.mockflow_export.delivery import DeliveryService
from src.mockflow_export.orchestrator import ExportOrchestrator
from src.mockflow_export.render.encoders import build_registry
from tests.helpers.export_stubs import (
    FakeImageClipboard,
    FakeTextClipboard,
    MockupTarget,
    RecordingListener,
    RecordingOpener,
    make_mockup,
)


@pytest.fixture
def mockup_image() -> Image.Image:
    """A 375x812 composition, the size of a phone screen at 1x."""

    return make_mockup()


@pytest.fixture
def mockup_target(mockup_image: Image.Image) -> MockupTarget:
    return MockupTarget(mockup_image)


@pytest.fixture
def app_config() -> AppConfig:
    """Default configuration with the success display window disabled."""

    cfg = AppConfig()
    cfg.export.success_display_seconds = 0.0
    return cfg


@pytest.fixture
def download_dir(tmp_path: Path) -> Path:
    return tmp_path / "exports"


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def image_clipboard() -> FakeImageClipboard:
    return FakeImageClipboard()


@pytest.fixture
def text_clipboard() -> FakeTextClipboard:
    return FakeTextClipboard()


@pytest.fixture
def opener() -> RecordingOpener:
    return RecordingOpener()


@pytest.fixture
def make_orchestrator(
    app_config: AppConfig,
    download_dir: Path,
    listener: RecordingListener,
    image_clipboard: FakeImageClipboard,
    text_clipboard: FakeTextClipboard,
    opener: RecordingOpener,
) -> Callable[..., ExportOrchestrator]:
    """Build an orchestrator wired to in-memory clipboards and a recording opener."""

    def _factory(cfg: AppConfig | None = None, **kwargs) -> ExportOrchestrator:
        cfg = cfg or app_config
        capture = CaptureService(
            kwargs.pop("renderer", None) or ImageRenderer(),
            background_color=cfg.export.background_color,
            cross_origin_enabled=cfg.export.cross_origin_enabled,
        )
        delivery = DeliveryService(
            download_dir,
            image_clipboard=kwargs.pop("image_clipboard", image_clipboard),
            text_clipboard=text_clipboard,
            opener=kwargs.pop("opener", opener),
            surface_ttl_seconds=cfg.document.surface_ttl_seconds,
        )
        return ExportOrchestrator(
            capture,
            delivery,
            build_registry(cfg),
            animation=cfg.animation,
            default_scale=cfg.export.default_scale,
            success_display_seconds=cfg.export.success_display_seconds,
            listener=listener,
            **kwargs,
        )

    return _factory
