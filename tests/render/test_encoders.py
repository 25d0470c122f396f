from __future__ import annotations

import asyncio
import base64
import io
import re

import pytest
from PIL import Image

from src.datatypes import AppConfig
from src.mockflow_export.models import Bitmap, ExportFormat, ExportRequest, Frame
from src.mockflow_export.render import encoders
from src.mockflow_export.render.animation import PillowGifEncoder
from src.mockflow_export.render.errors import EncodeError, ExportRequestError
from tests.helpers.export_stubs import make_mockup


def _bitmap(scale: int = 1, *, alpha: int = 255) -> Bitmap:
    image = make_mockup(alpha=alpha)
    if scale != 1:
        image = image.resize((image.width * scale, image.height * scale))
    return Bitmap(image)


def test_map_png_compression_level_clamps_values() -> None:
    assert encoders.map_png_compression_level(-5) == 0
    assert encoders.map_png_compression_level(0) == 0
    assert encoders.map_png_compression_level(1) == 6
    assert encoders.map_png_compression_level(2) == 9
    assert encoders.map_png_compression_level(99) == 9


def test_png_keeps_dimensions_and_signature() -> None:
    data = encoders.PngEncoder().encode_bitmap(_bitmap(scale=2))

    assert data[:8] == b"\x89PNG\r\n\x1a\n"
    with Image.open(io.BytesIO(data)) as image:
        assert image.size == (750, 1624)


def test_png_is_deterministic() -> None:
    encoder = encoders.PngEncoder(compression_level=2)
    bitmap = _bitmap()

    assert encoder.encode_bitmap(bitmap) == encoder.encode_bitmap(bitmap)


def test_png_preserves_transparency() -> None:
    data = encoders.PngEncoder().encode_bitmap(_bitmap(alpha=0))

    with Image.open(io.BytesIO(data)) as image:
        assert image.mode == "RGBA"
        assert image.getpixel((0, 0))[3] == 0


def test_jpeg_lower_quality_is_never_larger() -> None:
    encoder = encoders.JpegEncoder()
    bitmap = _bitmap(scale=2)

    low = encoder.encode_bitmap(bitmap, quality=10)
    high = encoder.encode_bitmap(bitmap, quality=100)

    assert len(low) <= len(high)
    assert low[:3] == b"\xff\xd8\xff"


def test_jpeg_flattens_alpha_onto_matte() -> None:
    encoder = encoders.JpegEncoder(matte_color="#000000")

    data = encoder.encode_bitmap(_bitmap(alpha=0), quality=95)

    with Image.open(io.BytesIO(data)) as image:
        assert image.mode == "RGB"
        assert max(image.getpixel((100, 400))) < 8


def test_jpeg_uses_request_quality() -> None:
    encoder = encoders.JpegEncoder(default_quality=95)
    bitmap = _bitmap()

    artifact = asyncio.run(encoder.encode(bitmap, ExportRequest(format="jpg", quality=5)))

    assert artifact.data == encoder.encode_bitmap(bitmap, quality=5)
    assert artifact.mime_type == "image/jpeg"


def test_svg_wraps_png_data_uri() -> None:
    encoder = encoders.SvgEncoder()

    document = encoder.encode_bitmap(_bitmap()).decode("utf-8")

    assert 'xmlns:xlink="http://www.w3.org/1999/xlink"' in document
    assert 'width="375" height="812"' in document
    assert document.count("<image ") == 1
    match = re.search(r'xlink:href="data:image/png;base64,([^"]+)"', document)
    assert match is not None
    assert base64.b64decode(match.group(1)).startswith(b"\x89PNG")


def test_suggested_filename_uses_product_and_extension() -> None:
    encoder = encoders.PngEncoder("My App")

    first = encoder.suggest_filename()
    second = encoder.suggest_filename()

    assert re.fullmatch(r"My App-export-\d+\.png", first)
    assert first != second


def test_registry_covers_every_format() -> None:
    registry = encoders.build_registry(AppConfig())

    assert {encoder.format for encoder in registry} == set(ExportFormat)
    assert registry.get("jpeg").format is ExportFormat.JPG
    assert registry.get(ExportFormat.GIF).kind is encoders.EncoderKind.ANIMATED
    assert registry.get("pdf").kind is encoders.EncoderKind.DOCUMENT
    with pytest.raises(ExportRequestError):
        registry.get("bmp")


def test_registry_reports_missing_encoder() -> None:
    registry = encoders.EncoderRegistry([encoders.PngEncoder()])

    assert ExportFormat.PNG in registry
    with pytest.raises(EncodeError):
        registry.get("svg")


def test_empty_payload_is_an_encode_error() -> None:
    with pytest.raises(EncodeError):
        encoders.PngEncoder().artifact(b"")


def test_animated_encoder_rejects_frame_count_mismatch() -> None:
    class _DroppingBackend:
        def encode(self, frames, options):
            return PillowGifEncoder().encode(frames[:1], options)

    encoder = encoders.AnimatedFormatEncoder(backend=_DroppingBackend())
    frames = [Frame(_bitmap(), 100) for _ in range(3)]

    with pytest.raises(EncodeError, match="1 frame"):
        asyncio.run(encoder.encode(frames, 100))


def test_animated_encoder_accepts_async_backend() -> None:
    class _AsyncBackend:
        async def encode(self, frames, options):
            return PillowGifEncoder().encode(frames, options)

    encoder = encoders.AnimatedFormatEncoder(backend=_AsyncBackend(), repeat=3)
    frames = [Frame(_bitmap(), 200) for _ in range(2)]

    artifact = asyncio.run(encoder.encode(frames, 200))

    assert artifact.mime_type == "image/gif"
    with Image.open(io.BytesIO(artifact.data)) as image:
        assert image.n_frames == 2
        assert image.info.get("loop") == 3


def test_animated_encoder_wraps_backend_failures() -> None:
    class _BrokenBackend:
        def encode(self, frames, options):
            raise RuntimeError("worker crashed")

    encoder = encoders.AnimatedFormatEncoder(backend=_BrokenBackend())

    with pytest.raises(EncodeError, match="worker crashed"):
        asyncio.run(encoder.encode([Frame(_bitmap(), 100)], 100))
