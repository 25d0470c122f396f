"""Animated GIF encoding.

:class:`PillowGifEncoder` is the default ``AnimatedEncoder``. Pillow quantises and
LZW-compresses every frame on its own; the frames are then spliced into a single
GIF89a stream by :func:`mux_gif_frames`. Pillow's own multi-frame writer folds
identical consecutive frames together, which would break the one-payload-frame
per captured-frame contract, so it is not used here.
"""

from __future__ import annotations

import io
import logging
import struct
from dataclasses import dataclass
from typing import Awaitable, List, Optional, Protocol, Sequence, Tuple, Union

from PIL import Image

from .errors import EncodeError

__all__ = [
    "AnimatedEncoder",
    "AnimationOptions",
    "GifImageBlock",
    "PillowGifEncoder",
    "gif_frame_delays",
    "mux_gif_frames",
    "palette_size_for_quality",
    "split_gif_image",
]

logger = logging.getLogger(__name__)

_GIF_SIGNATURES = (b"GIF87a", b"GIF89a")
_EXTENSION_INTRODUCER = 0x21
_IMAGE_SEPARATOR = 0x2C
_TRAILER = 0x3B
_DISPOSE_NONE = 0x04  # disposal method 1 (leave in place), shifted into bits 2-4
_MAX_DELAY_CS = 0xFFFF


@dataclass(frozen=True)
class AnimationOptions:
    """
    Encoder parameters for one animated export.

    Attributes:
        width (int): Logical screen width in pixels.
        height (int): Logical screen height in pixels.
        quality (int): 1-30; higher values use a smaller palette and a faster quantiser.
        frame_duration (int): Fallback delay in milliseconds for frames without one.
        repeat (int): ``0`` loops forever, ``-1`` plays once, ``n`` repeats *n* times.
        background (Tuple[int, int, int]): Matte used to flatten transparent frames.
    """

    width: int
    height: int
    quality: int = 10
    frame_duration: int = 500
    repeat: int = 0
    background: Tuple[int, int, int] = (255, 255, 255)


class AnimatedEncoder(Protocol):
    """Turns timed frames into one animated payload; may be sync or async."""

    def encode(
        self,
        frames: Sequence["TimedImage"],
        options: AnimationOptions,
    ) -> Union[bytes, Awaitable[bytes]]:
        ...


class TimedImage(Protocol):
    """Structural view of :class:`~src.mockflow_export.models.Frame` used by encoders."""

    @property
    def delay(self) -> int: ...

    @property
    def bitmap(self) -> "_HasImage": ...


class _HasImage(Protocol):
    @property
    def image(self) -> Image.Image: ...


@dataclass(frozen=True)
class GifImageBlock:
    """One image (descriptor, colour table and LZW data) lifted out of a GIF stream."""

    left: int
    top: int
    width: int
    height: int
    interlaced: bool
    table_bits: int
    color_table: bytes
    lzw_data: bytes


def palette_size_for_quality(quality: int) -> int:
    """Map the 1-30 quality knob onto a palette size (1 -> 256 colours, 30 -> 16)."""

    clamped = max(1, min(30, int(quality)))
    return int(round(256 - (clamped - 1) * (256 - 16) / 29))


def _skip_sub_blocks(data: bytes, pos: int) -> int:
    while True:
        if pos >= len(data):
            raise EncodeError("Truncated GIF data sub-block")
        length = data[pos]
        pos += 1
        if length == 0:
            return pos
        pos += length


def _table_length(bits: int) -> int:
    return 3 * (1 << (bits + 1))


def split_gif_image(data: bytes) -> GifImageBlock:
    """Return the first image block of a GIF stream, resolving its colour table."""

    if data[:6] not in _GIF_SIGNATURES or len(data) < 13:
        raise EncodeError("Frame encoder did not produce a GIF stream")
    flags = data[10]
    pos = 13
    table = b""
    table_bits = 0
    if flags & 0x80:
        table_bits = flags & 0x07
        table = data[pos:pos + _table_length(table_bits)]
        pos += len(table)

    while pos < len(data):
        marker = data[pos]
        if marker == _EXTENSION_INTRODUCER:
            pos = _skip_sub_blocks(data, pos + 2)
        elif marker == _IMAGE_SEPARATOR:
            left, top, width, height, packed = struct.unpack("<HHHHB", data[pos + 1:pos + 10])
            pos += 10
            if packed & 0x80:
                table_bits = packed & 0x07
                table = data[pos:pos + _table_length(table_bits)]
                pos += len(table)
            if not table:
                raise EncodeError("GIF frame carries no colour table")
            start = pos
            pos = _skip_sub_blocks(data, pos + 1)
            return GifImageBlock(
                left=left,
                top=top,
                width=width,
                height=height,
                interlaced=bool(packed & 0x40),
                table_bits=table_bits,
                color_table=table,
                lzw_data=data[start:pos],
            )
        elif marker == _TRAILER:
            break
        else:
            raise EncodeError(f"Unexpected GIF block 0x{marker:02x} at offset {pos}")
    raise EncodeError("GIF stream contains no image")


def mux_gif_frames(
    blocks: Sequence[GifImageBlock],
    delays_ms: Sequence[int],
    *,
    width: int,
    height: int,
    repeat: int = 0,
) -> bytes:
    """Assemble image blocks into a GIF89a animation, one frame per block."""

    if not blocks:
        raise EncodeError("Cannot build an animation without frames")
    if len(blocks) != len(delays_ms):
        raise EncodeError("Every frame needs a delay")

    out = bytearray(b"GIF89a")
    out += struct.pack("<HHBBB", int(width), int(height), 0, 0, 0)
    if repeat >= 0:
        out += b"\x21\xff\x0bNETSCAPE2.0\x03\x01"
        out += struct.pack("<H", min(int(repeat), 0xFFFF))
        out += b"\x00"
    for block, delay in zip(blocks, delays_ms, strict=True):
        centiseconds = max(1, min(_MAX_DELAY_CS, int(round(int(delay) / 10))))
        out += b"\x21\xf9\x04"
        out += struct.pack("<BHBB", _DISPOSE_NONE, centiseconds, 0, 0)
        packed = 0x80 | (0x40 if block.interlaced else 0) | block.table_bits
        out += struct.pack(
            "<BHHHHB",
            _IMAGE_SEPARATOR,
            block.left,
            block.top,
            block.width,
            block.height,
            packed,
        )
        out += block.color_table
        out += block.lzw_data
    out.append(_TRAILER)
    return bytes(out)


def _flatten(image: Image.Image, background: Tuple[int, int, int]) -> Image.Image:
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        canvas = Image.new("RGB", rgba.size, background)
        canvas.paste(rgba, mask=rgba.getchannel("A"))
        return canvas
    return image.convert("RGB")


class PillowGifEncoder:
    """Default animated encoder backed by Pillow's quantiser and GIF writer."""

    def encode(self, frames: Sequence[TimedImage], options: AnimationOptions) -> bytes:
        if not frames:
            raise EncodeError("Cannot build an animation without frames")

        colors = palette_size_for_quality(options.quality)
        method = Image.Quantize.MEDIANCUT if options.quality <= 10 else Image.Quantize.FASTOCTREE
        logger.debug(
            "Encoding %d GIF frame(s) at %dx%d colors=%d method=%s repeat=%s",
            len(frames),
            options.width,
            options.height,
            colors,
            method.name,
            options.repeat,
        )

        blocks: List[GifImageBlock] = []
        delays: List[int] = []
        for index, frame in enumerate(frames):
            image = frame.bitmap.image
            if image.size != (options.width, options.height):
                raise EncodeError(
                    f"Frame {index} is {image.width}x{image.height}, "
                    f"expected {options.width}x{options.height}"
                )
            try:
                paletted = _flatten(image, options.background).quantize(colors=colors, method=method)
                buffer = io.BytesIO()
                paletted.save(buffer, format="GIF")
            except (OSError, ValueError) as exc:
                raise EncodeError(f"Failed to encode GIF frame {index}: {exc}") from exc
            blocks.append(split_gif_image(buffer.getvalue()))
            delays.append(frame.delay or options.frame_duration)

        return mux_gif_frames(
            blocks,
            delays,
            width=options.width,
            height=options.height,
            repeat=options.repeat,
        )


def gif_frame_delays(data: bytes) -> Optional[List[int]]:
    """Decode *data* with Pillow and return each frame's delay in milliseconds."""

    try:
        with Image.open(io.BytesIO(data)) as image:
            delays: List[int] = []
            for index in range(getattr(image, "n_frames", 1)):
                image.seek(index)
                delays.append(int(image.info.get("duration", 0)))
            return delays
    except (OSError, EOFError):
        return None
