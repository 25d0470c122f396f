"""Document (PDF) output.

The default backend mirrors what a browser offers: a print surface, an HTML page
sized to the capture with the image embedded, that asks the user to print or
save as PDF. Nothing comes back from that dialog, so callers cannot tell whether
a PDF was ever written. The ``pillow`` backend produces real PDF bytes instead.
"""

from __future__ import annotations

import base64
import html
import io
from dataclasses import dataclass, field

from PIL import Image

from src.datatypes import DocumentConfig

from .errors import EncodeError

__all__ = ["PrintSurface", "build_print_surface", "render_pdf"]

_SURFACE_TEMPLATE = """<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8">
    <title>{title}</title>
    <style>
      @media print {{
        @page {{ margin: 0; size: {width}px {height}px; }}
        body {{ margin: 0; padding: 0; }}
        img {{ width: 100%; height: auto; box-shadow: none; }}
        .instructions {{ display: none; }}
      }}
      body {{
        display: flex;
        justify-content: center;
        align-items: center;
        min-height: 100vh;
        margin: 0;
        background: #f0f0f0;
      }}
      img {{ max-width: 100%; height: auto; box-shadow: 0 4px 20px rgba(0,0,0,0.2); }}
      .instructions {{
        position: fixed;
        top: 20px;
        left: 50%;
        transform: translateX(-50%);
        background: #333;
        color: white;
        padding: 10px 20px;
        border-radius: 8px;
        font-family: system-ui, sans-serif;
        font-size: 14px;
      }}
    </style>
  </head>
  <body>
    <div class="instructions">Press Ctrl+P (or Cmd+P) to save as PDF</div>
    <img src="data:image/jpeg;base64,{payload}" width="{width}" height="{height}" alt="{title}">
    <script>setTimeout(function () {{ window.print(); }}, {delay});</script>
  </body>
</html>
"""


@dataclass(frozen=True)
class PrintSurface:
    """A self-contained page that triggers the platform print/save dialog."""

    html: str = field(repr=False)
    width: int
    height: int
    suggested_filename: str


def _to_rgb(image: Image.Image) -> Image.Image:
    if image.mode in ("RGBA", "LA", "P"):
        rgba = image.convert("RGBA")
        canvas = Image.new("RGB", rgba.size, (255, 255, 255))
        canvas.paste(rgba, mask=rgba.getchannel("A"))
        return canvas
    return image.convert("RGB")


def build_print_surface(image: Image.Image, cfg: DocumentConfig, suggested_filename: str) -> PrintSurface:
    """Embed *image* as a JPEG inside a print page whose @page box matches its size."""

    buffer = io.BytesIO()
    try:
        _to_rgb(image).save(buffer, format="JPEG", quality=int(cfg.image_quality))
    except (OSError, ValueError) as exc:
        raise EncodeError(f"Failed to prepare print surface: {exc}") from exc
    payload = base64.b64encode(buffer.getvalue()).decode("ascii")
    markup = _SURFACE_TEMPLATE.format(
        title=html.escape(cfg.page_title),
        width=image.width,
        height=image.height,
        payload=payload,
        delay=max(0, int(cfg.print_delay_ms)),
    )
    return PrintSurface(
        html=markup,
        width=image.width,
        height=image.height,
        suggested_filename=suggested_filename,
    )


def render_pdf(image: Image.Image, cfg: DocumentConfig, *, scale: int = 1) -> bytes:
    """Write a single-page PDF whose page is exactly the capture at CSS pixel size."""

    buffer = io.BytesIO()
    try:
        _to_rgb(image).save(
            buffer,
            format="PDF",
            resolution=96.0 * max(1, int(scale)),
            title=cfg.page_title,
            quality=int(cfg.image_quality),
        )
    except (OSError, ValueError) as exc:
        raise EncodeError(f"Failed to write PDF: {exc}") from exc
    return buffer.getvalue()
