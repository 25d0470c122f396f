from __future__ import annotations

__all__ = [
    "CaptureError",
    "DeliveryError",
    "EncodeError",
    "ExportError",
    "ExportRequestError",
    "UnsupportedOptionError",
]


class ExportError(RuntimeError):
    """Base class for export pipeline issues."""


class ExportRequestError(ExportError, ValueError):
    """Raised when an export request carries out-of-range values."""


class CaptureError(ExportError):
    """Raised when the renderer cannot produce a bitmap for the target."""


class EncodeError(ExportError):
    """Raised when a bitmap or frame list cannot be encoded."""


class DeliveryError(ExportError):
    """Raised when saving or copying an encoded artifact fails."""


class UnsupportedOptionError(ExportError):
    """Raised by strict option checks when an option does not apply to the format."""
