"""Configuration loader that parses and validates user-provided TOML."""

from __future__ import annotations

import tomllib
from dataclasses import fields, is_dataclass
from enum import Enum
from typing import Any, Dict

from PIL import ImageColor

from .datatypes import (
    AnimationConfig,
    AppConfig,
    BatchConfig,
    DeliveryConfig,
    DocumentConfig,
    ExportConfig,
    ProgressConfig,
    RasterConfig,
)


class ConfigError(ValueError):
    """Raised when the configuration file is malformed or fails validation."""


def _coerce_bool(value: Any, dotted_key: str) -> bool:
    """Return a bool, coercing simple 0/1 representations when necessary."""

    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"0", "1"}:
            return normalized == "1"
        if normalized in {"true", "false"}:
            return normalized == "true"
    raise ConfigError(f"{dotted_key} must be a boolean (use true/false).")


def _coerce_enum(value: Any, dotted_key: str, enum_cls: type[Enum]) -> Enum:
    """Return the ``enum_cls`` member matching *value* (case-insensitive)."""

    if isinstance(value, enum_cls):
        return value
    normalized = str(value).strip().lower()
    for member in enum_cls:
        if member.value == normalized:
            return member
    choices = ", ".join(repr(member.value) for member in enum_cls)
    raise ConfigError(f"{dotted_key} must be one of {choices}")


def _sanitize_section(raw: dict[str, Any], name: str, cls):
    """
    Coerce a raw TOML table into an instance of ``cls`` with cleaned booleans and enums.

    Parameters:
        raw (dict[str, Any]): Raw TOML section data.
        name (str): Section name used when reporting validation errors.
        cls: Dataclass type used to construct the section object.

    Returns:
        Any: Instantiated dataclass populated with values from ``raw``.

    Raises:
        ConfigError: If the section is not a table or contains invalid keys or values.
    """
    if not isinstance(raw, dict):
        raise ConfigError(f"[{name}] must be a table")
    cleaned: Dict[str, Any] = {}
    cls_fields = {field.name: field for field in fields(cls)}
    bool_fields = {name for name, field in cls_fields.items() if field.type is bool}
    enum_fields = {
        name: field.type
        for name, field in cls_fields.items()
        if isinstance(field.type, type) and issubclass(field.type, Enum)
    }
    nested_fields = {
        name: field.type
        for name, field in cls_fields.items()
        if is_dataclass(field.type)
    }
    for key, value in raw.items():
        if key in bool_fields:
            cleaned[key] = _coerce_bool(value, f"{name}.{key}")
        elif key in enum_fields:
            cleaned[key] = _coerce_enum(value, f"{name}.{key}", enum_fields[key])
        elif key in nested_fields:
            if not isinstance(value, dict):
                raise ConfigError(f"[{name}.{key}] must be a table")
            cleaned[key] = _sanitize_section(value, f"{name}.{key}", nested_fields[key])
        else:
            cleaned[key] = value
    try:
        return cls(**cleaned)
    except TypeError as exc:
        raise ConfigError(f"Invalid keys in [{name}]: {exc}") from exc


def _validate_color(value: Any, dotted_key: str) -> None:
    """Ensure *value* is a colour string Pillow understands."""

    if not isinstance(value, str):
        raise ConfigError(f"{dotted_key} must be a colour string")
    try:
        ImageColor.getrgb(value)
    except ValueError as exc:
        raise ConfigError(f"{dotted_key} is not a recognised colour: {value!r}") from exc


def validate_config(app: AppConfig) -> AppConfig:
    """
    Apply range checks to an :class:`AppConfig` and return it unchanged.

    Raises:
        ConfigError: If any value falls outside its supported range.
    """

    product = str(app.export.product_name).strip()
    if not product:
        raise ConfigError("export.product_name must be set")
    app.export.product_name = product
    if app.export.success_display_seconds < 0:
        raise ConfigError("export.success_display_seconds must be >= 0")
    if not isinstance(app.export.default_scale, int) or app.export.default_scale < 1:
        raise ConfigError("export.default_scale must be an integer >= 1")
    _validate_color(app.export.background_color, "export.background_color")

    if app.raster.compression_level not in (0, 1, 2):
        raise ConfigError("raster.compression_level must be 0, 1, or 2")
    if not 1 <= int(app.raster.jpeg_default_quality) <= 100:
        raise ConfigError("raster.jpeg_default_quality must be between 1 and 100")
    _validate_color(app.raster.jpeg_matte_color, "raster.jpeg_matte_color")

    if app.animation.frame_count < 1:
        raise ConfigError("animation.frame_count must be >= 1")
    if app.animation.frame_duration_ms <= 0:
        raise ConfigError("animation.frame_duration_ms must be > 0")
    if not 1 <= int(app.animation.quality) <= 30:
        raise ConfigError("animation.quality must be between 1 and 30")
    if app.animation.repeat < -1:
        raise ConfigError("animation.repeat must be -1 (play once), 0 (loop forever) or a positive count")

    if app.document.print_delay_ms < 0:
        raise ConfigError("document.print_delay_ms must be >= 0")
    if not 1 <= int(app.document.image_quality) <= 100:
        raise ConfigError("document.image_quality must be between 1 and 100")
    if app.document.surface_ttl_seconds < 0:
        raise ConfigError("document.surface_ttl_seconds must be >= 0")

    if not str(app.delivery.download_dir).strip():
        raise ConfigError("delivery.download_dir must be set")
    if app.delivery.clipboard_timeout_seconds <= 0:
        raise ConfigError("delivery.clipboard_timeout_seconds must be > 0")

    batch_format = str(app.batch.format).strip().lower()
    if batch_format == "jpeg":
        batch_format = "jpg"
    if batch_format not in {"png", "jpg"}:
        raise ConfigError("batch.format must be 'png' or 'jpg'")
    app.batch.format = batch_format
    if not 1 <= int(app.batch.quality) <= 100:
        raise ConfigError("batch.quality must be between 1 and 100")
    if not isinstance(app.batch.scale, int) or app.batch.scale < 1:
        raise ConfigError("batch.scale must be an integer >= 1")
    if not 0 <= int(app.batch.zip_compression_level) <= 9:
        raise ConfigError("batch.zip_compression_level must be between 0 and 9")

    return app


def default_config() -> AppConfig:
    """Return a validated configuration populated with defaults only."""

    return validate_config(AppConfig())


def load_config(path: str) -> AppConfig:
    """
    Load and validate an application configuration from a TOML file.

    Reads the file at `path`, parses it as UTF-8 TOML (BOM is accepted), coerces every section
    into its dataclass and applies range validation.

    Returns:
        AppConfig: The validated application configuration.

    Raises:
        ConfigError: If the file is not UTF-8, TOML parsing fails, or any validation rule is violated.
    """

    with open(path, "rb") as handle:
        raw_bytes = handle.read()
    if raw_bytes.startswith(b"\xef\xbb\xbf"):
        raw_bytes = raw_bytes[3:]
    try:
        raw = tomllib.loads(raw_bytes.decode("utf-8"))
    except UnicodeDecodeError as exc:
        raise ConfigError("Configuration file must be UTF-8 encoded") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse TOML: {exc}") from exc

    known = {"export", "raster", "animation", "document", "delivery", "batch", "progress"}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"Unknown configuration sections: {', '.join(unknown)}")

    app = AppConfig(
        export=_sanitize_section(raw.get("export", {}), "export", ExportConfig),
        raster=_sanitize_section(raw.get("raster", {}), "raster", RasterConfig),
        animation=_sanitize_section(raw.get("animation", {}), "animation", AnimationConfig),
        document=_sanitize_section(raw.get("document", {}), "document", DocumentConfig),
        delivery=_sanitize_section(raw.get("delivery", {}), "delivery", DeliveryConfig),
        batch=_sanitize_section(raw.get("batch", {}), "batch", BatchConfig),
        progress=_sanitize_section(raw.get("progress", {}), "progress", ProgressConfig),
    )
    return validate_config(app)


__all__ = ["ConfigError", "default_config", "load_config", "validate_config"]
