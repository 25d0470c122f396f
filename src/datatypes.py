"""Configuration dataclasses for the mockup export pipeline."""
from dataclasses import dataclass, field
from enum import Enum


class DocumentBackend(str, Enum):
    """Strategies for producing the document (PDF) format."""

    PRINT_DIALOG = "print_dialog"
    PILLOW = "pillow"


class NamingPattern(str, Enum):
    """File naming schemes used inside batch archives."""

    NUMBERED = "numbered"
    NAME = "name"
    NAME_TIMESTAMP = "name-timestamp"


@dataclass
class ExportConfig:
    """Pipeline-wide export behaviour."""

    product_name: str = "mockflow"
    success_display_seconds: float = 3.0
    default_scale: int = 2
    background_color: str = "#ffffff"
    cross_origin_enabled: bool = True


@dataclass
class RasterConfig:
    """PNG/JPEG writer tuning."""

    compression_level: int = 1
    jpeg_default_quality: int = 90
    jpeg_matte_color: str = "#ffffff"


@dataclass
class AnimationConfig:
    """Defaults for animated (GIF) exports."""

    frame_count: int = 5
    frame_duration_ms: int = 500
    quality: int = 10
    repeat: int = 0


@dataclass
class DocumentConfig:
    """Document export via print surface or Pillow PDF writer."""

    backend: DocumentBackend = DocumentBackend.PRINT_DIALOG
    page_title: str = "MockFlow Export"
    print_delay_ms: int = 500
    image_quality: int = 95
    surface_ttl_seconds: float = 60.0


@dataclass
class DeliveryConfig:
    """Download target and clipboard helpers."""

    download_dir: str = "exports"
    clipboard_timeout_seconds: float = 5.0


@dataclass
class BatchConfig:
    """Multi-mockup ZIP export settings."""

    format: str = "png"
    quality: int = 92
    scale: int = 2
    naming_pattern: NamingPattern = NamingPattern.NAME
    zip_compression_level: int = 6


@dataclass
class ProgressConfig:
    """Presentation preferences for progress indicators."""

    enabled: bool = True
    transient: bool = False


@dataclass
class AppConfig:
    """Aggregated configuration loaded from the user-provided TOML file."""

    export: ExportConfig = field(default_factory=ExportConfig)
    raster: RasterConfig = field(default_factory=RasterConfig)
    animation: AnimationConfig = field(default_factory=AnimationConfig)
    document: DocumentConfig = field(default_factory=DocumentConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    progress: ProgressConfig = field(default_factory=ProgressConfig)
