"""Export state machine: capture -> encode -> deliver with progress reporting."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import webbrowser
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from src.datatypes import AnimationConfig, AppConfig

from .capture import CaptureService, FrameHook, ImageRenderer, Renderer, SequenceCapture
from .clipboard import ImageClipboard
from .delivery import DeliveryService, Opener
from .models import (
    DeliveryMode,
    ExportFormat,
    ExportOutcome,
    ExportPhase,
    ExportProgress,
    ExportRequest,
    ExportSnapshot,
    ExportState,
)
from .progress import ProgressTracker, RichProgressListener
from .render.animation import AnimatedEncoder
from .render.encoders import (
    AnimatedFormatEncoder,
    DocumentEncoder,
    EncoderKind,
    EncoderRegistry,
    FormatEncoder,
    StaticEncoder,
    build_registry,
)
from .render.errors import ExportError

__all__ = ["ExportOrchestrator", "Listener"]

logger = logging.getLogger(__name__)

Listener = Callable[[ExportSnapshot], None]

_ENCODING_START = {
    EncoderKind.STATIC: 50,
    EncoderKind.ANIMATED: 90,
}


@dataclass(frozen=True)
class _Delivered:
    filename: Optional[str]
    location: Optional[Path]


class ExportOrchestrator:
    """
    Run one export at a time through capture, encoding and delivery.

    States move ``idle -> capturing -> encoding -> finalizing -> succeeded -> idle``;
    the success state lingers for ``success_display_seconds`` so a UI can show it.
    Any error moves ``-> failed -> idle``. Document exports with the print-dialog
    backend skip ``encoding``. A call made while the state is not ``idle`` is
    dropped and reported as a skipped outcome.

    Exports cannot be cancelled once started; an external cancellation still
    returns the orchestrator to ``idle`` before propagating.
    """

    def __init__(
        self,
        capture: CaptureService,
        delivery: DeliveryService,
        encoders: EncoderRegistry,
        *,
        sequence: Optional[SequenceCapture] = None,
        animation: Optional[AnimationConfig] = None,
        default_scale: int = 2,
        success_display_seconds: float = 3.0,
        listener: Optional[Listener] = None,
        on_export: Optional[Callable[[ExportRequest], None]] = None,
    ) -> None:
        self.capture = capture
        self.sequence = sequence or SequenceCapture(capture)
        self.delivery = delivery
        self.encoders = encoders
        self.animation = animation or AnimationConfig()
        self.default_scale = int(default_scale)
        self.success_display_seconds = float(success_display_seconds)
        self.on_export = on_export
        self._listeners: List[Listener] = [listener] if listener is not None else []
        self._state = ExportState.IDLE
        self._tracker = ProgressTracker()
        self._succeeded_at: Optional[float] = None
        self._reset_handle: Optional[asyncio.TimerHandle] = None
        self._stages: Dict[EncoderKind, Callable[..., Awaitable[_Delivered]]] = {
            EncoderKind.STATIC: self._run_static,
            EncoderKind.ANIMATED: self._run_animated,
            EncoderKind.DOCUMENT: self._run_document,
        }

    @classmethod
    def from_config(
        cls,
        cfg: AppConfig,
        *,
        renderer: Optional[Renderer] = None,
        animated_backend: Optional[AnimatedEncoder] = None,
        before_frame: Optional[FrameHook] = None,
        listener: Optional[Listener] = None,
        opener: Opener = webbrowser.open,
        on_export: Optional[Callable[[ExportRequest], None]] = None,
    ) -> "ExportOrchestrator":
        """Wire the default collaborators from an :class:`AppConfig`."""

        capture = CaptureService(
            renderer or ImageRenderer(),
            background_color=cfg.export.background_color,
            cross_origin_enabled=cfg.export.cross_origin_enabled,
        )
        delivery = DeliveryService(
            cfg.delivery.download_dir,
            image_clipboard=ImageClipboard(timeout=cfg.delivery.clipboard_timeout_seconds),
            opener=opener,
            surface_ttl_seconds=cfg.document.surface_ttl_seconds,
        )
        orchestrator = cls(
            capture,
            delivery,
            build_registry(cfg, animated_backend=animated_backend),
            sequence=SequenceCapture(capture, before_frame=before_frame),
            animation=cfg.animation,
            default_scale=cfg.export.default_scale,
            success_display_seconds=cfg.export.success_display_seconds,
            listener=listener,
            on_export=on_export,
        )
        if cfg.progress.enabled:
            orchestrator.add_listener(RichProgressListener(transient=cfg.progress.transient))
        return orchestrator

    # state -----------------------------------------------------------------

    @property
    def state(self) -> ExportState:
        self._expire_success()
        return self._state

    @property
    def progress(self) -> Optional[ExportProgress]:
        return self._tracker.current

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _notify(self) -> None:
        snapshot = ExportSnapshot(state=self._state, progress=self._tracker.current)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:  # pragma: no cover
                logger.warning("Export listener %r raised", listener, exc_info=True)

    def _transition(self, state: ExportState) -> None:
        if state is self._state:
            return
        logger.debug("Export state %s -> %s", self._state.value, state.value)
        self._state = state
        if state is ExportState.IDLE:
            self._tracker.reset()
        self._notify()

    def _report(self, percent: int, phase: ExportPhase) -> None:
        previous = self._tracker.current
        current = self._tracker.advance(percent, phase)
        if current != previous:
            self._notify()

    def _enter(self, state: ExportState, percent: int, phase: ExportPhase) -> None:
        self._tracker.advance(percent, phase)
        if state is self._state:
            self._notify()
        else:
            self._transition(state)

    def reset(self) -> None:
        """Return to ``idle`` after a success display window (no effect mid-export)."""

        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None
        if self._state in (ExportState.SUCCEEDED, ExportState.FAILED):
            self._succeeded_at = None
            self._transition(ExportState.IDLE)

    def _expire_success(self) -> None:
        if self._state is not ExportState.SUCCEEDED or self._succeeded_at is None:
            return
        if time.monotonic() - self._succeeded_at >= self.success_display_seconds:
            self.reset()

    def _finish_success(self) -> None:
        self._transition(ExportState.SUCCEEDED)
        if self.success_display_seconds <= 0:
            self.reset()
            return
        self._succeeded_at = time.monotonic()
        loop = asyncio.get_running_loop()
        self._reset_handle = loop.call_later(self.success_display_seconds, self.reset)

    def _fail(self) -> None:
        self._transition(ExportState.FAILED)
        self._succeeded_at = None
        self._transition(ExportState.IDLE)

    # pipeline ----------------------------------------------------------------

    async def export(
        self,
        target: Any,
        request: ExportRequest,
        *,
        mode: DeliveryMode = DeliveryMode.DOWNLOAD,
    ) -> ExportOutcome:
        """
        Run one export and report its terminal state.

        Never raises for pipeline failures: they are logged and returned as a
        ``failed`` outcome. Returns a ``skipped`` outcome if an export is already
        running or its success is still on display.
        """

        current = self.state
        if current.is_busy:
            logger.debug("Export request dropped; orchestrator is %s", current.value)
            return ExportOutcome(state=current, format=request.format, skipped=True)

        self._tracker.reset()
        try:
            request.validate()
            if request.scale is None:
                request = replace(request, scale=self.default_scale)
            ignored = request.check_options()
            if ignored:
                logger.debug("Ignoring option(s) %s for %s export", ", ".join(ignored), request.format.value)
            encoder = self.encoders.get(request.format)
            logger.info("Export started: format=%s scale=%d mode=%s", request.format.value, request.scale, mode.value)
            delivered = await self._stages[encoder.kind](target, request, encoder, mode)
        except asyncio.CancelledError:
            logger.warning("Export of %s cancelled", request.format.value)
            self._fail()
            raise
        except ExportError as exc:
            logger.error("Export failed (%s): %s", type(exc).__name__, exc)
            self._fail()
            return ExportOutcome(state=ExportState.FAILED, format=request.format, error=str(exc))
        except Exception as exc:
            logger.exception("Export failed unexpectedly")
            self._fail()
            return ExportOutcome(state=ExportState.FAILED, format=request.format, error=str(exc))

        self._finish_success()
        logger.info("Export finished: %s", delivered.filename or request.format.value)
        if self.on_export is not None:
            try:
                self.on_export(request)
            except Exception:
                logger.warning("on_export callback raised", exc_info=True)
        return ExportOutcome(
            state=ExportState.SUCCEEDED,
            format=request.format,
            filename=delivered.filename,
            location=delivered.location,
        )

    async def copy_to_clipboard(self, target: Any, request: ExportRequest) -> ExportOutcome:
        """Export through the same state machine, delivering to the clipboard."""

        return await self.export(target, request, mode=DeliveryMode.CLIPBOARD)

    def export_sync(
        self,
        target: Any,
        request: ExportRequest,
        *,
        mode: DeliveryMode = DeliveryMode.DOWNLOAD,
    ) -> ExportOutcome:
        """
        Blocking wrapper around :meth:`export`.

        Inside a running event loop the export runs on its own loop in a worker
        thread, and this call blocks until it finishes.
        """

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self.export(target, request, mode=mode))

        result_holder: list[ExportOutcome] = []
        error_holder: list[BaseException] = []

        def _worker() -> None:
            try:
                result_holder.append(asyncio.run(self.export(target, request, mode=mode)))
            except BaseException as exc:  # pragma: no cover - re-raised after join
                error_holder.append(exc)

        thread = threading.Thread(target=_worker, daemon=True)
        thread.start()
        thread.join()
        if error_holder:
            raise error_holder[0]
        return result_holder[0]

    async def _run_static(
        self,
        target: Any,
        request: ExportRequest,
        encoder: FormatEncoder,
        mode: DeliveryMode,
    ) -> _Delivered:
        assert isinstance(encoder, (StaticEncoder, DocumentEncoder))
        self._enter(ExportState.CAPTURING, 0, ExportPhase.CAPTURING)
        bitmap = await self.capture.capture(
            target,
            scale=request.scale,
            transparent_background=request.transparent_background,
        )
        self._enter(ExportState.ENCODING, _ENCODING_START[EncoderKind.STATIC], ExportPhase.ENCODING)
        artifact = await encoder.encode(bitmap, request)
        del bitmap
        self._enter(ExportState.FINALIZING, 100, ExportPhase.FINALIZING)
        location = await self.delivery.deliver(artifact, mode)
        return _Delivered(filename=artifact.suggested_filename, location=location)

    async def _run_animated(
        self,
        target: Any,
        request: ExportRequest,
        encoder: FormatEncoder,
        mode: DeliveryMode,
    ) -> _Delivered:
        assert isinstance(encoder, AnimatedFormatEncoder)
        frame_count = int(request.frame_count or self.animation.frame_count)
        frame_duration = int(request.frame_duration or self.animation.frame_duration_ms)
        self._enter(ExportState.CAPTURING, 0, ExportPhase.CAPTURING)
        frames = await self.sequence.capture_sequence(
            target,
            frame_count,
            frame_duration,
            request.scale,
            transparent_background=request.transparent_background,
            progress=lambda percent: self._report(percent, ExportPhase.CAPTURING),
        )
        self._enter(ExportState.ENCODING, _ENCODING_START[EncoderKind.ANIMATED], ExportPhase.ENCODING)
        try:
            artifact = await encoder.encode(frames, frame_duration)
        finally:
            frames.clear()
        self._enter(ExportState.FINALIZING, 100, ExportPhase.FINALIZING)
        location = await self.delivery.deliver(artifact, mode)
        return _Delivered(filename=artifact.suggested_filename, location=location)

    async def _run_document(
        self,
        target: Any,
        request: ExportRequest,
        encoder: FormatEncoder,
        mode: DeliveryMode,
    ) -> _Delivered:
        assert isinstance(encoder, DocumentEncoder)
        if not encoder.uses_print_dialog:
            return await self._run_static(target, request, encoder, mode)
        if mode is not DeliveryMode.DOWNLOAD:
            logger.debug("Delivery mode %s ignored; document exports open a print surface", mode.value)
        self._enter(ExportState.CAPTURING, 0, ExportPhase.CAPTURING)
        bitmap = await self.capture.capture(
            target,
            scale=request.scale,
            transparent_background=request.transparent_background,
        )
        self._enter(ExportState.FINALIZING, 100, ExportPhase.FINALIZING)
        surface = await encoder.build_surface(bitmap)
        await self.delivery.present_document(surface)
        return _Delivered(filename=surface.suggested_filename, location=None)

    def close(self) -> None:
        """Cancel the pending success reset and release leftover print surfaces."""

        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None
        self.delivery.close()

    @property
    def formats(self) -> List[ExportFormat]:
        return [encoder.format for encoder in self.encoders]
