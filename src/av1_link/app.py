"""FastAPI application wiring together the AV1Link call endpoint."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from .capture import CaptureCapabilities, CaptureError, CaptureSource, capture_options, create_capture_source
from .config import ConfigManager
from .dispatcher import EventDispatcher
from .engine import AiortcMediaEngine, MediaEngine
from .errors import CallError, NegotiationError, PreconditionError, TransportError
from .session import CallSession
from .signaling import SignalingChannel, WebSocketSignalingChannel
from .status_log import StatusLog
from .version import APP_VERSION

STATUS_LOG_NAME = "status_log.jsonl"

_ERROR_STATUS: tuple[tuple[type[CallError], int], ...] = (
    (PreconditionError, 409),
    (NegotiationError, 502),
    (TransportError, 503),
)


class CallSettingsPayload(BaseModel):
    bitrate_bps: int | None = None
    resolution: str | None = None
    frame_rate: str | float | None = None
    svc_enabled: bool | None = None
    spatial_layers: int | None = None
    temporal_layers: int | None = None


def _status_code_for(exc: CallError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def create_app(
    config_path: Path | str = Path("data/config.json"),
    *,
    engine: MediaEngine | None = None,
    capture: CaptureSource | None = None,
    signaling: SignalingChannel | None = None,
) -> FastAPI:
    app = FastAPI(title="AV1Link", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_path = Path(config_path)
    config_manager = ConfigManager(config_path)
    codec_settings = config_manager.get_codec_settings()

    if engine is None:
        engine = AiortcMediaEngine(codec_settings.ice_servers)
    if capture is None:
        capture = create_capture_source(config_manager.get_capture_source())
    if signaling is None:
        signaling_settings = config_manager.get_signaling_settings()
        signaling = WebSocketSignalingChannel(
            signaling_settings.url, reconnect_delay=signaling_settings.reconnect_delay
        )

    status_log = StatusLog(config_path.parent / STATUS_LOG_NAME)
    session = CallSession(
        engine,
        capture,
        signaling,
        config_manager.get_call_settings,
        codec_settings=codec_settings,
        status_log=status_log,
    )
    dispatcher = EventDispatcher(session)

    app.state.config_manager = config_manager
    app.state.session = session
    app.state.dispatcher = dispatcher
    app.state.status_log = status_log

    async def _submit(name: str, action: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await dispatcher.request(name, action)
        except CallError as exc:
            raise HTTPException(status_code=_status_code_for(exc), detail=str(exc)) from exc
        except CaptureError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        status_log.record("system", "startup", "AV1Link starting up.")
        support = session.rewriter.support()
        if support.supported:
            logger.info("Preferred video codec available: %s", support.matched)
        else:
            logger.warning(
                "Preferred video codec not supported; offers keep the engine's default order"
            )
            status_log.record(
                "codec",
                "unsupported",
                "AV1 not supported - calls use the default codec",
                level="warning",
            )
        signaling.set_handlers(
            on_message=dispatcher.on_signaling_message,
            on_status=session.on_signaling_status,
        )
        await dispatcher.start()
        await signaling.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        try:
            await dispatcher.request("shutdown", session.aclose)
        except Exception:
            logger.exception("Error while closing the call session")
        await signaling.aclose()
        await dispatcher.stop()
        status_log.record("system", "shutdown", "AV1Link shut down.")

    @app.get("/api/status")
    async def get_status() -> dict[str, Any]:
        return session.status()

    @app.post("/api/camera/start")
    async def start_camera() -> dict[str, Any]:
        stream = await _submit("camera", session.start_camera)
        return {
            "source": stream.source,
            "constraints": stream.constraints.to_dict(),
            "capabilities": stream.capabilities.describe(),
        }

    @app.post("/api/call")
    async def place_call() -> dict[str, Any]:
        await _submit("call", session.place_call)
        return session.status()

    @app.post("/api/hangup")
    async def hangup() -> dict[str, Any]:
        await _submit("hangup", session.hangup)
        return session.status()

    @app.get("/api/settings")
    async def get_settings() -> dict[str, Any]:
        return {
            "settings": config_manager.get_call_settings().to_dict(),
            "locked": session.settings_locked,
        }

    @app.post("/api/settings")
    async def update_settings(payload: CallSettingsPayload) -> dict[str, Any]:
        data = payload.model_dump(exclude_none=True)

        async def _apply() -> tuple[Any, bool]:
            previous = config_manager.get_call_settings()
            try:
                current = config_manager.set_call_settings(data)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            deferred = await session.update_settings(previous, current)
            return current, deferred

        current, deferred = await _submit("settings", _apply)
        return {
            "settings": current.to_dict(),
            "locked": session.settings_locked,
            "deferred": deferred,
        }

    @app.get("/api/stats")
    async def get_stats() -> dict[str, Any]:
        latest = session.sampler.latest
        return {"stats": latest.to_dict() if latest is not None else None}

    @app.get("/api/codecs")
    async def get_codecs() -> dict[str, Any]:
        payload = session.rewriter.support().to_dict()
        payload["codecs"] = [codec.to_dict() for codec in session.rewriter.codecs]
        return payload

    @app.get("/api/camera/options")
    async def get_camera_options() -> dict[str, Any]:
        stream = session.state.local_stream
        capabilities = stream.capabilities if stream is not None else CaptureCapabilities()
        settings = config_manager.get_call_settings()
        return capture_options(
            capabilities, resolution=settings.resolution, frame_rate=settings.frame_rate
        )

    @app.get("/api/log")
    async def get_log(
        limit: int | None = Query(default=None, ge=1),
        category: str | None = None,
    ) -> dict[str, Any]:
        entries = status_log.tail(limit, category=category)
        return {"entries": [entry.to_dict() for entry in entries]}

    return app


__all__ = ["CallSettingsPayload", "create_app"]
