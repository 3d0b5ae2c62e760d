"""Configuration management for AV1Link."""
from __future__ import annotations

import json
import math
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping, Sequence

from .capture import AUTO, CAPTURE_SOURCES, CaptureConstraints, parse_resolution
from .encoding import EncodingConfig, LayerRepresentation
from .engine import DEFAULT_ICE_SERVERS
from .sdp import AV1_DEPENDENCY_DESCRIPTOR_EXTMAP, DEFAULT_CODEC_MATCHERS
from .signaling import DEFAULT_RECONNECT_DELAY

DEFAULT_BITRATE_BPS = 1_500_000
DEFAULT_SIGNALING_URL = "ws://127.0.0.1:3000"
DEFAULT_CAPTURE_CHOICE = "auto"

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}


@dataclass(frozen=True, slots=True)
class CallSettings:
    """User-selected media settings.

    Values are only checked for being parseable; the media engine decides
    whether they are acceptable.
    """

    bitrate_bps: int = DEFAULT_BITRATE_BPS
    resolution: str = AUTO
    frame_rate: str = AUTO
    svc_enabled: bool = False
    spatial_layers: int = 1
    temporal_layers: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bitrate_bps": int(self.bitrate_bps),
            "resolution": self.resolution,
            "frame_rate": self.frame_rate,
            "svc_enabled": bool(self.svc_enabled),
            "spatial_layers": int(self.spatial_layers),
            "temporal_layers": int(self.temporal_layers),
        }

    def capture_constraints(self) -> CaptureConstraints:
        return CaptureConstraints.from_selection(self.resolution, self.frame_rate)

    def encoding_config(
        self,
        *,
        is_active_call: bool,
        representation: LayerRepresentation = LayerRepresentation.LAYERS,
    ) -> EncodingConfig:
        return EncodingConfig(
            bitrate_bps=int(self.bitrate_bps),
            spatial_layers=int(self.spatial_layers),
            temporal_layers=int(self.temporal_layers),
            svc_enabled=bool(self.svc_enabled),
            is_active_call=is_active_call,
            representation=representation,
        )

    def capture_differs(self, other: "CallSettings") -> bool:
        return self.resolution != other.resolution or self.frame_rate != other.frame_rate


@dataclass(frozen=True, slots=True)
class SignalingSettings:
    url: str = DEFAULT_SIGNALING_URL
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY

    def __post_init__(self) -> None:
        if not isinstance(self.url, str) or not self.url.strip():
            raise ValueError("Signaling URL must be a non-empty string")
        if not math.isfinite(self.reconnect_delay) or self.reconnect_delay <= 0:
            raise ValueError("Reconnect delay must be a positive number of seconds")

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "reconnect_delay": float(self.reconnect_delay)}


@dataclass(frozen=True, slots=True)
class CodecSettings:
    preferred_matchers: tuple[str, ...] = DEFAULT_CODEC_MATCHERS
    extension_line: str | None = AV1_DEPENDENCY_DESCRIPTOR_EXTMAP
    ice_servers: tuple[str, ...] = DEFAULT_ICE_SERVERS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "preferred_matchers": list(self.preferred_matchers),
            "extension_line": self.extension_line,
            "ice_servers": list(self.ice_servers),
        }


DEFAULT_CALL_SETTINGS = CallSettings()
DEFAULT_SIGNALING_SETTINGS = SignalingSettings()
DEFAULT_CODEC_SETTINGS = CodecSettings()


def _parse_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer")
    try:
        return int(float(value))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer") from exc


def _parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ValueError(f"{name} must be a boolean")


def _parse_resolution_choice(value: Any) -> str:
    if value is None:
        return AUTO
    text = str(value).strip().lower()
    if not text or text == AUTO:
        return AUTO
    size = parse_resolution(text)
    if size is None:
        raise ValueError("Resolution must be 'auto' or formatted as <width>x<height>")
    return f"{size[0]}x{size[1]}"


def _parse_frame_rate_choice(value: Any) -> str:
    if value is None:
        return AUTO
    text = str(value).strip().lower()
    if not text or text == AUTO:
        return AUTO
    try:
        fps = float(text)
    except ValueError as exc:
        raise ValueError("Frame rate must be 'auto' or a number") from exc
    return f"{fps:g}"


def _parse_call_settings(value: Any, *, default: CallSettings) -> CallSettings:
    if value is None:
        return default
    if isinstance(value, CallSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Call settings must be provided as a mapping")
    return CallSettings(
        bitrate_bps=_parse_int(value.get("bitrate_bps", default.bitrate_bps), "Bitrate"),
        resolution=_parse_resolution_choice(value.get("resolution", default.resolution)),
        frame_rate=_parse_frame_rate_choice(value.get("frame_rate", default.frame_rate)),
        svc_enabled=_parse_bool(value.get("svc_enabled", default.svc_enabled), "SVC flag"),
        spatial_layers=_parse_int(
            value.get("spatial_layers", default.spatial_layers), "Spatial layer count"
        ),
        temporal_layers=_parse_int(
            value.get("temporal_layers", default.temporal_layers), "Temporal layer count"
        ),
    )


def _parse_signaling_settings(value: Any, *, default: SignalingSettings) -> SignalingSettings:
    if value is None:
        return default
    if isinstance(value, SignalingSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Signaling settings must be provided as a mapping")
    try:
        delay = float(value.get("reconnect_delay", default.reconnect_delay))
    except (TypeError, ValueError) as exc:
        raise ValueError("Reconnect delay must be numeric") from exc
    return SignalingSettings(url=str(value.get("url", default.url)).strip(), reconnect_delay=delay)


def _parse_string_list(value: Any, name: str) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, Sequence):
        raise ValueError(f"{name} must be a list of strings")
    cleaned = tuple(str(item).strip() for item in value if str(item).strip())
    return cleaned


def _parse_codec_settings(value: Any, *, default: CodecSettings) -> CodecSettings:
    if value is None:
        return default
    if isinstance(value, CodecSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Codec settings must be provided as a mapping")
    matchers = _parse_string_list(
        value.get("preferred_matchers", default.preferred_matchers), "Preferred codec matchers"
    )
    if not matchers:
        raise ValueError("At least one preferred codec matcher is required")
    extension = value.get("extension_line", default.extension_line)
    if extension is not None:
        extension = str(extension).strip() or None
    ice_servers = _parse_string_list(value.get("ice_servers", default.ice_servers), "ICE servers")
    return CodecSettings(
        preferred_matchers=tuple(matcher.lower() for matcher in matchers),
        extension_line=extension,
        ice_servers=ice_servers,
    )


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path) -> None:
        self._path = config_path
        self._lock = Lock()
        self._ensure_parent()
        (
            self._call_settings,
            self._signaling_settings,
            self._codec_settings,
            self._capture_source,
        ) = self._load()

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> tuple[CallSettings, SignalingSettings, CodecSettings, str]:
        if not self._path.exists():
            return (
                DEFAULT_CALL_SETTINGS,
                DEFAULT_SIGNALING_SETTINGS,
                DEFAULT_CODEC_SETTINGS,
                DEFAULT_CAPTURE_CHOICE,
            )
        try:
            payload = json.loads(self._path.read_text())
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            call_settings = _parse_call_settings(
                payload.get("call"), default=DEFAULT_CALL_SETTINGS
            )
            signaling_settings = _parse_signaling_settings(
                payload.get("signaling"), default=DEFAULT_SIGNALING_SETTINGS
            )
            codec_settings = _parse_codec_settings(
                payload.get("codec"), default=DEFAULT_CODEC_SETTINGS
            )
            capture_raw = payload.get("capture", DEFAULT_CAPTURE_CHOICE)
            if isinstance(capture_raw, str) and capture_raw.strip().lower() in CAPTURE_SOURCES:
                capture_source = capture_raw.strip().lower()
            else:
                capture_source = DEFAULT_CAPTURE_CHOICE
            return call_settings, signaling_settings, codec_settings, capture_source
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc

    def _save(self) -> None:
        payload: Dict[str, Any] = {
            "call": self._call_settings.to_dict(),
            "signaling": self._signaling_settings.to_dict(),
            "codec": self._codec_settings.to_dict(),
            "capture": self._capture_source,
        }
        self._path.write_text(json.dumps(payload, indent=2))

    def get_call_settings(self) -> CallSettings:
        with self._lock:
            return self._call_settings

    def set_call_settings(self, data: Mapping[str, Any] | CallSettings) -> CallSettings:
        with self._lock:
            settings = _parse_call_settings(data, default=self._call_settings)
            self._call_settings = settings
            self._save()
        return settings

    def get_signaling_settings(self) -> SignalingSettings:
        with self._lock:
            return self._signaling_settings

    def set_signaling_settings(
        self, data: Mapping[str, Any] | SignalingSettings
    ) -> SignalingSettings:
        with self._lock:
            settings = _parse_signaling_settings(data, default=self._signaling_settings)
            self._signaling_settings = settings
            self._save()
        return settings

    def get_codec_settings(self) -> CodecSettings:
        with self._lock:
            return self._codec_settings

    def set_codec_settings(self, data: Mapping[str, Any] | CodecSettings) -> CodecSettings:
        with self._lock:
            settings = _parse_codec_settings(data, default=self._codec_settings)
            self._codec_settings = settings
            self._save()
        return settings

    def get_capture_source(self) -> str:
        with self._lock:
            return self._capture_source

    def set_capture_source(self, choice: str) -> str:
        if not isinstance(choice, str) or not choice.strip():
            raise ValueError("Capture selection must be a non-empty string")
        normalised = choice.strip().lower()
        if normalised not in CAPTURE_SOURCES:
            raise ValueError(f"Unknown capture selection: {choice}")
        with self._lock:
            self._capture_source = normalised
            self._save()
        return normalised


__all__ = [
    "CallSettings",
    "CodecSettings",
    "ConfigManager",
    "DEFAULT_BITRATE_BPS",
    "DEFAULT_CALL_SETTINGS",
    "DEFAULT_CODEC_SETTINGS",
    "DEFAULT_SIGNALING_SETTINGS",
    "DEFAULT_SIGNALING_URL",
    "SignalingSettings",
]
