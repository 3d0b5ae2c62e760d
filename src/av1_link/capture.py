"""Local audio/video capture and the camera presets offered to the user."""
from __future__ import annotations

import asyncio
import fractions
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import (
    VIDEO_CLOCK_RATE,
    VIDEO_TIME_BASE,
    AudioStreamTrack,
    MediaStreamError,
    VideoStreamTrack,
)
from av import VideoFrame

logger = logging.getLogger(__name__)

AUTO = "auto"

RESOLUTION_PRESETS: tuple[str, ...] = (
    "320x240",
    "640x360",
    "640x480",
    "960x540",
    "1024x576",
    "1280x720",
    "1280x960",
    "1920x1080",
    "2560x1440",
    "3840x2160",
)

FRAME_RATE_CANDIDATES: tuple[int, ...] = (15, 24, 30, 60, 90, 120)

# User visible identifiers for capture backends.
CAPTURE_SOURCES: dict[str, str] = {
    "auto": "Automatic (camera device with synthetic fallback)",
    "device": "Camera device via FFmpeg",
    "synthetic": "Synthetic test tracks",
}


class CaptureError(RuntimeError):
    """Raised when local media cannot be acquired."""


@dataclass(frozen=True, slots=True)
class ValueRange:
    minimum: float
    maximum: float

    def contains(self, value: float) -> bool:
        return self.minimum <= value <= self.maximum

    def describe(self) -> str:
        return f"{round(self.minimum)}-{round(self.maximum)}"


@dataclass(frozen=True, slots=True)
class CaptureCapabilities:
    """Ranges reported by the capture device. ``None`` means unrestricted."""

    width: ValueRange | None = None
    height: ValueRange | None = None
    frame_rate: ValueRange | None = None

    def allows_resolution(self, width: int, height: int) -> bool:
        width_ok = self.width is None or self.width.contains(width)
        height_ok = self.height is None or self.height.contains(height)
        return width_ok and height_ok

    def allows_frame_rate(self, fps: float) -> bool:
        return self.frame_rate is None or self.frame_rate.contains(fps)

    def describe(self) -> str:
        return ", ".join(
            (
                f"width {self.width.describe() if self.width else '-'}",
                f"height {self.height.describe() if self.height else '-'}",
                f"fps {self.frame_rate.describe() if self.frame_rate else '-'}",
            )
        )


def parse_resolution(value: str | None) -> tuple[int, int] | None:
    """Parse ``"<w>x<h>"``; ``auto`` and unparseable values yield ``None``."""

    if not value or value.strip().lower() == AUTO:
        return None
    parts = value.strip().lower().split("x")
    if len(parts) != 2:
        return None
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return None


def parse_frame_rate(value: str | float | int | None) -> float | None:
    if value is None:
        return None
    if isinstance(value, str):
        if value.strip().lower() in {"", AUTO}:
            return None
        try:
            return float(value)
        except ValueError:
            return None
    return float(value)


@dataclass(frozen=True, slots=True)
class CaptureConstraints:
    """Ideal capture hints; the device may negotiate something else."""

    width: int | None = None
    height: int | None = None
    frame_rate: float | None = None

    @classmethod
    def from_selection(
        cls, resolution: str | None, frame_rate: str | float | int | None
    ) -> "CaptureConstraints":
        size = parse_resolution(resolution)
        return cls(
            width=size[0] if size else None,
            height=size[1] if size else None,
            frame_rate=parse_frame_rate(frame_rate),
        )

    @property
    def is_empty(self) -> bool:
        return self.width is None and self.height is None and self.frame_rate is None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.width is not None and self.height is not None:
            payload["width"] = {"ideal": self.width}
            payload["height"] = {"ideal": self.height}
        if self.frame_rate is not None:
            payload["frameRate"] = {"ideal": self.frame_rate}
        return payload


def selectable_resolutions(capabilities: CaptureCapabilities) -> list[str]:
    options = [AUTO]
    for preset in RESOLUTION_PRESETS:
        width, height = (int(part) for part in preset.split("x"))
        if capabilities.allows_resolution(width, height):
            options.append(preset)
    return options


def selectable_frame_rates(capabilities: CaptureCapabilities) -> list[str]:
    options = [AUTO]
    for fps in FRAME_RATE_CANDIDATES:
        if capabilities.allows_frame_rate(fps):
            options.append(str(fps))
    return options


def capture_options(
    capabilities: CaptureCapabilities,
    *,
    resolution: str = AUTO,
    frame_rate: str = AUTO,
) -> dict[str, Any]:
    """Build the selectable presets, keeping the current choice when still valid."""

    resolutions = selectable_resolutions(capabilities)
    frame_rates = selectable_frame_rates(capabilities)
    return {
        "capabilities": capabilities.describe(),
        "resolutions": resolutions,
        "frame_rates": frame_rates,
        "resolution": resolution if resolution in resolutions else AUTO,
        "frame_rate": frame_rate if frame_rate in frame_rates else AUTO,
    }


@dataclass(eq=False)
class LocalMediaStream:
    """Local tracks handed to the peer connection."""

    audio: MediaStreamTrack | None
    video: MediaStreamTrack | None
    constraints: CaptureConstraints = field(default_factory=CaptureConstraints)
    capabilities: CaptureCapabilities = field(default_factory=CaptureCapabilities)
    source: str = "synthetic"

    @property
    def tracks(self) -> list[MediaStreamTrack]:
        return [track for track in (self.audio, self.video) if track is not None]

    def stop(self) -> None:
        for track in self.tracks:
            try:
                track.stop()
            except Exception:  # pragma: no cover - logging only
                logger.debug("Ignoring error while stopping %s track", track.kind, exc_info=True)


class CaptureSource(ABC):
    """Acquire a local audio/video stream given optional ideal hints."""

    name = "capture"

    @abstractmethod
    async def acquire(self, constraints: CaptureConstraints) -> LocalMediaStream:  # pragma: no cover
        raise NotImplementedError

    async def apply_constraints(
        self, stream: LocalMediaStream, constraints: CaptureConstraints
    ) -> LocalMediaStream:
        """Re-acquire the stream with new hints, returning the replacement."""

        stream.stop()
        return await self.acquire(constraints)


DEFAULT_SYNTHETIC_SIZE = (640, 480)
DEFAULT_SYNTHETIC_FPS = 30.0
SYNTHETIC_CAPABILITIES = CaptureCapabilities(
    width=ValueRange(160, 3840),
    height=ValueRange(120, 2160),
    frame_rate=ValueRange(1, 120),
)


class SyntheticVideoTrack(VideoStreamTrack):
    """Moving gradient test pattern at the requested size and frame rate."""

    def __init__(self, width: int = 640, height: int = 480, fps: float = DEFAULT_SYNTHETIC_FPS) -> None:
        super().__init__()
        if width <= 0 or height <= 0 or fps <= 0:
            raise ValueError("Synthetic video needs a positive size and frame rate")
        self.width = int(width)
        self.height = int(height)
        self.fps = float(fps)
        self._start = time.perf_counter()
        self._started_at: float | None = None
        self._timestamp = 0

    def render(self) -> np.ndarray:
        elapsed = time.perf_counter() - self._start
        horizontal = np.linspace(0, 255, self.width, dtype=np.uint8)
        vertical = np.linspace(0, 255, self.height, dtype=np.uint8).reshape(-1, 1)
        red = np.tile(horizontal, (self.height, 1))
        green = np.roll(red, int(elapsed * 10), axis=1)
        blue = np.tile(vertical, (1, self.width))
        return np.stack([red, green, blue], axis=2).astype(np.uint8)

    async def next_timestamp(self) -> tuple[int, fractions.Fraction]:
        if self.readyState != "live":
            raise MediaStreamError
        if self._started_at is None:
            self._started_at = time.time()
            self._timestamp = 0
        else:
            self._timestamp += int(VIDEO_CLOCK_RATE / self.fps)
            wait = self._started_at + (self._timestamp / VIDEO_CLOCK_RATE) - time.time()
            if wait > 0:
                await asyncio.sleep(wait)
        return self._timestamp, VIDEO_TIME_BASE

    async def recv(self) -> VideoFrame:
        pts, time_base = await self.next_timestamp()
        frame = VideoFrame.from_ndarray(self.render(), format="rgb24")
        frame.pts = pts
        frame.time_base = time_base
        return frame


class SyntheticCapture(CaptureSource):
    """Silence and a generated test pattern, for hosts without capture hardware."""

    name = "synthetic"

    def __init__(self, capabilities: CaptureCapabilities | None = None) -> None:
        self._capabilities = capabilities or SYNTHETIC_CAPABILITIES

    async def acquire(self, constraints: CaptureConstraints) -> LocalMediaStream:
        width, height = DEFAULT_SYNTHETIC_SIZE
        if constraints.width is not None and constraints.height is not None:
            if self._capabilities.allows_resolution(constraints.width, constraints.height):
                width, height = constraints.width, constraints.height
        fps = DEFAULT_SYNTHETIC_FPS
        if constraints.frame_rate is not None and self._capabilities.allows_frame_rate(
            constraints.frame_rate
        ):
            fps = constraints.frame_rate
        return LocalMediaStream(
            audio=AudioStreamTrack(),
            video=SyntheticVideoTrack(width, height, fps),
            constraints=constraints,
            capabilities=self._capabilities,
            source=self.name,
        )


class MediaPlayerCapture(CaptureSource):
    """Capture through FFmpeg devices (``v4l2``, ``avfoundation``, ...) via aiortc."""

    name = "device"

    def __init__(
        self,
        video_device: str = "/dev/video0",
        *,
        video_format: str | None = "v4l2",
        audio_device: str | None = None,
        audio_format: str | None = None,
        capabilities: CaptureCapabilities | None = None,
        player_factory: Callable[..., Any] = MediaPlayer,
    ) -> None:
        self.video_device = video_device
        self.video_format = video_format
        self.audio_device = audio_device
        self.audio_format = audio_format
        self._capabilities = capabilities or CaptureCapabilities()
        self._player_factory = player_factory

    def _video_options(self, constraints: CaptureConstraints) -> dict[str, str]:
        options: dict[str, str] = {}
        if constraints.width is not None and constraints.height is not None:
            options["video_size"] = f"{constraints.width}x{constraints.height}"
        if constraints.frame_rate is not None:
            options["framerate"] = f"{constraints.frame_rate:g}"
        return options

    async def acquire(self, constraints: CaptureConstraints) -> LocalMediaStream:
        options = self._video_options(constraints)
        try:
            video_player = await asyncio.to_thread(
                self._player_factory,
                self.video_device,
                format=self.video_format,
                options=options,
            )
            audio_player = None
            if self.audio_device is not None:
                audio_player = await asyncio.to_thread(
                    self._player_factory, self.audio_device, format=self.audio_format
                )
        except Exception as exc:
            raise CaptureError(f"Unable to open {self.video_device}: {exc}") from exc

        audio_track = audio_player.audio if audio_player is not None else video_player.audio
        if video_player.video is None:
            raise CaptureError(f"{self.video_device} did not provide a video track")
        logger.info(
            "Camera started on %s with options %s", self.video_device, options or "default"
        )
        return LocalMediaStream(
            audio=audio_track,
            video=video_player.video,
            constraints=constraints,
            capabilities=self._capabilities,
            source=self.name,
        )


class FallbackCapture(CaptureSource):
    """Try the primary source first and fall back when it fails."""

    name = "auto"

    def __init__(self, primary: CaptureSource, fallback: CaptureSource) -> None:
        self._primary = primary
        self._fallback = fallback

    async def acquire(self, constraints: CaptureConstraints) -> LocalMediaStream:
        try:
            return await self._primary.acquire(constraints)
        except CaptureError as exc:
            logger.warning("%s capture unavailable, using %s: %s", self._primary.name, self._fallback.name, exc)
            return await self._fallback.acquire(constraints)


def create_capture_source(choice: str | None = None, **device_options: Any) -> CaptureSource:
    normalised = (choice or AUTO).strip().lower() or AUTO
    if normalised not in CAPTURE_SOURCES:
        raise ValueError(f"Unknown capture source: {choice}")
    if normalised == "synthetic":
        return SyntheticCapture()
    device = MediaPlayerCapture(**device_options)
    if normalised == "device":
        return device
    return FallbackCapture(device, SyntheticCapture())


__all__ = [
    "AUTO",
    "CAPTURE_SOURCES",
    "CaptureCapabilities",
    "CaptureConstraints",
    "CaptureError",
    "CaptureSource",
    "FRAME_RATE_CANDIDATES",
    "FallbackCapture",
    "LocalMediaStream",
    "MediaPlayerCapture",
    "RESOLUTION_PRESETS",
    "SyntheticCapture",
    "SyntheticVideoTrack",
    "ValueRange",
    "capture_options",
    "create_capture_source",
    "parse_frame_rate",
    "parse_resolution",
    "selectable_frame_rates",
    "selectable_resolutions",
]
