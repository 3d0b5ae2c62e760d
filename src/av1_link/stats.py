"""Periodic sampling of outbound video statistics."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping

logger = logging.getLogger(__name__)

STATS_INTERVAL_SECONDS = 1.0


@dataclass(frozen=True, slots=True)
class FrameInfo:
    """Resolution and instantaneous frame rate of an outbound stream."""

    width: int = 0
    height: int = 0
    fps: float | None = None

    @property
    def area(self) -> int:
        return int(self.width or 0) * int(self.height or 0)


@dataclass(frozen=True, slots=True)
class InboundLoss:
    """Cumulative inbound video packet counters."""

    lost: int = 0
    received: int = 0

    def ratio_percent(self) -> float | None:
        total = self.lost + self.received
        if total <= 0:
            return None
        return round(self.lost / total * 100, 2)


@dataclass(frozen=True, slots=True)
class StatsSnapshot:
    """Engine statistics captured at a single instant."""

    timestamp_ms: float
    bytes_sent: Mapping[str, int] = field(default_factory=dict)
    frames: Mapping[str, FrameInfo] = field(default_factory=dict)
    inbound_loss: InboundLoss | None = None
    codec: str | None = None
    scalability_mode: str | None = None


@dataclass(frozen=True, slots=True)
class StatsDelta:
    """Values derived from two consecutive snapshots of the same session."""

    bitrate_bps: dict[str, int]
    total_bitrate_bps: int
    main_stream_id: str | None
    resolution: tuple[int, int] | None
    framerate: float | None
    loss_percent: float | None
    codec: str | None = None
    scalability_mode: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "bitrate_bps": dict(self.bitrate_bps),
            "total_bitrate_bps": self.total_bitrate_bps,
            "total_bitrate_kbps": round(self.total_bitrate_bps / 1000),
            "main_stream_id": self.main_stream_id,
            "resolution": (
                f"{self.resolution[0]}x{self.resolution[1]}" if self.resolution else None
            ),
            "framerate": self.framerate,
            "packet_loss": (
                f"{self.loss_percent:.2f}%" if self.loss_percent is not None else None
            ),
            "codec": self.codec,
            "scalability_mode": self.scalability_mode,
        }


def stream_bitrate(
    bytes_now: int, bytes_prev: int, timestamp_now_ms: float, timestamp_prev_ms: float
) -> int:
    """Return the bitrate between two samples, or 0 when it cannot be derived."""

    elapsed = (timestamp_now_ms - timestamp_prev_ms) / 1000
    sent = bytes_now - bytes_prev
    if elapsed <= 0 or sent <= 0:
        return 0
    return round(sent * 8 / elapsed)


def diff_snapshots(previous: StatsSnapshot | None, current: StatsSnapshot) -> StatsDelta:
    bitrates: dict[str, int] = {}
    for stream_id, sent in current.bytes_sent.items():
        prior = previous.bytes_sent.get(stream_id) if previous is not None else None
        if prior is None:
            bitrates[stream_id] = 0
            continue
        bitrates[stream_id] = stream_bitrate(
            sent, prior, current.timestamp_ms, previous.timestamp_ms
        )

    main_id: str | None = None
    main_area = 0
    for stream_id, frame in current.frames.items():
        if frame.area > main_area:
            main_area = frame.area
            main_id = stream_id
    main_frame = current.frames.get(main_id) if main_id is not None else None

    return StatsDelta(
        bitrate_bps=bitrates,
        total_bitrate_bps=sum(bitrates.values()),
        main_stream_id=main_id,
        resolution=(main_frame.width, main_frame.height) if main_frame else None,
        framerate=main_frame.fps if main_frame else None,
        loss_percent=(
            current.inbound_loss.ratio_percent() if current.inbound_loss is not None else None
        ),
        codec=current.codec,
        scalability_mode=current.scalability_mode,
    )


def _field(stats: Any, name: str, default: Any = None) -> Any:
    if isinstance(stats, Mapping):
        return stats.get(name, default)
    return getattr(stats, name, default)


def _timestamp_ms(value: Any) -> float | None:
    if isinstance(value, datetime):
        return value.timestamp() * 1000
    if isinstance(value, (int, float)):
        return float(value)
    return None


def snapshot_from_report(
    report: Mapping[str, Any],
    *,
    codec: str | None = None,
    scalability_mode: str | None = None,
) -> StatsSnapshot:
    """Convert an ``RTCStatsReport`` (or a mapping of stats dicts) into a snapshot."""

    bytes_sent: dict[str, int] = {}
    frames: dict[str, FrameInfo] = {}
    lost = 0
    received = 0
    saw_inbound = False
    timestamps: list[float] = []

    for key, stats in report.items():
        kind = _field(stats, "kind")
        stats_type = _field(stats, "type")
        if kind != "video":
            continue
        if stats_type == "outbound-rtp":
            stream_id = str(_field(stats, "id", key))
            bytes_sent[stream_id] = int(_field(stats, "bytesSent", 0) or 0)
            frames[stream_id] = FrameInfo(
                width=int(_field(stats, "frameWidth", 0) or 0),
                height=int(_field(stats, "frameHeight", 0) or 0),
                fps=_field(stats, "framesPerSecond"),
            )
            mode = _field(stats, "scalabilityMode")
            if mode:
                scalability_mode = mode
            stamp = _timestamp_ms(_field(stats, "timestamp"))
            if stamp is not None:
                timestamps.append(stamp)
        elif stats_type == "inbound-rtp":
            saw_inbound = True
            lost += int(_field(stats, "packetsLost", 0) or 0)
            received += int(_field(stats, "packetsReceived", 0) or 0)

    return StatsSnapshot(
        timestamp_ms=max(timestamps) if timestamps else time.time() * 1000,
        bytes_sent=bytes_sent,
        frames=frames,
        inbound_loss=InboundLoss(lost=lost, received=received) if saw_inbound else None,
        codec=codec,
        scalability_mode=scalability_mode,
    )


class StatsSampler:
    """Diff each fresh snapshot against the one before it.

    Only the immediately previous snapshot is retained. :meth:`reset` discards
    it so a new call never diffs against the last call's counters.
    """

    def __init__(self, interval: float = STATS_INTERVAL_SECONDS) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self._previous: StatsSnapshot | None = None
        self._latest: StatsDelta | None = None

    @property
    def latest(self) -> StatsDelta | None:
        return self._latest

    def reset(self) -> None:
        self._previous = None
        self._latest = None

    def update(self, snapshot: StatsSnapshot) -> StatsDelta:
        delta = diff_snapshots(self._previous, snapshot)
        self._previous = snapshot
        self._latest = delta
        return delta

    async def tick(self, fetch: Callable[[], Awaitable[StatsSnapshot]]) -> StatsDelta | None:
        try:
            snapshot = await fetch()
        except Exception:
            logger.exception("Failed to collect statistics")
            return None
        delta = self.update(snapshot)
        logger.debug(
            "Outbound video %d kbps, main stream %s",
            round(delta.total_bitrate_bps / 1000),
            delta.main_stream_id or "-",
        )
        return delta


__all__ = [
    "FrameInfo",
    "InboundLoss",
    "STATS_INTERVAL_SECONDS",
    "StatsDelta",
    "StatsSampler",
    "StatsSnapshot",
    "diff_snapshots",
    "snapshot_from_report",
    "stream_bitrate",
]
