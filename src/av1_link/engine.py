"""Boundary to the real-time media engine, with the aiortc implementation."""
from __future__ import annotations

import contextlib
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Literal, Sequence

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCRtpSender,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from .capture import LocalMediaStream
from .encoding import EncodingPlan, LayerRepresentation
from .sdp import CodecDescriptor, video_codecs_from_sdp
from .stats import StatsSnapshot, snapshot_from_report

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS: tuple[str, ...] = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)

TrackHandler = Callable[[MediaStreamTrack], None]
CandidateHandler = Callable[[dict[str, Any]], Awaitable[None] | None]
StateHandler = Callable[[str], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class SessionDescription:
    type: Literal["offer", "answer"]
    sdp: str

    def with_sdp(self, sdp: str) -> "SessionDescription":
        return replace(self, sdp=sdp)


class PeerSession(ABC):
    """One peer connection owned by a call attempt."""

    encoding_representation: LayerRepresentation = LayerRepresentation.LAYERS
    # Cleared when the engine accepted a plan it cannot hand to the encoder.
    bitrate_enforced: bool = True

    @abstractmethod
    def add_local_stream(self, stream: LocalMediaStream) -> None: ...

    @abstractmethod
    async def create_offer(self) -> SessionDescription: ...

    @abstractmethod
    async def create_answer(self) -> SessionDescription: ...

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> SessionDescription:
        """Apply *description* and return the description as the engine holds it."""

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None: ...

    @abstractmethod
    def has_video_sender(self) -> bool: ...

    @abstractmethod
    async def get_encoding_plan(self) -> EncodingPlan | None: ...

    @abstractmethod
    async def set_encoding_plan(self, plan: EncodingPlan) -> None: ...

    @abstractmethod
    async def get_stats(self) -> StatsSnapshot: ...

    @abstractmethod
    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...


class MediaEngine(ABC):
    """Factory for peer sessions plus the local codec capability query."""

    @abstractmethod
    def video_codecs(self) -> tuple[CodecDescriptor, ...]: ...

    @abstractmethod
    def create_peer(
        self,
        *,
        on_track: TrackHandler | None = None,
        on_ice_candidate: CandidateHandler | None = None,
        on_state_change: StateHandler | None = None,
    ) -> PeerSession: ...


async def _call_handler(handler: Callable[..., Any] | None, *args: Any) -> None:
    if handler is None:
        return
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class AiortcPeerSession(PeerSession):
    """Adapter around :class:`aiortc.RTCPeerConnection`.

    aiortc gathers ICE candidates before completing ``setLocalDescription`` and
    embeds them in the SDP, so no candidates are trickled from this side.
    Its senders accept a single non-scalable encoding only.
    """

    encoding_representation = LayerRepresentation.SCALABILITY_MODE

    def __init__(
        self,
        pc: RTCPeerConnection,
        *,
        on_track: TrackHandler | None = None,
        on_state_change: StateHandler | None = None,
    ) -> None:
        self._pc = pc
        self._video_sender: RTCRtpSender | None = None
        self._plan: EncodingPlan | None = None
        self.remote_tracks: list[MediaStreamTrack] = []

        @pc.on("track")
        def _on_track(track: MediaStreamTrack) -> None:
            logger.info("Received remote %s track", track.kind)
            self.remote_tracks.append(track)
            if on_track is not None:
                on_track(track)

        @pc.on("connectionstatechange")
        async def _on_connection_state() -> None:  # pragma: no cover - event driven
            logger.info("Connection state: %s", pc.connectionState)
            await _call_handler(on_state_change, pc.connectionState)

        @pc.on("iceconnectionstatechange")
        def _on_ice_state() -> None:  # pragma: no cover - event driven
            logger.debug("ICE connection state: %s", pc.iceConnectionState)

    def add_local_stream(self, stream: LocalMediaStream) -> None:
        for track in stream.tracks:
            logger.debug("Adding %s track to peer connection", track.kind)
            sender = self._pc.addTrack(track)
            if track.kind == "video":
                self._video_sender = sender

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type="offer", sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type="answer", sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> SessionDescription:
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )
        local = self._pc.localDescription
        if local is None:  # pragma: no cover - aiortc always sets it
            return description
        return SessionDescription(type=description.type, sdp=local.sdp)

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    def has_video_sender(self) -> bool:
        return self._video_sender is not None

    async def get_encoding_plan(self) -> EncodingPlan | None:
        return self._plan

    async def set_encoding_plan(self, plan: EncodingPlan) -> None:
        """Store *plan* and push its bitrate to the sender when aiortc allows it.

        Released aiortc senders expose no ``setParameters``; the bitrate then
        stays advisory and ``bitrate_enforced`` is cleared.
        """

        if plan.is_layered or plan.scalability_mode is not None:
            raise ValueError("aiortc senders do not support scalable encodings")
        self._plan = plan
        bitrate = plan.layers[0].max_bitrate_bps
        sender = self._video_sender
        get_params = getattr(sender, "getParameters", None)
        set_params = getattr(sender, "setParameters", None)
        if callable(get_params) and callable(set_params):
            parameters = get_params()
            for encoding in getattr(parameters, "encodings", None) or []:
                encoding.maxBitrate = bitrate
            result = set_params(parameters)
            if inspect.isawaitable(result):
                await result
            self.bitrate_enforced = True
            logger.info("Sender bitrate capped at %d bps", bitrate)
            return
        self.bitrate_enforced = False
        logger.warning(
            "aiortc sender cannot take encoding parameters; %d bps is advisory only", bitrate
        )

    def _negotiated_codec(self) -> str | None:
        remote = self._pc.remoteDescription
        if remote is None:
            return None
        try:
            codecs = video_codecs_from_sdp(remote.sdp)
        except ValueError:
            return None
        return codecs[0].describe() if codecs else None

    async def get_stats(self) -> StatsSnapshot:
        report = await self._pc.getStats()
        return snapshot_from_report(
            report,
            codec=self._negotiated_codec(),
            scalability_mode=self._plan.scalability_mode if self._plan else None,
        )

    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None:
        text = str(candidate.get("candidate") or "")
        if not text:
            logger.debug("Ignoring end-of-candidates marker")
            return
        if text.startswith("candidate:"):
            text = text[len("candidate:"):]
        ice_candidate = candidate_from_sdp(text)
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self._pc.addIceCandidate(ice_candidate)

    async def close(self) -> None:
        for track in self.remote_tracks:
            with contextlib.suppress(Exception):
                track.stop()
        self.remote_tracks.clear()
        await self._pc.close()


class AiortcMediaEngine(MediaEngine):
    """Media engine backed by aiortc."""

    def __init__(self, ice_servers: Sequence[str] = DEFAULT_ICE_SERVERS) -> None:
        self.ice_servers = tuple(ice_servers)

    def video_codecs(self) -> tuple[CodecDescriptor, ...]:
        capabilities = RTCRtpSender.getCapabilities("video")
        return tuple(
            CodecDescriptor(mime_type=codec.mimeType, clock_rate=codec.clockRate)
            for codec in capabilities.codecs
        )

    def create_peer(
        self,
        *,
        on_track: TrackHandler | None = None,
        on_ice_candidate: CandidateHandler | None = None,
        on_state_change: StateHandler | None = None,
    ) -> PeerSession:
        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in self.ice_servers]
        )
        pc = RTCPeerConnection(configuration=configuration)
        logger.info("Created peer connection")
        return AiortcPeerSession(pc, on_track=on_track, on_state_change=on_state_change)


__all__ = [
    "AiortcMediaEngine",
    "AiortcPeerSession",
    "DEFAULT_ICE_SERVERS",
    "MediaEngine",
    "PeerSession",
    "SessionDescription",
]
