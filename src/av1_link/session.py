"""Call session state machine driving offer/answer, ICE and hangup."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Literal

from aiortc import MediaStreamTrack

from .capture import CaptureError, CaptureSource, LocalMediaStream
from .config import CallSettings, CodecSettings, DEFAULT_CODEC_SETTINGS
from .encoding import EncodingPlan, configure_encoding
from .engine import MediaEngine, PeerSession, SessionDescription
from .errors import CallError, EncodingConfigError, NegotiationError, PreconditionError, TransportError
from .sdp import CodecPreferenceRewriter
from .signaling import SignalingChannel, SignalingMessage
from .stats import StatsDelta, StatsSampler
from .status_log import StatusLog

logger = logging.getLogger(__name__)


class CallPhase(str, Enum):
    IDLE = "idle"
    OUTGOING = "outgoing"
    INCOMING = "incoming"
    ACTIVE = "active"
    ENDED = "ended"


_STARTABLE_PHASES = frozenset({CallPhase.IDLE, CallPhase.ENDED})
_LIVE_PHASES = frozenset({CallPhase.OUTGOING, CallPhase.INCOMING, CallPhase.ACTIVE})


@dataclass(eq=False)
class SessionState:
    """Everything owned by the current call attempt."""

    phase: CallPhase = CallPhase.IDLE
    peer: PeerSession | None = None
    local_stream: LocalMediaStream | None = None
    remote_tracks: list[MediaStreamTrack] = field(default_factory=list)
    plan: EncodingPlan | None = None
    settings_locked: bool = False
    is_initiator: bool = False

    def start(self, peer: PeerSession, *, initiator: bool) -> None:
        self.peer = peer
        self.is_initiator = initiator
        self.remote_tracks = []
        self.plan = None

    def teardown(self) -> PeerSession | None:
        peer = self.peer
        self.peer = None
        self.remote_tracks = []
        self.plan = None
        self.settings_locked = False
        self.is_initiator = False
        return peer


class CallSession:
    """Sequence offer, answer, ICE and hangup events into one call lifecycle.

    Setup operations (placing a call, answering an offer, accepting an answer)
    are serialized by a single guard. A hangup requested while setup is in
    flight is deferred until the setup settles and then runs immediately.
    """

    def __init__(
        self,
        engine: MediaEngine,
        capture: CaptureSource,
        signaling: SignalingChannel,
        settings: Callable[[], CallSettings],
        *,
        codec_settings: CodecSettings = DEFAULT_CODEC_SETTINGS,
        status_log: StatusLog | None = None,
        sampler: StatsSampler | None = None,
    ) -> None:
        self._engine = engine
        self._capture = capture
        self._signaling = signaling
        self._settings = settings
        self._status_log = status_log or StatusLog()
        self._sampler = sampler or StatsSampler()
        self._rewriter = CodecPreferenceRewriter(
            engine.video_codecs(),
            codec_settings.preferred_matchers,
            codec_settings.extension_line,
        )
        self._state = SessionState()
        self._setup_lock = asyncio.Lock()
        self._pending_hangup: Literal["local", "remote"] | None = None
        self._attempt_origin = CallPhase.IDLE

    # ------------------------------ properties -----------------------------
    @property
    def phase(self) -> CallPhase:
        return self._state.phase

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def rewriter(self) -> CodecPreferenceRewriter:
        return self._rewriter

    @property
    def sampler(self) -> StatsSampler:
        return self._sampler

    @property
    def status_log(self) -> StatusLog:
        return self._status_log

    @property
    def settings_locked(self) -> bool:
        return self._state.settings_locked

    @property
    def has_peer(self) -> bool:
        return self._state.peer is not None

    def status(self) -> dict[str, Any]:
        plan = self._state.plan
        latest = self._status_log.latest
        return {
            "phase": self._state.phase.value,
            "signaling_connected": self._signaling.connected,
            "local_stream": self._state.local_stream is not None,
            "settings_locked": self._state.settings_locked,
            "is_initiator": self._state.is_initiator,
            "encoding": plan.to_parameters() if plan is not None else None,
            "codec": self._rewriter.support().to_dict(),
            "message": latest.message if latest is not None else None,
        }

    # ------------------------------ user intents ---------------------------
    async def start_camera(self) -> LocalMediaStream:
        """Acquire the local stream using the configured capture hints."""

        if self._state.local_stream is not None:
            return self._state.local_stream
        constraints = self._settings().capture_constraints()
        try:
            stream = await self._capture.acquire(constraints)
        except CaptureError as exc:
            self._report("camera", "error", f"Camera error: {exc}", level="error")
            raise
        self._state.local_stream = stream
        self._report("camera", "started", "Camera ready - you can start a call")
        return stream

    async def place_call(self) -> None:
        self._check_can_place_call()
        async with self._setup():
            self._check_can_place_call()
            await self._refresh_local_stream()
            self._check_can_place_call()
            origin = self._state.phase
            peer = self._begin_attempt(initiator=True)
            try:
                await self._configure_encoding()
                offer = await peer.create_offer()
                offer = offer.with_sdp(self._rewriter.rewrite(offer.sdp))
                logger.debug("Local offer:\n%s", offer.sdp)
                applied = await peer.set_local_description(offer)
            except Exception as exc:
                await self._abort_attempt(origin)
                raise self._negotiation_error("Call failed", exc) from exc

            try:
                await self._send(SignalingMessage.offer(self._rewriter.rewrite(applied.sdp)))
            except TransportError:
                await self._abort_attempt(origin)
                raise
            self._state.settings_locked = True
            self._set_phase(CallPhase.OUTGOING, "Calling... waiting for answer")

    async def hangup(self) -> None:
        await self._hangup("local")

    async def update_settings(self, previous: CallSettings, current: CallSettings) -> bool:
        """React to a settings change, returning ``True`` when it was deferred."""

        if self._state.settings_locked:
            deferred = current.capture_differs(previous) or (
                current.svc_enabled,
                current.spatial_layers,
                current.temporal_layers,
            ) != (previous.svc_enabled, previous.spatial_layers, previous.temporal_layers)
            if current.bitrate_bps != previous.bitrate_bps:
                await self._configure_encoding(active=True)
            if deferred:
                self._report(
                    "settings",
                    "deferred",
                    "Settings saved; camera and layer changes apply to the next call",
                )
            return deferred

        await self._refresh_local_stream()
        if self._state.peer is not None:
            await self._configure_encoding()
        return False

    # --------------------------- signaling events --------------------------
    async def handle_message(self, message: SignalingMessage) -> None:
        if message.type == "offer" and message.sdp is not None:
            await self.handle_offer(SessionDescription(type="offer", sdp=message.sdp.sdp))
        elif message.type == "answer" and message.sdp is not None:
            await self.handle_answer(SessionDescription(type="answer", sdp=message.sdp.sdp))
        elif message.type == "ice-candidate" and message.candidate is not None:
            await self.handle_ice_candidate(message.candidate)
        elif message.type == "hangup":
            await self._hangup("remote")
        else:
            logger.warning("Ignoring %s message without a payload", message.type)

    async def handle_offer(self, offer: SessionDescription) -> None:
        async with self._setup():
            if self._state.phase not in _STARTABLE_PHASES:
                logger.warning("Ignoring offer received in %s phase", self._state.phase.value)
                return
            origin = self._state.phase
            await self._refresh_local_stream()
            if self._state.local_stream is None:
                try:
                    await self.start_camera()
                except CaptureError:
                    logger.warning("Answering without local media")
            peer = self._begin_attempt(initiator=False)
            self._set_phase(CallPhase.INCOMING, "Incoming call")
            try:
                remote = offer.with_sdp(self._rewriter.rewrite(offer.sdp))
                logger.debug("Remote offer:\n%s", remote.sdp)
                await peer.set_remote_description(remote)
                await self._configure_encoding()
                answer = await peer.create_answer()
                answer = answer.with_sdp(self._rewriter.rewrite(answer.sdp))
                applied = await peer.set_local_description(answer)
            except Exception as exc:
                await self._abort_attempt(origin)
                raise self._negotiation_error("Failed to answer call", exc) from exc

            try:
                await self._send(SignalingMessage.answer(self._rewriter.rewrite(applied.sdp)))
            except TransportError:
                await self._abort_attempt(origin)
                raise
            self._state.settings_locked = True
            self._set_phase(CallPhase.ACTIVE, "Call connected")

    async def handle_answer(self, answer: SessionDescription) -> None:
        if self._state.phase is not CallPhase.OUTGOING:
            logger.warning("Ignoring answer received in %s phase", self._state.phase.value)
            return
        async with self._setup():
            peer = self._state.peer
            if self._state.phase is not CallPhase.OUTGOING or peer is None:
                logger.warning("Ignoring answer received in %s phase", self._state.phase.value)
                return
            try:
                remote = answer.with_sdp(self._rewriter.rewrite(answer.sdp))
                logger.debug("Remote answer:\n%s", remote.sdp)
                await peer.set_remote_description(remote)
            except Exception as exc:
                await self._abort_attempt(self._attempt_origin)
                raise self._negotiation_error("Failed to accept answer", exc) from exc
            self._set_phase(CallPhase.ACTIVE, "Call connected")

    async def handle_ice_candidate(self, candidate: dict[str, Any]) -> None:
        peer = self._state.peer
        if self._state.phase not in _LIVE_PHASES or peer is None:
            logger.debug("Ignoring ICE candidate in %s phase", self._state.phase.value)
            return
        try:
            await peer.add_ice_candidate(candidate)
        except Exception as exc:
            logger.warning("Failed to add remote ICE candidate: %s", exc)

    async def on_signaling_status(self, connected: bool) -> None:
        if connected:
            self._report("signaling", "connected", "Signaling connected")
        else:
            self._report("signaling", "disconnected", "Signaling disconnected - retrying...", level="warning")

    # ------------------------------ stats ----------------------------------
    async def sample_stats(self) -> StatsDelta | None:
        peer = self._state.peer
        if peer is None:
            return None
        return await self._sampler.tick(peer.get_stats)

    async def aclose(self) -> None:
        await self._hangup("local")
        stream = self._state.local_stream
        self._state.local_stream = None
        if stream is not None:
            stream.stop()

    # ----------------------------- implementation --------------------------
    @asynccontextmanager
    async def _setup(self) -> AsyncIterator[None]:
        await self._setup_lock.acquire()
        try:
            yield
        finally:
            pending = self._pending_hangup
            self._pending_hangup = None
            try:
                if pending is not None:
                    await self._end_call(pending)
            finally:
                self._setup_lock.release()

    def _check_can_place_call(self) -> None:
        if self._state.phase not in _STARTABLE_PHASES:
            raise PreconditionError("A call is already in progress")
        if not self._signaling.connected:
            raise PreconditionError("Signaling server not connected")
        if self._state.local_stream is None:
            raise PreconditionError("Start the camera before placing a call")

    async def _refresh_local_stream(self) -> None:
        """Bring the local stream in line with the configured capture hints."""

        stream = self._state.local_stream
        if stream is None:
            return
        constraints = self._settings().capture_constraints()
        if stream.constraints == constraints:
            return
        logger.info("Applying camera settings %s", constraints.to_dict() or "auto")
        try:
            self._state.local_stream = await self._capture.apply_constraints(stream, constraints)
        except CaptureError as exc:
            self._state.local_stream = None
            self._report("camera", "error", f"Failed to apply camera settings: {exc}", level="error")

    def _begin_attempt(self, *, initiator: bool) -> PeerSession:
        if self._state.phase is CallPhase.ENDED:
            self._state.phase = CallPhase.IDLE
        self._attempt_origin = self._state.phase
        self._sampler.reset()
        peer = self._engine.create_peer(
            on_track=self._on_remote_track,
            on_ice_candidate=self._on_local_candidate,
        )
        self._state.start(peer, initiator=initiator)
        if self._state.local_stream is not None:
            peer.add_local_stream(self._state.local_stream)
        return peer

    async def _abort_attempt(self, origin: CallPhase) -> None:
        await self._release_peer()
        self._state.phase = origin
        logger.info("Call attempt rolled back to %s", origin.value)

    async def _release_peer(self) -> None:
        self._sampler.reset()
        peer = self._state.teardown()
        if peer is None:
            return
        try:
            await peer.close()
        except Exception:
            logger.exception("Error while closing peer connection")

    async def _hangup(self, origin: Literal["local", "remote"]) -> None:
        if self._setup_lock.locked():
            logger.info("Hangup requested during call setup; deferring")
            self._pending_hangup = origin
            return
        await self._end_call(origin)

    async def _end_call(self, origin: Literal["local", "remote"]) -> None:
        if self._state.phase not in _LIVE_PHASES:
            return
        if origin == "local":
            try:
                await self._send(SignalingMessage.hangup())
            except TransportError:
                logger.warning("Remote peer not notified of hangup")
        await self._release_peer()
        message = "Call ended" if origin == "local" else "Remote peer hung up"
        self._set_phase(CallPhase.ENDED, message)

    async def _configure_encoding(self, *, active: bool = False) -> EncodingPlan | None:
        peer = self._state.peer
        if peer is None:
            return None
        config = self._settings().encoding_config(
            is_active_call=active, representation=peer.encoding_representation
        )
        try:
            plan = await configure_encoding(peer, config)
        except EncodingConfigError as exc:
            self._report("encoding", "error", str(exc), level="error")
            return self._state.plan
        if plan is not None:
            self._state.plan = plan
            if not peer.bitrate_enforced:
                self._report(
                    "encoding",
                    "advisory",
                    f"Target bitrate {plan.total_bitrate_bps} bps is advisory; the media engine sets its own rate",
                    level="warning",
                )
        return plan

    async def _send(self, message: SignalingMessage) -> None:
        try:
            await self._signaling.send(message)
        except TransportError as exc:
            self._report("signaling", "send_failed", f"Signaling not connected: {exc}", level="error")
            raise

    def _on_remote_track(self, track: MediaStreamTrack) -> None:
        self._state.remote_tracks.append(track)

    async def _on_local_candidate(self, candidate: dict[str, Any]) -> None:
        if self._state.peer is None:
            return
        try:
            await self._send(SignalingMessage.ice_candidate(candidate))
        except TransportError:
            logger.debug("Dropped local ICE candidate while signaling is down")

    def _negotiation_error(self, prefix: str, exc: Exception) -> CallError:
        if isinstance(exc, CallError):
            error: CallError = exc
        else:
            error = NegotiationError(f"{prefix}: {exc}")
        self._report("call", "negotiation_failed", str(error), level="error")
        logger.error("%s: %s", prefix, exc)
        return error

    def _set_phase(self, phase: CallPhase, message: str) -> None:
        previous = self._state.phase
        self._state.phase = phase
        logger.info("Call phase %s -> %s", previous.value, phase.value)
        self._report("call", phase.value, message)

    def _report(
        self,
        category: str,
        event: str,
        message: str,
        *,
        level: str = "info",
    ) -> None:
        self._status_log.record(
            category,
            event,
            message,
            level=level,
            metadata={"phase": self._state.phase.value},
        )


__all__ = ["CallPhase", "CallSession", "SessionState"]
