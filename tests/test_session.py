import asyncio

import pytest

from av1_link.config import CallSettings
from av1_link.encoding import EncodingPlan, LayerRepresentation
from av1_link.engine import SessionDescription
from av1_link.errors import NegotiationError, PreconditionError, TransportError
from av1_link.sdp import AV1_DEPENDENCY_DESCRIPTOR_EXTMAP
from av1_link.session import CallPhase, CallSession
from av1_link.signaling import SignalingMessage
from av1_link.status_log import StatusLog

from fakes import (
    SAMPLE_ANSWER,
    SAMPLE_OFFER,
    FakeCapture,
    FakeMediaEngine,
    FakeSignalingChannel,
    outbound_snapshot,
)

REORDERED_VIDEO_LINE = "m=video 9 UDP/TLS/RTP/SAVPF 98 96 97"


def run_async(coro):
    return asyncio.run(coro)


class Harness:
    def __init__(self, settings: CallSettings | None = None, **engine_options) -> None:
        self.engine = FakeMediaEngine(**engine_options)
        self.capture = FakeCapture()
        self.signaling = FakeSignalingChannel()
        self.settings = settings or CallSettings()
        self.status_log = StatusLog()
        self.session = CallSession(
            self.engine,
            self.capture,
            self.signaling,
            lambda: self.settings,
            status_log=self.status_log,
        )


def test_place_call_without_camera_is_rejected():
    harness = Harness()
    with pytest.raises(PreconditionError):
        run_async(harness.session.place_call())
    assert harness.session.phase is CallPhase.IDLE
    assert harness.engine.peers == []
    assert harness.signaling.sent == []


def test_place_call_without_signaling_is_rejected():
    harness = Harness()
    harness.signaling.is_connected = False

    async def scenario():
        await harness.session.start_camera()
        await harness.session.place_call()

    with pytest.raises(PreconditionError):
        run_async(scenario())
    assert harness.session.phase is CallPhase.IDLE
    assert harness.engine.peers == []


def test_outgoing_call_lifecycle():
    harness = Harness()
    session = harness.session
    phases = []

    async def scenario():
        await session.start_camera()
        await session.place_call()
        phases.append((session.phase, session.settings_locked))
        await session.handle_message(SignalingMessage.answer(SAMPLE_ANSWER))
        phases.append((session.phase, session.settings_locked))
        await session.hangup()
        phases.append((session.phase, session.settings_locked))

    run_async(scenario())
    assert phases == [
        (CallPhase.OUTGOING, True),
        (CallPhase.ACTIVE, True),
        (CallPhase.ENDED, False),
    ]
    assert harness.signaling.sent_types == ["offer", "hangup"]
    offer_sdp = harness.signaling.sent[0].sdp.sdp
    lines = offer_sdp.split("\r\n")
    index = lines.index(REORDERED_VIDEO_LINE)
    assert lines[index + 1] == AV1_DEPENDENCY_DESCRIPTOR_EXTMAP
    assert offer_sdp.count(AV1_DEPENDENCY_DESCRIPTOR_EXTMAP) == 1
    peer = harness.engine.last_peer
    assert peer.local_description.sdp == offer_sdp
    assert REORDERED_VIDEO_LINE in peer.remote_description.sdp
    assert peer.closed is True
    assert session.state.peer is None


def test_new_call_after_ended_starts_fresh():
    harness = Harness()
    session = harness.session

    async def scenario():
        await session.start_camera()
        await session.place_call()
        await session.hangup()
        await session.place_call()

    run_async(scenario())
    assert session.phase is CallPhase.OUTGOING
    assert len(harness.engine.peers) == 2
    assert harness.signaling.sent_types == ["offer", "hangup", "offer"]


def test_second_place_call_is_rejected_while_calling():
    harness = Harness()

    async def scenario():
        await harness.session.start_camera()
        await harness.session.place_call()
        await harness.session.place_call()

    with pytest.raises(PreconditionError):
        run_async(scenario())
    assert harness.session.phase is CallPhase.OUTGOING
    assert len(harness.engine.peers) == 1


def test_answer_outside_outgoing_is_ignored():
    harness = Harness()
    run_async(harness.session.handle_answer(SessionDescription(type="answer", sdp=SAMPLE_ANSWER)))
    assert harness.session.phase is CallPhase.IDLE
    assert harness.engine.peers == []


def test_answer_while_active_is_ignored():
    harness = Harness()
    session = harness.session

    async def scenario():
        await session.start_camera()
        await session.place_call()
        await session.handle_answer(SessionDescription(type="answer", sdp=SAMPLE_ANSWER))
        await session.handle_answer(SessionDescription(type="answer", sdp=SAMPLE_ANSWER))

    run_async(scenario())
    assert session.phase is CallPhase.ACTIVE
    assert harness.engine.last_peer.calls.count("set_remote_description") == 1


def test_hangup_when_idle_is_a_no_op():
    harness = Harness()
    run_async(harness.session.hangup())
    assert harness.session.phase is CallPhase.IDLE
    assert harness.signaling.sent == []


def test_hangup_twice_sends_once():
    harness = Harness()

    async def scenario():
        await harness.session.start_camera()
        await harness.session.place_call()
        await harness.session.hangup()
        await harness.session.hangup()

    run_async(scenario())
    assert harness.signaling.sent_types == ["offer", "hangup"]
    assert harness.session.phase is CallPhase.ENDED


def test_hangup_tears_down_even_when_signaling_is_down():
    harness = Harness()

    async def scenario():
        await harness.session.start_camera()
        await harness.session.place_call()
        harness.signaling.is_connected = False
        await harness.session.hangup()

    run_async(scenario())
    assert harness.session.phase is CallPhase.ENDED
    assert harness.engine.last_peer.closed is True
    assert harness.signaling.sent_types == ["offer"]
    assert harness.status_log.tail(category="signaling")[-1].event == "send_failed"


def test_hangup_during_setup_is_deferred():
    harness = Harness()
    session = harness.session
    observed = {}

    async def scenario():
        harness.engine.offer_started = asyncio.Event()
        harness.engine.offer_gate = asyncio.Event()
        await session.start_camera()
        call = asyncio.create_task(session.place_call())
        await harness.engine.offer_started.wait()
        await session.hangup()
        observed["during"] = (session.phase, list(harness.signaling.sent_types))
        harness.engine.offer_gate.set()
        await call

    run_async(scenario())
    assert observed["during"] == (CallPhase.IDLE, [])
    assert session.phase is CallPhase.ENDED
    assert harness.signaling.sent_types == ["offer", "hangup"]
    assert harness.engine.last_peer.closed is True


def test_hangup_while_answering_is_deferred():
    harness = Harness()
    session = harness.session
    observed = {}

    async def scenario():
        harness.engine.answer_started = asyncio.Event()
        harness.engine.answer_gate = asyncio.Event()
        incoming = asyncio.create_task(
            session.handle_offer(SessionDescription(type="offer", sdp=SAMPLE_OFFER))
        )
        await harness.engine.answer_started.wait()
        await session.hangup()
        observed["during"] = (session.phase, list(harness.signaling.sent_types))
        harness.engine.answer_gate.set()
        await incoming

    run_async(scenario())
    assert observed["during"] == (CallPhase.INCOMING, [])
    assert session.phase is CallPhase.ENDED
    assert harness.signaling.sent_types == ["answer", "hangup"]
    assert harness.engine.last_peer.closed is True
    assert session.state.peer is None


def test_setup_waits_for_deferred_hangup_to_finish():
    harness = Harness()
    session = harness.session

    async def scenario():
        harness.engine.offer_started = asyncio.Event()
        harness.engine.offer_gate = asyncio.Event()
        await session.start_camera()
        call = asyncio.create_task(session.place_call())
        await harness.engine.offer_started.wait()
        await session.hangup()
        offer = asyncio.create_task(
            session.handle_offer(SessionDescription(type="offer", sdp=SAMPLE_OFFER))
        )
        await asyncio.sleep(0)
        harness.engine.offer_gate.set()
        await asyncio.gather(call, offer)

    run_async(scenario())
    first, second = harness.engine.peers
    assert first.closed is True
    assert second.closed is False
    assert session.phase is CallPhase.ACTIVE
    assert harness.signaling.sent_types == ["offer", "hangup", "answer"]


def test_negotiation_failure_rolls_back():
    harness = Harness()
    harness.engine.failures["create_offer"] = RuntimeError("encoder unavailable")

    async def scenario():
        await harness.session.start_camera()
        await harness.session.place_call()

    with pytest.raises(NegotiationError):
        run_async(scenario())
    assert harness.session.phase is CallPhase.IDLE
    assert harness.session.state.peer is None
    assert harness.engine.last_peer.closed is True
    assert harness.signaling.sent == []
    assert harness.status_log.latest.level == "error"


def test_send_failure_rolls_back_offer():
    harness = Harness()
    harness.signaling.fail_send = True

    async def scenario():
        await harness.session.start_camera()
        await harness.session.place_call()

    with pytest.raises(TransportError):
        run_async(scenario())
    assert harness.session.phase is CallPhase.IDLE
    assert harness.session.settings_locked is False
    assert harness.engine.last_peer.closed is True


def test_answer_failure_rolls_back_to_idle():
    harness = Harness()
    session = harness.session

    async def scenario():
        await session.start_camera()
        await session.place_call()
        harness.engine.failures["set_remote_description"] = ValueError("bad answer")
        await session.handle_answer(SessionDescription(type="answer", sdp=SAMPLE_ANSWER))

    with pytest.raises(NegotiationError):
        run_async(scenario())
    assert session.phase is CallPhase.IDLE
    assert session.settings_locked is False


def test_incoming_offer_starts_camera_and_answers():
    harness = Harness()
    session = harness.session

    run_async(session.handle_message(SignalingMessage.offer(SAMPLE_OFFER)))

    assert session.phase is CallPhase.ACTIVE
    assert session.settings_locked is True
    assert session.state.is_initiator is False
    assert len(harness.capture.acquisitions) == 1
    assert harness.signaling.sent_types == ["answer"]
    peer = harness.engine.last_peer
    assert REORDERED_VIDEO_LINE in peer.remote_description.sdp
    assert REORDERED_VIDEO_LINE in harness.signaling.sent[0].sdp.sdp
    assert peer.calls.index("set_remote_description") < peer.calls.index("create_answer")


def test_incoming_offer_without_camera_answers_receive_only():
    harness = Harness()
    harness.capture.fail = True

    run_async(harness.session.handle_message(SignalingMessage.offer(SAMPLE_OFFER)))

    assert harness.session.phase is CallPhase.ACTIVE
    assert harness.engine.last_peer.streams == []


def test_offer_during_call_is_ignored():
    harness = Harness()

    async def scenario():
        await harness.session.handle_offer(SessionDescription(type="offer", sdp=SAMPLE_OFFER))
        await harness.session.handle_offer(SessionDescription(type="offer", sdp=SAMPLE_OFFER))

    run_async(scenario())
    assert len(harness.engine.peers) == 1
    assert harness.signaling.sent_types == ["answer"]


def test_incoming_offer_failure_rolls_back():
    harness = Harness()
    harness.engine.failures["create_answer"] = RuntimeError("no codecs")

    with pytest.raises(NegotiationError):
        run_async(harness.session.handle_offer(SessionDescription(type="offer", sdp=SAMPLE_OFFER)))
    assert harness.session.phase is CallPhase.IDLE
    assert harness.engine.last_peer.closed is True
    assert harness.signaling.sent == []


def test_remote_hangup_is_not_echoed():
    harness = Harness()

    async def scenario():
        await harness.session.handle_message(SignalingMessage.offer(SAMPLE_OFFER))
        await harness.session.handle_message(SignalingMessage.hangup())

    run_async(scenario())
    assert harness.session.phase is CallPhase.ENDED
    assert harness.signaling.sent_types == ["answer"]
    assert harness.status_log.latest.message == "Remote peer hung up"


def test_remote_candidates_forwarded_only_during_call():
    harness = Harness()
    candidate = {"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host", "sdpMid": "0"}

    async def scenario():
        await harness.session.handle_message(SignalingMessage.ice_candidate(candidate))
        await harness.session.start_camera()
        await harness.session.place_call()
        await harness.session.handle_message(SignalingMessage.ice_candidate(candidate))

    run_async(scenario())
    assert harness.engine.last_peer.candidates == [candidate]


def test_remote_candidate_failure_is_not_fatal():
    harness = Harness()

    async def scenario():
        await harness.session.start_camera()
        await harness.session.place_call()
        harness.engine.failures["add_ice_candidate"] = ValueError("bad candidate")
        await harness.session.handle_ice_candidate({"candidate": "garbage"})

    run_async(scenario())
    assert harness.session.phase is CallPhase.OUTGOING


def test_local_candidates_are_trickled():
    harness = Harness()
    candidate = {"candidate": "candidate:2 1 udp 1 10.0.0.2 5001 typ host", "sdpMid": "0"}

    async def scenario():
        await harness.session.start_camera()
        await harness.session.place_call()
        await harness.engine.last_peer.emit_candidate(candidate)
        harness.signaling.is_connected = False
        await harness.engine.last_peer.emit_candidate(candidate)

    run_async(scenario())
    assert harness.signaling.sent_types == ["offer", "ice-candidate"]
    assert harness.signaling.sent[1].candidate == candidate


def test_layered_plan_applied_before_offer():
    settings = CallSettings(bitrate_bps=1_000_000, svc_enabled=True, spatial_layers=3, temporal_layers=2)
    harness = Harness(settings)

    async def scenario():
        await harness.session.start_camera()
        await harness.session.place_call()

    run_async(scenario())
    peer = harness.engine.last_peer
    assert peer.calls.index("set_encoding_plan") < peer.calls.index("create_offer")
    plan = harness.session.state.plan
    assert [layer.max_bitrate_bps for layer in plan.layers] == [400_000, 700_000, 1_000_000]
    assert harness.session.status()["encoding"]["encodings"][0]["scalabilityMode"] == "L1T2"


def test_scalability_mode_engine_gets_single_encoding():
    settings = CallSettings(svc_enabled=True, spatial_layers=2, temporal_layers=3)
    harness = Harness(settings, representation=LayerRepresentation.SCALABILITY_MODE)

    async def scenario():
        await harness.session.start_camera()
        await harness.session.place_call()

    run_async(scenario())
    assert harness.session.state.plan.scalability_mode == "L2T3"


def test_rejected_layers_degrade_to_single_layer():
    settings = CallSettings(bitrate_bps=800_000, svc_enabled=True, spatial_layers=3)
    harness = Harness(settings)
    harness.engine.reject_layered = True

    async def scenario():
        await harness.session.start_camera()
        await harness.session.place_call()

    run_async(scenario())
    assert harness.session.phase is CallPhase.OUTGOING
    assert harness.session.state.plan == EncodingPlan.single_layer(800_000)


def test_rejected_encoding_is_reported_but_call_proceeds():
    harness = Harness()
    harness.engine.reject_all_plans = True

    async def scenario():
        await harness.session.start_camera()
        await harness.session.place_call()

    run_async(scenario())
    assert harness.session.phase is CallPhase.OUTGOING
    assert harness.status_log.tail(category="encoding")[-1].level == "error"


def test_settings_change_while_locked_retunes_bitrate_only():
    settings = CallSettings(bitrate_bps=1_000_000, svc_enabled=True, spatial_layers=2)
    harness = Harness(settings)
    results = {}

    async def scenario():
        await harness.session.start_camera()
        await harness.session.place_call()
        previous = harness.settings
        harness.settings = CallSettings(bitrate_bps=2_000_000, svc_enabled=True, spatial_layers=2)
        results["bitrate"] = await harness.session.update_settings(previous, harness.settings)
        previous = harness.settings
        harness.settings = CallSettings(
            bitrate_bps=2_000_000, resolution="1280x720", svc_enabled=False
        )
        results["capture"] = await harness.session.update_settings(previous, harness.settings)

    run_async(scenario())
    assert results == {"bitrate": False, "capture": True}
    plan = harness.session.state.plan
    assert [layer.max_bitrate_bps for layer in plan.layers] == [800_000, 1_400_000]
    assert len(harness.capture.acquisitions) == 1
    assert harness.status_log.tail(category="settings")[-1].event == "deferred"


def test_settings_change_before_call_reapplies_capture():
    harness = Harness()

    async def scenario():
        await harness.session.start_camera()
        previous = harness.settings
        harness.settings = CallSettings(resolution="640x480", frame_rate="15")
        return await harness.session.update_settings(previous, harness.settings)

    assert run_async(scenario()) is False
    assert len(harness.capture.acquisitions) == 2
    assert harness.session.state.local_stream.constraints.width == 640


def test_camera_change_during_call_applies_to_next_call():
    harness = Harness()
    session = harness.session

    async def scenario():
        first = await session.start_camera()
        await session.place_call()
        previous = harness.settings
        harness.settings = CallSettings(resolution="1280x720", frame_rate="24")
        deferred = await session.update_settings(previous, harness.settings)
        await session.handle_answer(SessionDescription(type="answer", sdp=SAMPLE_ANSWER))
        await session.hangup()
        await session.place_call()
        return first, deferred

    first, deferred = run_async(scenario())
    assert deferred is True
    stream = session.state.local_stream
    assert stream is not first
    assert first.video.stopped is True
    assert (stream.constraints.width, stream.constraints.height) == (1280, 720)
    assert stream.constraints.frame_rate == 24.0
    assert len(harness.capture.acquisitions) == 2
    assert harness.engine.last_peer.streams == [stream]


def test_camera_change_during_call_applies_to_next_incoming_call():
    harness = Harness()
    session = harness.session

    async def scenario():
        await session.start_camera()
        await session.place_call()
        previous = harness.settings
        harness.settings = CallSettings(resolution="640x480")
        await session.update_settings(previous, harness.settings)
        await session.hangup()
        await session.handle_offer(SessionDescription(type="offer", sdp=SAMPLE_OFFER))

    run_async(scenario())
    assert session.phase is CallPhase.ACTIVE
    assert harness.engine.last_peer.streams[0].constraints.width == 640


def test_unenforced_bitrate_is_reported():
    harness = Harness(bitrate_enforced=False)

    async def scenario():
        await harness.session.start_camera()
        await harness.session.place_call()

    run_async(scenario())
    entry = harness.status_log.tail(category="encoding")[-1]
    assert entry.event == "advisory"
    assert entry.level == "warning"
    assert "1500000" in entry.message
    assert harness.session.phase is CallPhase.OUTGOING


def test_start_camera_uses_configured_constraints():
    harness = Harness(CallSettings(resolution="1920x1080", frame_rate="60"))
    stream = run_async(harness.session.start_camera())
    assert stream.constraints.to_dict() == {
        "width": {"ideal": 1920},
        "height": {"ideal": 1080},
        "frameRate": {"ideal": 60.0},
    }
    assert run_async(harness.session.start_camera()) is stream
    assert len(harness.capture.acquisitions) == 1


def test_stats_sampled_only_with_peer_and_reset_on_teardown():
    harness = Harness()
    harness.engine.snapshots = [
        outbound_snapshot(1_000.0, {"a": 0}, {"a": (640, 480, 30.0)}),
        outbound_snapshot(2_000.0, {"a": 62_500}, {"a": (640, 480, 30.0)}),
    ]
    results = {}

    async def scenario():
        results["idle"] = await harness.session.sample_stats()
        await harness.session.start_camera()
        await harness.session.place_call()
        await harness.session.sample_stats()
        results["second"] = await harness.session.sample_stats()
        await harness.session.hangup()

    run_async(scenario())
    assert results["idle"] is None
    assert results["second"].total_bitrate_bps == 500_000
    assert harness.session.sampler.latest is None


def test_status_reports_phase_and_codec():
    harness = Harness()
    status = harness.session.status()
    assert status["phase"] == "idle"
    assert status["signaling_connected"] is True
    assert status["local_stream"] is False
    assert status["codec"]["supported"] is True


def test_signaling_status_is_reported():
    harness = Harness()
    run_async(harness.session.on_signaling_status(False))
    entry = harness.status_log.latest
    assert entry.category == "signaling"
    assert entry.level == "warning"
