"""Tests for the peer session manager."""
from __future__ import annotations

import asyncio

import pytest
from aiortc import RTCIceCandidate

from fakes import ConnectionFactory, FakeAcquirer, FakeSourceTrack, RecordingChannel, settle
from jamroom.schemas.signaling import IceCandidatePayload, SignalingEvent
from jamroom.services.peers import PeerSessionManager, PeerState, parse_candidate, serialize_candidate


async def _manager(**options) -> tuple[PeerSessionManager, RecordingChannel, ConnectionFactory]:
    factory = ConnectionFactory(**options)
    manager = PeerSessionManager(factory, sync_audio_state=True)
    channel = RecordingChannel("me")
    manager.attach_local_media(await FakeAcquirer().acquire())
    manager.bind(channel)
    return manager, channel, factory


def _offer(caller: str, sdp: str = "v=0 remote offer") -> dict:
    return {"caller": caller, "target": "me", "sdp": {"type": "offer", "sdp": sdp}}


def _answer(caller: str) -> dict:
    return {"caller": caller, "target": "me", "sdp": {"type": "answer", "sdp": "v=0 remote answer"}}


@pytest.mark.asyncio
async def test_all_users_creates_one_initiator_per_occupant():
    manager, channel, factory = await _manager()

    channel.receive("all-users", ["a", "b", "me"])
    await settle()

    assert sorted(manager.peer_ids()) == ["a", "b"]
    assert manager.participant_count == 3
    offers = channel.events("offer")
    assert sorted(offer["target"] for offer in offers) == ["a", "b"]
    assert all(offer["caller"] == "me" and offer["sdp"]["type"] == "offer" for offer in offers)
    assert manager.connection_state("a") is PeerState.OFFER_SENT
    # Every connection carries the shared local tracks.
    local_tracks = manager.local.media.tracks()
    for connection in factory.created:
        assert [sender.track for sender in connection.senders] == local_tracks


@pytest.mark.asyncio
async def test_answer_completes_initiator_path():
    manager, channel, _ = await _manager()
    channel.receive("all-users", ["a"])
    await settle()

    channel.receive("answer", _answer("a"))
    await settle()

    assert manager.connection_state("a") is PeerState.CONNECTED
    participant = manager.participants["a"]
    assert participant.media is not None
    assert participant.media.video.kind == "video"
    assert participant.media.audio.kind == "audio"


@pytest.mark.asyncio
async def test_offer_from_unknown_participant_creates_responder():
    manager, channel, factory = await _manager()

    channel.receive("offer", _offer("late"))
    await settle()

    assert manager.peer_ids() == ["late"]
    answers = channel.events("answer")
    assert len(answers) == 1
    assert answers[0]["target"] == "late"
    assert answers[0]["sdp"]["type"] == "answer"
    assert manager.connection_state("late") is PeerState.CONNECTED
    assert factory.created[0].remoteDescription.sdp == "v=0 remote offer"


@pytest.mark.asyncio
async def test_user_joined_waits_for_offer_and_duplicates_are_idempotent():
    manager, channel, factory = await _manager()

    channel.receive("user-joined", "b")
    channel.receive("user-joined", "b")
    await settle()

    assert manager.peer_ids() == ["b"]
    assert len(factory.created) == 1
    assert manager.connection_state("b") is PeerState.CREATED
    assert channel.events("offer") == []
    assert manager.participant_count == 2

    channel.receive("offer", _offer("b"))
    await settle()
    assert len(factory.created) == 1
    assert manager.connection_state("b") is PeerState.CONNECTED


@pytest.mark.asyncio
async def test_duplicate_offer_and_answer_are_ignored_once_connected():
    manager, channel, factory = await _manager()
    channel.receive("offer", _offer("b"))
    await settle()

    channel.receive("offer", _offer("b", sdp="v=0 replayed"))
    channel.receive("answer", _answer("b"))
    await settle()

    assert len(channel.events("answer")) == 1
    assert len(factory.created) == 1
    assert factory.created[0].remoteDescription.sdp == "v=0 remote offer"
    assert manager.connection_state("b") is PeerState.CONNECTED


@pytest.mark.asyncio
async def test_answer_and_candidate_for_unknown_peer_are_dropped():
    manager, channel, factory = await _manager()

    channel.receive("answer", _answer("ghost"))
    channel.receive(
        "ice-candidate",
        {"from": "ghost", "candidate": {"candidate": "candidate:1 1 udp 2122260223 10.0.0.2 50000 typ host"}},
    )
    await settle()

    assert manager.peer_ids() == []
    assert factory.created == []


@pytest.mark.asyncio
async def test_inbound_candidate_is_applied_to_matching_connection():
    manager, channel, factory = await _manager()
    channel.receive("user-joined", "b")
    await settle()

    channel.receive(
        "ice-candidate",
        {
            "from": "b",
            "candidate": {
                "candidate": "candidate:1 1 udp 2122260223 10.0.0.2 50000 typ host",
                "sdpMid": "0",
                "sdpMLineIndex": 0,
            },
        },
    )
    await settle()

    [candidate] = factory.created[0].candidates
    assert candidate.ip == "10.0.0.2"
    assert candidate.port == 50000
    assert candidate.sdpMid == "0"
    assert candidate.sdpMLineIndex == 0


@pytest.mark.asyncio
async def test_local_candidates_are_forwarded_to_their_peer():
    manager, channel, factory = await _manager()
    channel.receive("user-joined", "b")
    await settle()

    candidate = RTCIceCandidate(
        component=1,
        foundation="1",
        ip="192.168.1.5",
        port=40000,
        priority=2122260223,
        protocol="udp",
        type="host",
        sdpMid="0",
        sdpMLineIndex=0,
    )
    factory.created[0].emit("icecandidate", candidate)
    await settle()

    [forwarded] = channel.events("ice-candidate")
    assert forwarded["target"] == "b"
    assert forwarded["candidate"]["candidate"].startswith("candidate:1 1 udp")
    assert "192.168.1.5 40000 typ host" in forwarded["candidate"]["candidate"]
    assert forwarded["candidate"]["sdpMid"] == "0"


def test_candidate_helpers_agree():
    payload = IceCandidatePayload(candidate="candidate:7 1 udp 1694498815 203.0.113.9 61000 typ srflx raddr 0.0.0.0 rport 0")
    candidate = parse_candidate(payload)
    assert candidate.type == "srflx"
    assert serialize_candidate(candidate).candidate.startswith("candidate:7 1 udp 1694498815 203.0.113.9 61000 typ srflx")
    assert parse_candidate(IceCandidatePayload(candidate="")) is None


@pytest.mark.asyncio
async def test_track_and_flags_merge_in_either_order():
    first, first_channel, _ = await _manager()
    second, second_channel, _ = await _manager()

    # Flags first, then track.
    first_channel.receive("remoteVideoStateChange", {"participantId": "b", "enabled": False})
    first_channel.receive("offer", _offer("b"))
    await settle()

    # Track first, then flags.
    second_channel.receive("offer", _offer("b"))
    await settle()
    second_channel.receive("remoteVideoStateChange", {"participantId": "b", "enabled": False})
    await settle()

    one, two = first.participants["b"], second.participants["b"]
    assert (one.video_active, one.audio_active) == (two.video_active, two.audio_active) == (False, True)
    assert set(one.media.tracks) == set(two.media.tracks) == {"audio", "video"}


@pytest.mark.asyncio
async def test_remote_state_change_touches_only_its_flag():
    manager, channel, _ = await _manager()
    channel.receive("offer", _offer("b"))
    await settle()
    media_before = manager.participants["b"].media

    channel.receive("remoteAudioStateChange", {"userId": "b", "audioEnabled": False})
    await settle()

    participant = manager.participants["b"]
    assert participant.audio_active is False
    assert participant.video_active is True
    assert participant.media is media_before


@pytest.mark.asyncio
async def test_initial_states_fill_in_known_and_pending_participants():
    manager, channel, _ = await _manager()
    channel.receive("all-users", ["a", "b"])
    channel.receive("initial-video-states", {"a": False, "b": True, "me": False})
    channel.receive("initial-audio-states", {"a": True, "b": False})
    await settle()

    assert "me" not in manager.participants
    assert manager.participants["a"].video_active is False
    assert manager.participants["b"].audio_active is False
    assert manager.participants["a"].media is None


@pytest.mark.asyncio
async def test_disconnect_closes_connection_and_clamps_count():
    manager, channel, factory = await _manager()
    channel.receive("offer", _offer("b"))
    await settle()

    channel.receive("user-disconnected", "b")
    channel.receive("user-disconnected", "b")
    await settle()

    assert manager.peer_ids() == []
    assert "b" not in manager.participants
    assert factory.created[0].closed
    assert manager.participant_count == 1

    # Late broadcasts for a departed participant do not resurrect it.
    channel.receive("remoteVideoStateChange", {"participantId": "b", "enabled": False})
    await settle()
    assert "b" not in manager.participants


@pytest.mark.asyncio
async def test_rejoined_participant_flags_are_tracked_again():
    manager, channel, _ = await _manager()
    channel.receive("user-joined", "b")
    await settle()
    channel.receive("user-disconnected", "b")
    await settle()

    channel.receive("user-joined", "b")
    await settle()
    channel.receive("remoteVideoStateChange", {"participantId": "b", "enabled": False})
    await settle()

    assert manager.participants["b"].video_active is False
    assert manager.participant_count == 2


@pytest.mark.asyncio
async def test_offer_after_close_is_treated_as_fresh_peer():
    manager, channel, factory = await _manager()
    channel.receive("offer", _offer("b"))
    await settle()
    channel.receive("user-disconnected", "b")
    await settle()

    channel.receive("offer", _offer("b"))
    await settle()

    assert len(factory.created) == 2
    assert factory.created[0].closed
    assert manager.connection(participant_id="b") is factory.created[1]
    assert manager.connection_state("b") is PeerState.CONNECTED


@pytest.mark.asyncio
async def test_repeated_occupant_snapshot_replaces_stale_connection():
    manager, channel, factory = await _manager()
    channel.receive("all-users", ["a"])
    await settle()
    channel.receive("all-users", ["a"])
    await settle()

    assert manager.peer_ids() == ["a"]
    assert len(factory.created) == 2
    assert factory.created[0].closed
    assert not factory.created[1].closed


@pytest.mark.asyncio
async def test_negotiation_failure_is_contained_to_one_peer():
    manager, channel, factory = await _manager()
    channel.receive("offer", _offer("good"))
    await settle()

    factory.options["fail_on"] = {"setRemoteDescription"}
    channel.receive("offer", _offer("bad"))
    await settle()

    assert manager.peer_ids() == ["good"]
    assert "bad" not in manager.participants
    assert factory.created[1].closed
    assert manager.connection_state("good") is PeerState.CONNECTED
    assert manager.participant_count == 2

    channel.receive("remoteVideoStateChange", {"userId": "bad", "enabled": False})
    await settle()
    assert "bad" not in manager.participants


@pytest.mark.asyncio
async def test_failed_transport_is_closed_and_removed():
    manager, channel, factory = await _manager()
    channel.receive("offer", _offer("b"))
    await settle()

    connection = factory.created[0]
    connection.connectionState = "failed"
    connection.emit("connectionstatechange")
    await settle()

    assert manager.peer_ids() == []
    assert "b" not in manager.participants
    assert connection.closed
    assert manager.participant_count == 1

    channel.receive("remoteAudioStateChange", {"userId": "b", "audioEnabled": False})
    await settle()
    assert "b" not in manager.participants


@pytest.mark.asyncio
async def test_close_all_cancels_pending_negotiation_quietly():
    gate = asyncio.Event()
    manager, channel, factory = await _manager(gate=gate)
    channel.receive("all-users", ["a", "b"])
    await settle()

    await manager.close_all()
    gate.set()
    await settle()

    assert channel.events("offer") == []
    assert manager.peer_ids() == []
    assert manager.participants == {}
    assert all(connection.closed for connection in factory.created)
    assert manager.participant_count == 1


@pytest.mark.asyncio
async def test_toggle_video_twice_broadcasts_each_change():
    manager, channel, _ = await _manager()
    media = manager.local.media

    assert await manager.toggle_video() is False
    assert media.is_enabled("video") is False
    assert await manager.toggle_video() is True

    assert channel.events("videoStateChange") == [{"enabled": False}, {"enabled": True}]
    assert manager.local.video_active is True
    assert media.is_enabled("video") is True


@pytest.mark.asyncio
async def test_audio_state_broadcast_is_optional():
    factory = ConnectionFactory()
    manager = PeerSessionManager(factory, sync_audio_state=False)
    channel = RecordingChannel("me")
    manager.attach_local_media(await FakeAcquirer().acquire())
    manager.bind(channel)

    await manager.toggle_audio()

    assert manager.local.audio_active is False
    assert manager.local.media.is_enabled("audio") is False
    assert channel.events("audioStateChange") == []

    synced, synced_channel, _ = await _manager()
    await synced.toggle_audio()
    assert synced_channel.events("audioStateChange") == [{"enabled": False}]


@pytest.mark.asyncio
async def test_replace_local_track_swaps_senders_in_place():
    manager, channel, factory = await _manager()
    channel.receive("all-users", ["a", "b"])
    await settle()
    offers_before = len(channel.events("offer"))

    camera = FakeSourceTrack("video")
    manager.replace_local_track("video", camera)

    outbound = manager.local.media.track("video")
    assert outbound.source is camera
    for connection in factory.created:
        video_senders = [sender for sender in connection.senders if sender.track.kind == "video"]
        assert [sender.track for sender in video_senders] == [outbound]
    assert len(channel.events("offer")) == offers_before


@pytest.mark.asyncio
async def test_snapshot_listeners_see_every_change():
    manager, channel, _ = await _manager()
    counts: list[int] = []
    unsubscribe = manager.subscribe(lambda snapshot: counts.append(snapshot.participant_count))

    channel.receive("user-joined", "b")
    await settle()
    unsubscribe()
    channel.receive("user-joined", "c")
    await settle()

    assert counts == [2]


@pytest.mark.asyncio
async def test_malformed_payloads_are_dropped():
    manager, channel, factory = await _manager()

    await manager.dispatch(SignalingEvent.OFFER, {"caller": "b"})
    await manager.dispatch(SignalingEvent.USER_JOINED, None)
    await manager.dispatch("not-an-event", {})

    assert manager.peer_ids() == []
    assert factory.created == []
