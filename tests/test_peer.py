import asyncio

import pytest

from watchparty.client.media import LocalMedia
from watchparty.client.peer import PeerNetwork, PeerState, parse_candidate
from watchparty.client.relay import RelayClient
from watchparty.config import PeerSettings
from watchparty.exceptions import PermissionDenied
from watchparty.models import events

from .conftest import FakeReceiver, FakeSocketClient, FakeTrack

OFFER = {'type': 'offer', 'sdp': 'v=0 remote offer'}
ANSWER = {'type': 'answer', 'sdp': 'v=0 remote answer'}
CANDIDATE = {
    'candidate': 'candidate:842163049 1 udp 1677729535 203.0.113.7 51234 typ srflx '
                 'raddr 0.0.0.0 rport 0 generation 0',
    'sdpMid': '0',
    'sdpMLineIndex': 0,
}


def fast_settings():
    return PeerSettings(ice_servers=[], health_check_interval=0.01,
                        reconnect_delay=0.05, resume_settle_delay=0)


def make_network(local_id, pc_pool, media=None):
    client = FakeSocketClient()
    relay = RelayClient("movie-night", local_id, local_id.upper(), client=client)

    async def media_factory():
        return media() if callable(media) else media

    network = PeerNetwork(relay, local_id, fast_settings(), media_factory=media_factory, pc_factory=pc_pool)
    return network, client


def signals(client, signal_type):
    return [p for p in client.sent_events(events.SIGNAL) if p['signal']['type'] == signal_type]


async def settle(network):
    for manager in list(network.peers.values()):
        await manager.drain()


@pytest.fixture
async def network_a(pc_pool):
    network, client = make_network("a", pc_pool)
    yield network, client
    await network.close()


@pytest.fixture
async def network_b(pc_pool):
    network, client = make_network("b", pc_pool)
    yield network, client
    await network.close()


async def test_only_lower_id_initiates(pc_pool):
    net_a, client_a = make_network("a", pc_pool)
    net_b, client_b = make_network("b", pc_pool)

    # Both learn about each other at the same instant
    assert net_a.maybe_call("b") is True
    assert net_b.maybe_call("a") is False
    await settle(net_a)
    await settle(net_b)

    offers = signals(client_a, events.SIGNAL_OFFER)
    assert len(offers) == 1
    assert offers[0]['to'] == "b"
    assert offers[0]['signal']['data'] == {'type': 'offer', 'sdp': 'v=0 offer'}
    assert client_b.sent_events(events.SIGNAL) == []
    assert "a" not in net_b.peers

    await net_a.close()
    await net_b.close()


async def test_roster_update_does_not_duplicate_calls(network_a, pc_pool):
    network, client = network_a
    await network.handle_users([{'id': 'a'}, {'id': 'b'}, {'id': 'c'}])
    await network.handle_user_connected("b")
    await settle(network)

    assert sorted(p['to'] for p in signals(client, events.SIGNAL_OFFER)) == ["b", "c"]
    assert len(pc_pool.created) == 2


async def test_offer_is_answered(network_b, pc_pool):
    network, client = network_b
    await network.handle_signal({'from': 'a', 'type': 'offer', 'data': OFFER})
    await settle(network)

    pc = pc_pool.created[0]
    assert pc.remoteDescription.sdp == OFFER['sdp']
    answers = signals(client, events.SIGNAL_ANSWER)
    assert answers[0]['to'] == "a"
    assert answers[0]['signal']['data'] == {'type': 'answer', 'sdp': 'v=0 answer'}
    assert network.peers["a"].state is PeerState.CONNECTING


async def test_failed_offer_leaves_connection_in_place(network_b, pc_pool):
    network, client = network_b
    await network.handle_signal({'from': 'a', 'type': 'offer', 'data': OFFER})
    await settle(network)

    pc = pc_pool.created[0]
    pc.fail_remote = True
    await network.handle_signal({'from': 'a', 'type': 'offer', 'data': OFFER})
    await settle(network)

    assert network.peers["a"].pc is pc
    assert not pc.closed
    assert len(signals(client, events.SIGNAL_ANSWER)) == 1


async def test_offer_to_failed_connection_recreates_it(network_b, pc_pool):
    network, client = network_b
    await network.handle_signal({'from': 'a', 'type': 'offer', 'data': OFFER})
    await settle(network)
    first = pc_pool.created[0]
    first.report("failed")

    await network.handle_signal({'from': 'a', 'type': 'offer', 'data': OFFER})
    await settle(network)

    assert first.closed
    assert network.peers["a"].pc is pc_pool.created[1]
    assert len(signals(client, events.SIGNAL_ANSWER)) == 2


async def test_answer_applied_only_when_awaiting_one(network_a, pc_pool):
    network, client = network_a
    network.maybe_call("b")
    await settle(network)
    pc = pc_pool.created[0]
    assert pc.signalingState == "have-local-offer"

    await network.handle_signal({'from': 'b', 'type': 'answer', 'data': ANSWER})
    await settle(network)
    assert pc.remoteDescription.sdp == ANSWER['sdp']
    assert pc.signalingState == "stable"

    stale = {'type': 'answer', 'sdp': 'v=0 stale'}
    await network.handle_signal({'from': 'b', 'type': 'answer', 'data': stale})
    await settle(network)
    assert pc.remoteDescription.sdp == ANSWER['sdp']


async def test_answer_from_unknown_peer_is_ignored(network_a, pc_pool):
    network, _ = network_a
    await network.handle_signal({'from': 'z', 'type': 'answer', 'data': ANSWER})

    assert network.peers == {}
    assert pc_pool.created == []


async def test_ice_candidates_are_best_effort(network_b, pc_pool):
    network, _ = network_b
    await network.handle_signal({'from': 'a', 'type': 'offer', 'data': OFFER})
    await network.handle_signal({'from': 'a', 'type': 'ice-candidate', 'data': CANDIDATE})
    await settle(network)
    pc = pc_pool.created[0]
    assert len(pc.candidates) == 1

    pc.fail_candidates = True
    await network.handle_signal({'from': 'a', 'type': 'ice-candidate', 'data': CANDIDATE})
    await settle(network)
    assert network.peers["a"].pc is pc
    assert not pc.closed


def test_parse_candidate():
    candidate = parse_candidate(CANDIDATE)

    assert candidate.ip == "203.0.113.7"
    assert candidate.port == 51234
    assert candidate.type == "srflx"
    assert candidate.sdpMid == "0"
    assert candidate.sdpMLineIndex == 0


async def test_own_signals_are_ignored(network_a, pc_pool):
    network, _ = network_a
    await network.handle_signal({'from': 'a', 'type': 'offer', 'data': OFFER})

    assert network.peers == {}


async def test_departed_peer_is_torn_down(network_a, pc_pool):
    network, _ = network_a
    network.maybe_call("b")
    await settle(network)
    manager = network.peers["b"]

    await network.handle_user_disconnected("b")

    assert "b" not in network.peers
    assert manager.state is PeerState.CLOSED
    assert manager.pc is None
    assert pc_pool.created[0].closed


async def test_repeated_failure_schedules_one_reconnect(network_a, pc_pool):
    network, client = network_a
    network.maybe_call("x")
    await settle(network)
    manager = network.peers["x"]
    pc_pool.created[0].report("failed")

    assert network.check_health() == 1
    timer = manager.reconnect_timer
    assert network.check_health() == 0
    assert manager.reconnect_timer is timer

    await asyncio.sleep(0.1)
    await settle(network)

    assert manager.state is PeerState.CLOSED
    assert network.peers["x"] is not manager
    assert len(signals(client, events.SIGNAL_OFFER)) == 2


async def test_reconnect_only_reoffers_from_lower_id(network_b, pc_pool):
    network, client = network_b
    await network.handle_signal({'from': 'a', 'type': 'offer', 'data': OFFER})
    await settle(network)

    assert await network.reconnect("a") is False
    assert "a" not in network.peers
    assert signals(client, events.SIGNAL_OFFER) == []


async def test_health_loop_runs_periodically(network_a, pc_pool):
    network, client = network_a
    network.maybe_call("b")
    await settle(network)
    pc_pool.created[0].report("disconnected")

    network.start()
    await asyncio.sleep(0.03)

    assert network.peers["b"].reconnect_pending


async def test_health_loop_pauses_in_background(network_a, pc_pool):
    network, _ = network_a
    network.maybe_call("b")
    await settle(network)
    pc_pool.created[0].report("failed")

    await network.set_foreground(False)
    network.start()
    await asyncio.sleep(0.03)

    assert not network.peers["b"].reconnect_pending


async def test_resume_reconnects_broken_and_silent_peers(pc_pool):
    network, client = make_network("a", pc_pool)
    for peer in ("b", "c", "d"):
        network.maybe_call(peer)
    await settle(network)
    pc_b, pc_c, pc_d = pc_pool.created
    pc_b.report("failed")
    pc_c.report("connected")
    pc_c.receivers.append(FakeReceiver(FakeTrack("video", ready_state="ended")))
    pc_d.report("connected")
    pc_d.receivers.append(FakeReceiver(FakeTrack("audio")))

    reconnected = await network.resume()

    assert sorted(reconnected) == ["b", "c"]
    assert pc_b.closed and pc_c.closed and not pc_d.closed
    await settle(network)
    assert sorted(p['to'] for p in signals(client, events.SIGNAL_OFFER)) == ["b", "b", "c", "c", "d"]
    await network.close()


async def test_resume_swaps_ended_capture_tracks_without_renegotiating(pc_pool):
    generations = []

    def fresh_media():
        media = LocalMedia(FakeTrack("audio"), FakeTrack("video"))
        generations.append(media)
        return media

    network, client = make_network("a", pc_pool, media=fresh_media)
    await network.acquire_media()
    network.maybe_call("b")
    await settle(network)
    pc = pc_pool.created[0]
    pc.report("connected")
    pc.receivers.append(FakeReceiver(FakeTrack("video")))
    assert sorted(sender.track.kind for sender in pc.senders) == ["audio", "video"]

    generations[0].video.readyState = "ended"
    await network.resume()

    assert len(generations) == 2
    assert network.local_media is generations[1]
    assert generations[0].audio.stopped
    assert all(len(sender.replaced) == 1 for sender in pc.senders)
    assert len(signals(client, events.SIGNAL_OFFER)) == 1
    assert network.peers["b"].pc is pc
    await network.close()


async def test_media_toggles(pc_pool):
    media = LocalMedia(FakeTrack("audio"), FakeTrack("video"))
    network, _ = make_network("a", pc_pool, media=media)
    await network.acquire_media()

    assert network.toggle_video() is False
    assert network.toggle_audio() is False
    assert network.toggle_video() is True
    await network.close()


async def test_close_releases_everything(pc_pool):
    media = LocalMedia(FakeTrack("audio"), FakeTrack("video"))
    network, _ = make_network("a", pc_pool, media=media)
    await network.acquire_media()
    network.start()
    network.maybe_call("b")
    await settle(network)
    manager = network.peers["b"]
    pc_pool.created[0].report("failed")
    network.check_health()

    await network.close()

    assert network.peers == {}
    assert manager.reconnect_timer is None
    assert manager.state is PeerState.CLOSED
    assert pc_pool.created[0].closed
    assert media.video.stopped and media.audio.stopped
    assert network.local_media is None


async def test_transport_closed_connection_is_recycled(network_b, pc_pool):
    network, client = network_b
    await network.handle_signal({'from': 'a', 'type': 'offer', 'data': OFFER})
    await settle(network)
    first = pc_pool.created[0]
    first.report("closed")

    assert network.peers["a"].state is PeerState.FAILED

    await network.handle_signal({'from': 'a', 'type': 'offer', 'data': OFFER})
    await settle(network)

    assert network.peers["a"].pc is pc_pool.created[1]
    assert len(signals(client, events.SIGNAL_ANSWER)) == 2


async def test_resume_surfaces_refused_capture(pc_pool):
    calls = []

    def media():
        calls.append(1)
        if len(calls) > 1:
            raise PermissionDenied("camera revoked")
        return LocalMedia(FakeTrack("audio"), FakeTrack("video"))

    network, _ = make_network("a", pc_pool, media=media)
    await network.acquire_media()
    network.local_media.video.readyState = "ended"

    with pytest.raises(PermissionDenied):
        await network.resume()
    await network.close()
