import pytest

from watchparty.models.events import VideoStatePatch
from watchparty.models.room import ConnectionQuality, Room, VideoState


def test_first_user_becomes_host():
    room = Room("r1")
    room.add_user("u1", "Ann", "sid-1")
    room.add_user("u2", "Ben", "sid-2")

    assert room.host_id == "u1"
    assert list(room.users) == ["u1", "u2"]


def test_rejoin_updates_endpoint_and_keeps_position():
    room = Room("r1")
    room.add_user("u1", "Ann", "sid-1")
    room.add_user("u2", "Ben", "sid-2")

    assert room.add_user("u1", "Ann", "sid-9") is False
    assert room.users["u1"].sid == "sid-9"
    assert list(room.users) == ["u1", "u2"]


def test_host_succession_picks_earliest_joined_member():
    room = Room("r1")
    for n in range(1, 4):
        room.add_user(f"u{n}", f"User {n}", f"sid-{n}")

    assert room.remove_user("u1") == "u2"
    assert room.host_id == "u2"
    assert room.remove_user("u3") is None
    assert room.host_id == "u2"


def test_host_is_always_a_member():
    room = Room("r1")
    ids = ["a", "b", "c", "d"]
    for uid in ids:
        room.add_user(uid, uid.upper(), f"sid-{uid}")

    for uid in ["c", "a", "d"]:
        room.remove_user(uid)
        assert room.host_id in room.users

    room.remove_user("b")
    assert room.is_empty
    assert room.host_id is None


@pytest.mark.parametrize("count", [1, 99, 100, 101, 250])
def test_chat_log_keeps_most_recent_hundred(count):
    room = Room("r1")
    room.add_user("u1", "Ann", "sid-1")
    for n in range(count):
        room.add_message("u1", "Ann", f"msg {n}")

    texts = [msg.text for msg in room.messages]
    assert len(texts) == min(count, 100)
    assert texts == [f"msg {n}" for n in range(max(0, count - 100), count)]


def test_chat_message_wire_form():
    room = Room("r1")
    msg = room.add_message("u1", "Ann", "hi", message_id="m-1", now=1234)

    assert msg.to_dict() == {
        'id': 'm-1', 'userId': 'u1', 'username': 'Ann', 'message': 'hi', 'timestamp': 1234,
    }


def test_video_patch_is_idempotent_per_field():
    room = Room("r1")
    patch = VideoStatePatch.model_validate({'isPlaying': True, 'playedSeconds': 42.5}).fields()

    room.update_video(patch, now=1000)
    once = room.video_state.to_dict()
    room.update_video(patch, now=2000)
    twice = room.video_state.to_dict()

    for key in ('lastUpdated', 'serverTimestamp'):
        once.pop(key)
        twice.pop(key)
    assert once == twice


def test_video_patch_drops_unknown_and_server_owned_fields():
    patch = VideoStatePatch.model_validate({
        'playedSeconds': 10,
        'serverTimestamp': 1,
        'lastUpdated': 1,
        'isAdmin': True,
    }).fields()

    assert patch == {'played_seconds': 10.0}


def test_video_patch_rejects_bad_values():
    with pytest.raises(ValueError):
        VideoStatePatch.model_validate({'playedSeconds': -1})
    with pytest.raises(ValueError):
        VideoStatePatch.model_validate({'playbackRate': 0})


def test_server_timestamp_never_goes_backwards():
    state = VideoState(server_timestamp=5000, last_updated=5000)
    state.apply_patch({'is_playing': True}, now=4000)

    assert state.server_timestamp == 5000
    assert state.last_updated == 5000

    state.apply_patch({'is_playing': False}, now=6000)
    assert state.server_timestamp == 6000


def test_video_state_round_trips_wire_form():
    state = VideoState(is_playing=True, played_seconds=12.0, url="https://v", updated_by="u1",
                       server_timestamp=10, last_updated=10)
    assert VideoState.from_dict(state.to_dict()) == state


def test_connection_quality_is_cumulative_average():
    quality = ConnectionQuality()
    drifts = [0.1, 0.4, 2.0, 3.5, 0.0]
    for drift in drifts:
        quality.record(drift, now=0)

    assert quality.report_count == len(drifts)
    assert quality.average_drift == pytest.approx(sum(drifts) / len(drifts))


@pytest.mark.parametrize("drift, level", [(0.2, "good"), (0.5, "fair"), (1.4, "fair"), (1.5, "poor")])
def test_connection_quality_levels(drift, level):
    quality = ConnectionQuality()
    assert quality.record(drift, now=0) == level
