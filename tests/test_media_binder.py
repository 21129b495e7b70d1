from unittest.mock import MagicMock

import pytest

from conftest import playable_participant
from library_assistant.core.interfaces import MediaSink
from library_assistant.processing.media import MediaBinder


@pytest.fixture
def sink() -> MagicMock:
    return MagicMock(spec=MediaSink)


@pytest.fixture
def binder(sink: MagicMock) -> MediaBinder:
    return MediaBinder(sink, session_id="s1")


def test_binds_only_when_audio_and_video_playable(binder, sink) -> None:
    assert binder.refresh({"agent": playable_participant(video="loading")}) is False
    assert binder.refresh({"agent": playable_participant(audio="off")}) is False
    sink.attach.assert_not_called()

    assert binder.refresh({"agent": playable_participant()}) is True
    sink.attach.assert_called_once_with("agent", "audio", "video")
    assert binder.bound_participant == "agent"


def test_local_participant_never_bound(binder, sink) -> None:
    local = playable_participant()
    local["local"] = True
    assert binder.refresh({"local": playable_participant(), "me": local}) is False
    sink.attach.assert_not_called()


def test_falls_back_to_track_field(binder, sink) -> None:
    participant = {
        "tracks": {
            "audio": {"state": "playable", "track": "a0"},
            "video": {"state": "playable", "track": "v0"},
        },
    }
    assert binder.refresh({"agent": participant})
    sink.attach.assert_called_once_with("agent", "a0", "v0")


def test_unchanged_tracks_do_not_reattach(binder, sink) -> None:
    binder.refresh({"agent": playable_participant()})
    binder.refresh({"agent": playable_participant()})
    assert sink.attach.call_count == 1


def test_replaced_tracks_reattach(binder, sink) -> None:
    binder.refresh({"agent": playable_participant()})
    binder.refresh({"agent": playable_participant(suffix="-2")})

    assert sink.attach.call_count == 2
    sink.attach.assert_called_with("agent", "audio-2", "video-2")


def test_unbinds_when_no_longer_playable(binder, sink) -> None:
    binder.refresh({"agent": playable_participant()})

    assert binder.refresh({"agent": playable_participant(video="interrupted")}) is False
    sink.detach.assert_called_once()
    assert not binder.is_bound


def test_participant_left(binder, sink) -> None:
    binder.refresh({"agent": playable_participant()})

    assert binder.participant_left("someone-else") is False
    assert binder.participant_left("agent") is True
    sink.detach.assert_called_once()


def test_mute_is_reapplied_on_attach(binder, sink) -> None:
    binder.set_muted(True)
    binder.refresh({"agent": playable_participant()})

    assert binder.muted
    sink.set_muted.assert_called_with(True)
    assert sink.set_muted.call_count == 2


def test_reset_always_detaches(binder, sink) -> None:
    binder.reset()
    sink.detach.assert_called_once()
    assert binder.bound_participant is None
