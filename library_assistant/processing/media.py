"""
Library Assistant — Media Binder

Watches the transport's participant snapshot and attaches the remote
agent's audio + video to the local sink — but only once BOTH tracks are
playable. A half-bound agent (silent video, or voice with a frozen frame)
never reaches the sink.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from ..core.interfaces import MediaSink, NullMediaSink

logger = logging.getLogger("library_assistant.media")

LOCAL_PARTICIPANT = "local"
PLAYABLE = "playable"


def _track(participant: Mapping[str, Any], kind: str) -> Tuple[bool, Any]:
    """(playable, track) for one kind of track; tolerant of missing fields."""
    tracks = participant.get("tracks")
    if not isinstance(tracks, Mapping):
        return False, None
    info = tracks.get(kind)
    if not isinstance(info, Mapping):
        return False, None
    playable = info.get("state") == PLAYABLE
    track = info.get("persistentTrack", info.get("track"))
    return playable, track


def _is_local(participant_id: str, participant: Mapping[str, Any]) -> bool:
    return participant_id == LOCAL_PARTICIPANT or participant.get("local") is True


class MediaBinder:
    """
    Binds at most one remote participant to the sink.

    Usage:
        binder = MediaBinder(sink)
        if binder.refresh(transport.participants()):
            ...  # remote agent is fully playable
    """

    def __init__(self, sink: Optional[MediaSink] = None, session_id: str = "") -> None:
        self._sink: MediaSink = sink if sink is not None else NullMediaSink()
        self._session_id = session_id
        self._bound_id: Optional[str] = None
        self._bound_tracks: Tuple[Any, Any] = (None, None)
        self._muted = False

    @property
    def bound_participant(self) -> Optional[str]:
        return self._bound_id

    @property
    def is_bound(self) -> bool:
        return self._bound_id is not None

    @property
    def muted(self) -> bool:
        return self._muted

    def refresh(self, participants: Mapping[str, Mapping[str, Any]]) -> bool:
        """Re-evaluate bindings from a participant snapshot. Returns is_bound."""
        ready: Dict[str, Tuple[Any, Any]] = {}
        for pid, participant in participants.items():
            if not isinstance(participant, Mapping) or _is_local(pid, participant):
                continue
            audio_ok, audio = _track(participant, "audio")
            video_ok, video = _track(participant, "video")
            if audio_ok and video_ok:
                ready[pid] = (audio, video)

        if self._bound_id is not None and self._bound_id in ready:
            # Keep the current binding; re-attach only if tracks were replaced
            tracks = ready[self._bound_id]
            if tracks != self._bound_tracks:
                self._attach(self._bound_id, tracks)
            return True

        if self._bound_id is not None:
            logger.info(f"[{self._session_id}] {self._bound_id} no longer playable — unbinding")
            self.release()

        if ready:
            pid = next(iter(ready))
            self._attach(pid, ready[pid])
            return True
        return False

    def participant_left(self, participant_id: str) -> bool:
        """Drop the binding if it belonged to `participant_id`. Returns True if dropped."""
        if participant_id and participant_id == self._bound_id:
            self.release()
            return True
        return False

    def release(self) -> None:
        if self._bound_id is None:
            return
        self._sink.detach()
        logger.info(f"[{self._session_id}] Media unbound from {self._bound_id}")
        self._bound_id = None
        self._bound_tracks = (None, None)

    def reset(self) -> None:
        """Teardown: clear the sink regardless of binding state."""
        self._sink.detach()
        self._bound_id = None
        self._bound_tracks = (None, None)

    def set_muted(self, muted: bool) -> None:
        """Local playback only — never affects dispatch."""
        self._muted = muted
        self._sink.set_muted(muted)

    def _attach(self, pid: str, tracks: Tuple[Any, Any]) -> None:
        audio, video = tracks
        self._sink.attach(pid, audio, video)
        self._sink.set_muted(self._muted)
        replaced = self._bound_id == pid
        self._bound_id = pid
        self._bound_tracks = tracks
        logger.info(
            f"[{self._session_id}] Media {'re-bound' if replaced else 'bound'} to {pid}"
        )
