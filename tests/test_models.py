"""
Model Tests
===========

Wire serialization, state machine table and message codec.
"""

import json

import pytest
from pydantic import ValidationError

from watcher_agent.models import (
    AuthMessage,
    Observation,
    ObservationBatch,
    Source,
    SourceType,
    StreamInfo,
    StreamState,
    can_transition,
)
from watcher_agent.models.messages import EVENT_AUTH, decode_message, encode_message


class TestObservation:

    def test_wire_keys_are_camel_case(self):
        obs = Observation(stream_id="s-1", frame_id=1, frame_width=640, frame_height=360)
        wire = obs.to_wire()

        assert wire["streamId"] == "s-1"
        assert wire["frameId"] == 1
        assert wire["frameWidth"] == 640
        assert wire["detections"] == []
        assert "capturedAt" in wire

    def test_frame_id_starts_at_one(self):
        with pytest.raises(ValidationError):
            Observation(stream_id="s-1", frame_id=0)

    def test_observation_is_immutable(self):
        obs = Observation(stream_id="s-1", frame_id=1)
        with pytest.raises(ValidationError):
            obs.frame_id = 2

    def test_batch_wire_shape(self):
        batch = ObservationBatch(
            agent_id="watcher-1",
            batch_id="batch-1",
            observations=[Observation(stream_id="s-1", frame_id=1)],
            stream_info=StreamInfo(stream_id="s-1", source_type="channel"),
        )
        wire = batch.to_wire()

        assert wire["agentId"] == "watcher-1"
        assert wire["streamInfo"]["sourceType"] == "channel"
        assert wire["observations"][0]["streamId"] == "s-1"


class TestSource:

    def test_listing_pages_need_video_selection(self):
        assert Source(name="c", url="u", type=SourceType.CHANNEL).needs_video_selection
        assert Source(name="p", url="u", type=SourceType.PLAYLIST).needs_video_selection
        assert not Source(name="v", url="u").needs_video_selection


class TestStreamState:

    @pytest.mark.parametrize("current,target,allowed", [
        (StreamState.STARTING, StreamState.PLAYING, True),
        (StreamState.STARTING, StreamState.STALLED, False),
        (StreamState.PLAYING, StreamState.BUFFERING, True),
        (StreamState.BUFFERING, StreamState.STALLED, True),
        (StreamState.STALLED, StreamState.PLAYING, True),
        (StreamState.STALLED, StreamState.ERROR, True),
        (StreamState.ERROR, StreamState.PLAYING, False),
        (StreamState.ERROR, StreamState.STOPPED, True),
        (StreamState.STOPPED, StreamState.PLAYING, False),
    ])
    def test_transition_table(self, current, target, allowed):
        assert can_transition(current, target) is allowed

    def test_every_live_state_can_stop(self):
        for state in StreamState:
            if state != StreamState.STOPPED:
                assert can_transition(state, StreamState.STOPPED)

    def test_terminal_states(self):
        assert StreamState.ERROR.is_terminal
        assert StreamState.STOPPED.is_terminal
        assert not StreamState.STALLED.is_terminal


class TestMessages:

    def test_encode_wraps_event_and_data(self):
        raw = encode_message(EVENT_AUTH, AuthMessage(api_key="k", version="2.0.0"))
        decoded = json.loads(raw)

        assert decoded["event"] == "watcher:auth"
        assert decoded["data"]["agentType"] == "watcher"
        assert decoded["data"]["apiKey"] == "k"

    def test_decode_rejects_garbage(self):
        assert decode_message("not json") is None
        assert decode_message(json.dumps({"data": {}})) is None

    def test_decode_valid_frame(self):
        envelope = decode_message(json.dumps({"event": "watcher:command", "data": {"type": "rotate"}}))
        assert envelope.event == "watcher:command"
        assert envelope.data == {"type": "rotate"}
