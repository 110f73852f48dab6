"""
Tests for the audio capture pipeline.
"""

import io

import numpy as np
import pytest
import soundfile as sf

from capture import FLUSH_INTERVAL_MS, OWNER_NAME, AudioCapturePipeline
from errors import ChannelClosed, DeviceBusy, DeviceError

SR = 16_000


@pytest.fixture
def pipeline(streams, ownership):
    p = AudioCapturePipeline(SR, ownership=ownership, stream_factory=streams)
    yield p
    p.stop()


@pytest.fixture
def open_channel(channels):
    ch = channels("ws://test/ws")
    ch.connected = True
    return ch


def frame_length(payload):
    data, sr = sf.read(io.BytesIO(payload), dtype="float32")
    assert sr == SR
    return len(data)


class TestFlush:
    def test_one_frame_holds_all_buffered_blocks(self, pipeline, streams, open_channel):
        pipeline.attach(open_channel)
        pipeline.start()
        stream = streams.made[0]
        stream.feed(np.full(800, 0.1))
        stream.feed(np.full(800, -0.1))
        stream.feed(np.full(400, 0.2))

        assert pipeline.flush()

        assert len(open_channel.sent_binary) == 1
        assert frame_length(open_channel.sent_binary[0]) == 2000

    def test_frame_order_matches_capture_order(self, pipeline, streams, open_channel):
        pipeline.attach(open_channel)
        pipeline.start()
        stream = streams.made[0]
        stream.feed(np.zeros(800))
        stream.feed(np.full(800, 0.5))

        pipeline.flush()

        data, _ = sf.read(io.BytesIO(open_channel.sent_binary[0]), dtype="float32")
        assert np.allclose(data[:800], 0.0, atol=1e-3)
        assert np.allclose(data[800:], 0.5, atol=1e-3)

    def test_nothing_buffered_sends_nothing(self, pipeline, open_channel):
        pipeline.attach(open_channel)
        pipeline.start()
        assert not pipeline.flush()
        assert open_channel.sent_binary == []

    def test_buffer_dropped_while_channel_not_open(self, pipeline, streams, open_channel):
        pipeline.attach(open_channel)
        pipeline.start()
        open_channel.connected = False
        streams.made[0].feed(np.full(800, 0.1))

        assert not pipeline.flush()

        # audio is never retried once the channel comes back
        open_channel.connected = True
        assert not pipeline.flush()
        assert open_channel.sent_binary == []

    def test_buffer_dropped_without_channel(self, pipeline, streams):
        pipeline.start()
        streams.made[0].feed(np.full(800, 0.1))
        assert not pipeline.flush()

    def test_buffer_cleared_when_send_fails(self, pipeline, streams, channels):
        class RefusingChannel:
            def is_open(self):
                return True

            def send_binary(self, payload):
                raise ChannelClosed("closed mid-send")

        pipeline.attach(RefusingChannel())
        pipeline.start()
        streams.made[0].feed(np.full(800, 0.1))
        assert not pipeline.flush()

        ch = channels("ws://test/ws")
        ch.connected = True
        pipeline.attach(ch)
        streams.made[0].feed(np.full(320, 0.1))
        assert pipeline.flush()
        assert frame_length(ch.sent_binary[0]) == 320

    def test_frame_sent_reports_size(self, pipeline, streams, open_channel):
        sizes = []
        pipeline.frame_sent.connect(sizes.append)
        pipeline.attach(open_channel)
        pipeline.start()
        streams.made[0].feed(np.full(800, 0.1))

        pipeline.flush()

        assert sizes == [len(open_channel.sent_binary[0])]


class TestLifecycle:
    def test_start_acquires_microphone(self, pipeline, streams, ownership):
        changes = []
        pipeline.capturing_changed.connect(changes.append)

        pipeline.start()

        assert pipeline.is_capturing
        assert ownership.owner == OWNER_NAME
        assert streams.made[0].samplerate == SR
        assert changes == [True]
        assert pipeline._flush_timer.isActive()
        assert pipeline._flush_timer.interval() == FLUSH_INTERVAL_MS

    def test_stop_flushes_residual_audio_and_releases(self, pipeline, streams, ownership, open_channel):
        pipeline.attach(open_channel)
        pipeline.start()
        stream = streams.made[0]
        stream.feed(np.full(1200, 0.1))

        pipeline.stop()

        assert len(open_channel.sent_binary) == 1
        assert frame_length(open_channel.sent_binary[0]) == 1200
        assert stream.stopped and stream.closed
        assert ownership.owner is None
        assert not pipeline.is_capturing
        assert not pipeline._flush_timer.isActive()

    def test_stop_is_idempotent(self, pipeline, streams, ownership, open_channel):
        changes = []
        pipeline.capturing_changed.connect(changes.append)
        pipeline.attach(open_channel)
        pipeline.start()
        streams.made[0].feed(np.full(800, 0.1))

        pipeline.stop()
        pipeline.stop()

        assert len(open_channel.sent_binary) == 1
        assert changes == [True, False]
        assert ownership.owner is None

    def test_stop_without_start(self, pipeline, ownership):
        pipeline.stop()
        assert ownership.owner is None

    def test_failed_open_releases_microphone(self, pipeline, streams, ownership):
        streams.error = DeviceError("Could not open microphone")

        with pytest.raises(DeviceError):
            pipeline.start()

        assert not pipeline.is_capturing
        assert ownership.owner is None

    def test_busy_microphone_is_refused(self, pipeline, streams, ownership):
        ownership.acquire("correct-sample")

        with pytest.raises(DeviceBusy):
            pipeline.start()

        assert streams.made == []
        assert ownership.owner == "correct-sample"

    def test_restart_drops_previous_audio(self, pipeline, streams, open_channel):
        pipeline.start()
        streams.made[0].feed(np.full(800, 0.1))
        pipeline.stop()

        pipeline.attach(open_channel)
        pipeline.start()
        assert not pipeline.flush()
        assert open_channel.sent_binary == []


class TestLatestSamples:
    def test_tail_is_most_recent_second_in_order(self, pipeline, streams):
        pipeline.start()
        ramp = np.arange(20_000, dtype=np.float32) / 20_000.0
        streams.made[0].feed(ramp[:7_000])
        streams.made[0].feed(ramp[7_000:])

        tail = pipeline.latest_samples()

        assert tail.size == SR
        assert np.allclose(tail, ramp[-SR:])

    def test_tail_wraps_around(self, pipeline, streams):
        pipeline.start()
        first = np.full(SR, 0.25, dtype=np.float32)
        second = np.full(300, 0.75, dtype=np.float32)
        streams.made[0].feed(first)
        streams.made[0].feed(second)

        tail = pipeline.latest_samples()

        assert np.allclose(tail[-300:], 0.75)
        assert np.allclose(tail[:-300], 0.25)

    def test_tail_does_not_consume_frame_audio(self, pipeline, streams, open_channel):
        pipeline.attach(open_channel)
        pipeline.start()
        streams.made[0].feed(np.full(640, 0.1))

        pipeline.latest_samples()
        pipeline.flush()

        assert frame_length(open_channel.sent_binary[0]) == 640
