import asyncio
import os
import sys

import pytest

from conftest import FakeClock, FakeFfmpegRunner
from doc2md.conversion.encoder import (
    EncoderSettings,
    FfmpegRunner,
    MediaEncoder,
    ProgressThrottle,
    compute_bitrate,
    eta_seconds,
    parse_progress_time,
    raw_bitrate,
)
from doc2md.conversion.models import MediaKind
from doc2md.errors import (
    EncodedFileTooLarge,
    EncodingTimeout,
    ProbeFailed,
    UnsupportedFormat,
)

MIB = 1024 * 1024


def test_raw_bitrate_keeps_headroom():
    # 95 MiB over one hour
    assert raw_bitrate(95 * MIB, 3600) == 210


def test_compute_bitrate_clamps_to_band():
    settings = EncoderSettings()
    # short audio would get ~6000 kbps; capped at the audio ceiling
    assert compute_bitrate(95 * MIB, 125, MediaKind.AUDIO, settings) == 320
    assert compute_bitrate(95 * MIB, 3600, MediaKind.AUDIO, settings) == 210
    # same budget for video is below the video floor
    assert compute_bitrate(95 * MIB, 36000, MediaKind.VIDEO, settings) == 256
    assert compute_bitrate(95 * MIB, 36000, MediaKind.AUDIO, settings) == 64


def test_two_minute_audio_is_capped_at_the_audio_ceiling():
    assert raw_bitrate(95_000_000, 120) == 6016
    assert compute_bitrate(95_000_000, 120, MediaKind.AUDIO) == 320


def test_compute_bitrate_uses_configured_band():
    settings = EncoderSettings(audio_min_kbps=32, audio_max_kbps=128)
    assert compute_bitrate(95 * MIB, 125, MediaKind.AUDIO, settings) == 128
    assert compute_bitrate(95 * MIB, 360000, MediaKind.AUDIO, settings) == 32


def test_parse_progress_time():
    assert parse_progress_time("out_time_us", "2500000") == 2.5
    # out_time_ms is reported in microseconds as well
    assert parse_progress_time("out_time_ms", "1000000") == 1.0
    assert parse_progress_time("out_time", "00:01:02.500000") == pytest.approx(62.5)
    assert parse_progress_time("out_time_us", "N/A") is None
    assert parse_progress_time("frame", "12") is None
    assert parse_progress_time("out_time", "garbage") is None


def test_eta_seconds():
    assert eta_seconds(10.0, 0) is None
    assert eta_seconds(10.0, 50.0) == pytest.approx(10.0)
    assert eta_seconds(10.0, 25.0) == pytest.approx(30.0)


def test_progress_throttle_is_monotonic_and_rate_limited():
    clock = FakeClock()
    ticks = []
    throttle = ProgressThrottle(ticks.append, interval=1.0, clock=clock)
    clock.advance(1.0)
    throttle.update(10)
    throttle.update(20)  # too soon
    clock.advance(1.0)
    throttle.update(5)  # lower, ignored
    throttle.update(30)
    clock.advance(1.0)
    throttle.finish()
    assert [t.percent for t in ticks] == [10, 30, 100]
    assert ticks[0].eta == pytest.approx(9.0)
    assert ticks[-1].eta == 0


def test_output_args_per_kind():
    audio = FfmpegRunner.output_args(MediaKind.AUDIO, 128)
    assert "libmp3lame" in audio and "128k" in audio and audio[-1] == "mp3"
    video = FfmpegRunner.output_args(MediaKind.VIDEO, 2000)
    assert "libx264" in video and "4000k" in video and video[-1] == "mp4"


def _settings(**overrides):
    values = dict(target_bytes=900_000, max_bytes=1_000_000, headroom=1.0, retry_factor=0.5, progress_interval=0.0)
    values.update(overrides)
    return EncoderSettings(**values)


def test_single_pass_when_within_ceiling():
    runner = FakeFfmpegRunner(duration=1.0, sizes=[800_000])
    encoder = MediaEncoder(runner, _settings())

    result = asyncio.run(encoder.encode(b"video-bytes", "video/webm"))

    assert result.passes == 1
    assert result.media_type == "video/mp4"
    assert result.bitrate_kbps == 7200
    assert len(result.data) == 800_000
    assert runner.calls == [(MediaKind.VIDEO, 7200)]


def test_second_pass_scales_bitrate_by_observed_size():
    runner = FakeFfmpegRunner(duration=1.0, sizes=[1_600_000, 900_000])
    encoder = MediaEncoder(runner, _settings())
    stages = []

    result = asyncio.run(encoder.encode(b"video-bytes", "video/webm", on_progress=lambda t: stages.append(t.stage)))

    assert result.passes == 2
    # min(compute_bitrate(500_000)=4000, 7200 * 500_000 / 1_600_000 = 2250)
    assert runner.calls == [(MediaKind.VIDEO, 7200), (MediaKind.VIDEO, 2250)]
    assert result.bitrate_kbps == 2250
    assert "encoding" in stages and "re-encoding" in stages


def test_second_pass_never_drops_below_band_floor():
    runner = FakeFfmpegRunner(duration=1.0, sizes=[1_600_000, 900_000])
    encoder = MediaEncoder(runner, _settings(video_min_kbps=3000))

    result = asyncio.run(encoder.encode(b"video-bytes", "video/webm"))

    assert runner.calls[1] == (MediaKind.VIDEO, 3000)
    assert result.bitrate_kbps == 3000


def test_still_too_large_after_second_pass_fails_without_third_pass():
    runner = FakeFfmpegRunner(duration=1.0, sizes=[1_600_000, 1_100_000, 10])
    encoder = MediaEncoder(runner, _settings())

    with pytest.raises(EncodedFileTooLarge) as exc:
        asyncio.run(encoder.encode(b"video-bytes", "video/webm"))

    assert len(runner.calls) == 2
    assert exc.value.code == "encoded_file_too_large"


def test_probe_failure():
    runner = FakeFfmpegRunner(duration=None)
    encoder = MediaEncoder(runner, _settings())

    with pytest.raises(ProbeFailed):
        asyncio.run(encoder.encode(b"audio", "audio/ogg"))
    assert runner.calls == []


def test_timeout_kills_the_encode():
    runner = FakeFfmpegRunner(duration=1.0, sizes=[10], delay=5.0)
    encoder = MediaEncoder(runner, _settings(timeout=0.05))

    with pytest.raises(EncodingTimeout) as exc:
        asyncio.run(encoder.encode(b"audio", "audio/ogg"))
    assert exc.value.code == "encoding_timeout"
    assert not runner.sources[0].parent.exists()


def test_temporary_files_removed_on_success_and_failure():
    ok_runner = FakeFfmpegRunner(duration=1.0, sizes=[10])
    asyncio.run(MediaEncoder(ok_runner, _settings()).encode(b"audio", "audio/ogg"))
    assert not ok_runner.sources[0].parent.exists()

    bad_runner = FakeFfmpegRunner(duration=0.0)
    with pytest.raises(ProbeFailed):
        asyncio.run(MediaEncoder(bad_runner, _settings()).encode(b"audio", "audio/ogg"))
    assert not bad_runner.sources[0].parent.exists()


def test_rejects_types_outside_the_encode_route():
    encoder = MediaEncoder(FakeFfmpegRunner(), _settings())
    with pytest.raises(UnsupportedFormat):
        asyncio.run(encoder.encode(b"%PDF", "application/pdf"))


def test_progress_percentages_increase_within_a_pass():
    runner = FakeFfmpegRunner(duration=2.0, sizes=[10], times=[0.5, 0.4, 1.0, 1.5])
    encoder = MediaEncoder(runner, _settings())
    ticks = []

    asyncio.run(encoder.encode(b"audio", "audio/ogg", on_progress=ticks.append))

    percents = [t.percent for t in ticks]
    assert percents == [25.0, 50.0, 75.0, 100.0]


@pytest.mark.skipif(sys.platform == "win32" or not os.path.exists("/bin/sh"), reason="needs a POSIX shell")
def test_ffmpeg_runner_kills_the_process_when_cancelled(tmp_path):
    pid_file = tmp_path / "ffmpeg.pid"
    fake_ffmpeg = tmp_path / "ffmpeg"
    fake_ffmpeg.write_text(f'#!/bin/sh\necho $$ > "{pid_file}"\necho out_time_us=1500000\nexec sleep 30\n')
    fake_ffmpeg.chmod(0o755)
    runner = FfmpegRunner(ffmpeg_path=str(fake_ffmpeg), ffprobe_path=str(fake_ffmpeg))
    seen = []

    async def main():
        job = asyncio.create_task(
            runner.encode(tmp_path / "in.ogg", tmp_path / "out.mp3", MediaKind.AUDIO, 128, seen.append)
        )
        while not seen:
            await asyncio.sleep(0.01)
        job.cancel()
        with pytest.raises(asyncio.CancelledError):
            await job

    asyncio.run(asyncio.wait_for(main(), timeout=10))

    assert seen == [1.5]
    with pytest.raises(ProcessLookupError):
        os.kill(int(pid_file.read_text()), 0)
