"""Audio/video transcoding with ffmpeg, sized to fit the AI backend's upload limit.

Each encode probes the duration, derives a bitrate from the byte budget, runs
one ffmpeg pass and, if the result is still over the ceiling, exactly one more
pass at a reduced target. Temporary files live in a per-call directory that is
removed on every exit path.
"""
import asyncio
import logging
import math
import shutil
import time
import uuid
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Callable, Optional

from doc2md import config
from doc2md.conversion.formats import classify
from doc2md.conversion.models import MediaKind, ProgressTick, Route
from doc2md.errors import (
    ConfigurationMissing,
    EncodedFileTooLarge,
    EncodingFailed,
    EncodingTimeout,
    ProbeFailed,
    UnsupportedFormat,
)

logger = logging.getLogger("doc2md.encoder")

ProgressCallback = Callable[[ProgressTick], None]

AUDIO_TRACK_KBPS = 96


@dataclass(frozen=True)
class EncoderSettings:
    target_bytes: int = config.ENCODE_TARGET_BYTES
    max_bytes: int = config.ENCODE_MAX_BYTES
    headroom: float = config.ENCODE_HEADROOM
    retry_factor: float = config.ENCODE_RETRY_FACTOR
    audio_min_kbps: int = config.AUDIO_BITRATE_MIN_KBPS
    audio_max_kbps: int = config.AUDIO_BITRATE_MAX_KBPS
    video_min_kbps: int = config.VIDEO_BITRATE_MIN_KBPS
    video_max_kbps: int = config.VIDEO_BITRATE_MAX_KBPS
    timeout: float = config.ENCODE_TIMEOUT_SECONDS
    progress_interval: float = 1.0

    def band(self, kind: MediaKind) -> tuple[int, int]:
        if kind == MediaKind.AUDIO:
            return self.audio_min_kbps, self.audio_max_kbps
        if kind == MediaKind.VIDEO:
            return self.video_min_kbps, self.video_max_kbps
        raise ValueError(f"No bitrate band for {kind}")


@dataclass
class EncodedMedia:
    data: bytes
    media_type: str
    bitrate_kbps: int
    passes: int


def raw_bitrate(target_bytes: int, duration_seconds: float, headroom: float = config.ENCODE_HEADROOM) -> int:
    """kbps that would fill ``target_bytes`` over the duration, keeping ``1 - headroom`` for muxing overhead."""
    return math.floor(target_bytes * headroom * 8 / (duration_seconds * 1000))


def compute_bitrate(
    target_bytes: int,
    duration_seconds: float,
    kind: MediaKind,
    settings: Optional[EncoderSettings] = None,
) -> int:
    settings = settings or EncoderSettings()
    low, high = settings.band(kind)
    return max(low, min(high, raw_bitrate(target_bytes, duration_seconds, settings.headroom)))


def eta_seconds(elapsed: float, percent: float) -> Optional[float]:
    if percent <= 0:
        return None
    return elapsed / percent * (100.0 - percent)


def parse_progress_time(key: str, value: str) -> Optional[float]:
    """Seconds from an ffmpeg ``-progress`` line. ``out_time_ms`` is microseconds too (ffmpeg quirk)."""
    value = value.strip()
    if not value or value == "N/A":
        return None
    try:
        if key in ("out_time_us", "out_time_ms"):
            return int(value) / 1_000_000
        if key == "out_time":
            hours, minutes, seconds = value.split(":")
            return int(hours) * 3600 + int(minutes) * 60 + float(seconds)
    except ValueError:
        return None
    return None


class ProgressThrottle:
    """Forwards strictly increasing percentages, at most one per ``interval`` seconds."""

    def __init__(
        self,
        on_progress: Optional[ProgressCallback],
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        stage: str = "encoding",
    ):
        self._on_progress = on_progress
        self._interval = interval
        self._clock = clock
        self._stage = stage
        self._started = clock()
        self._last_emit: Optional[float] = None
        self.last_percent = 0.0

    def update(self, percent: float) -> None:
        percent = max(0.0, min(100.0, percent))
        if percent <= self.last_percent:
            return
        now = self._clock()
        if self._last_emit is not None and now - self._last_emit < self._interval:
            return
        self._emit(percent, now)

    def finish(self) -> None:
        if self.last_percent < 100.0:
            self._emit(100.0, self._clock())

    def _emit(self, percent: float, now: float) -> None:
        self._last_emit = now
        self.last_percent = percent
        if self._on_progress:
            eta = eta_seconds(now - self._started, percent)
            self._on_progress(ProgressTick(percent=percent, eta=eta, stage=self._stage))


class FfmpegRunner:
    """Thin async wrapper over the ffmpeg/ffprobe binaries."""

    def __init__(self, ffmpeg_path: str = config.FFMPEG_PATH, ffprobe_path: str = config.FFPROBE_PATH):
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path

    def is_available(self) -> bool:
        return shutil.which(self.ffmpeg_path) is not None and shutil.which(self.ffprobe_path) is not None

    async def probe_duration(self, path: Path) -> Optional[float]:
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            str(path),
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError as e:
            raise ConfigurationMissing("ffprobe is not installed or FFPROBE_PATH is wrong") from e
        try:
            stdout, _ = await proc.communicate()
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
        if proc.returncode != 0:
            return None
        output = stdout.decode("utf-8", errors="ignore").strip()
        try:
            return float(output) if output else None
        except ValueError:
            return None

    @staticmethod
    def output_args(kind: MediaKind, bitrate_kbps: int) -> list[str]:
        if kind == MediaKind.AUDIO:
            return [
                "-vn",
                "-c:a", "libmp3lame",
                "-b:a", f"{bitrate_kbps}k",
                "-ac", "2",
                "-ar", "44100",
                "-f", "mp3",
            ]
        return [
            "-c:v", "libx264",
            "-preset", "fast",
            "-b:v", f"{bitrate_kbps}k",
            "-maxrate", f"{bitrate_kbps}k",
            "-bufsize", f"{bitrate_kbps * 2}k",
            "-c:a", "aac",
            "-b:a", f"{AUDIO_TRACK_KBPS}k",
            "-movflags", "+faststart",
            "-f", "mp4",
        ]

    async def encode(
        self,
        src: Path,
        dst: Path,
        kind: MediaKind,
        bitrate_kbps: int,
        on_time: Callable[[float], None],
    ) -> None:
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-y",
            "-loglevel", "error",
            "-i", str(src),
            *self.output_args(kind, bitrate_kbps),
            "-progress", "pipe:1",
            "-nostats",
            str(dst),
        ]
        logger.debug("Executing ffmpeg: %s", " ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError as e:
            raise ConfigurationMissing("ffmpeg is not installed or FFMPEG_PATH is wrong") from e

        stderr_tail: deque[str] = deque(maxlen=20)

        async def drain_stderr() -> None:
            assert proc.stderr is not None
            async for raw in proc.stderr:
                line = raw.decode("utf-8", errors="ignore").rstrip()
                if line:
                    stderr_tail.append(line)

        stderr_task = asyncio.create_task(drain_stderr())
        try:
            assert proc.stdout is not None
            async for raw in proc.stdout:
                line = raw.decode("utf-8", errors="ignore").strip()
                if "=" not in line:
                    continue
                key, value = line.split("=", 1)
                seconds = parse_progress_time(key, value)
                if seconds is not None:
                    on_time(seconds)
            return_code = await proc.wait()
            await stderr_task
        finally:
            if proc.returncode is None:
                logger.warning("Killing ffmpeg pid=%s", proc.pid)
                proc.kill()
                await proc.wait()
            if not stderr_task.done():
                stderr_task.cancel()
        if return_code != 0:
            detail = stderr_tail[-1] if stderr_tail else f"ffmpeg exited with code {return_code}"
            raise EncodingFailed(f"{kind.value.capitalize()} encoding failed: {detail}")


class MediaEncoder:
    """Transcodes audio to mp3 and video to mp4 within a byte budget."""

    def __init__(
        self,
        runner: Optional[FfmpegRunner] = None,
        settings: Optional[EncoderSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runner = runner or FfmpegRunner()
        self.settings = settings or EncoderSettings()
        self._clock = clock

    def is_available(self) -> bool:
        return self.runner.is_available()

    async def encode(
        self,
        data: bytes,
        media_type: str,
        target_bytes: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> EncodedMedia:
        classification = classify(media_type)
        if classification.route is not Route.ENCODE or classification.info is None:
            raise UnsupportedFormat(f"Unsupported media type for encoding: {media_type}")
        info = classification.info
        target = target_bytes or self.settings.target_bytes
        call_id = uuid.uuid4().hex

        with TemporaryDirectory(prefix=f"doc2md-encode-{call_id[:8]}-") as tmp:
            src = Path(tmp) / f"input-{call_id}{info.extension}"
            await asyncio.to_thread(src.write_bytes, data)
            try:
                encoded, bitrate, passes = await asyncio.wait_for(
                    self._encode_file(src, Path(tmp), call_id, info.kind, info.output_format, target, on_progress),
                    timeout=self.settings.timeout,
                )
            except asyncio.TimeoutError as e:
                logger.warning("Encoding timed out after %ss (%s)", self.settings.timeout, media_type)
                raise EncodingTimeout(f"Encoding timeout exceeded ({self.settings.timeout:.0f}s)") from e

        logger.info(
            "Encoded %s -> %s: %.1fMB -> %.1fMB at %skbps (%s pass%s)",
            media_type,
            info.output_media_type,
            len(data) / 1024 / 1024,
            len(encoded) / 1024 / 1024,
            bitrate,
            passes,
            "" if passes == 1 else "es",
        )
        return EncodedMedia(data=encoded, media_type=info.output_media_type, bitrate_kbps=bitrate, passes=passes)

    async def _encode_file(
        self,
        src: Path,
        workdir: Path,
        call_id: str,
        kind: MediaKind,
        output_format: str,
        target_bytes: int,
        on_progress: Optional[ProgressCallback],
    ) -> tuple[bytes, int, int]:
        duration = await self.runner.probe_duration(src)
        if not duration or duration <= 0:
            raise ProbeFailed("Could not determine media duration")

        low, _ = self.settings.band(kind)
        bitrate = compute_bitrate(target_bytes, duration, kind, self.settings)
        data = await self._run_pass(src, workdir / f"output-{call_id}-1.{output_format}", kind, bitrate, duration, on_progress, "encoding")
        if len(data) <= self.settings.max_bytes:
            return data, bitrate, 1

        reduced_target = int(self.settings.max_bytes * self.settings.retry_factor)
        scaled = math.floor(bitrate * reduced_target / len(data))
        second = max(low, min(compute_bitrate(reduced_target, duration, kind, self.settings), scaled))
        logger.info(
            "First pass produced %.1fMB (> %.1fMB); re-encoding at %skbps",
            len(data) / 1024 / 1024,
            self.settings.max_bytes / 1024 / 1024,
            second,
        )
        data = await self._run_pass(src, workdir / f"output-{call_id}-2.{output_format}", kind, second, duration, on_progress, "re-encoding")
        if len(data) > self.settings.max_bytes:
            raise EncodedFileTooLarge(f"Encoded file still too large: {len(data) / 1024 / 1024:.1f}MB")
        return data, second, 2

    async def _run_pass(
        self,
        src: Path,
        dst: Path,
        kind: MediaKind,
        bitrate: int,
        duration: float,
        on_progress: Optional[ProgressCallback],
        stage: str,
    ) -> bytes:
        throttle = ProgressThrottle(on_progress, self.settings.progress_interval, self._clock, stage=stage)

        def on_time(seconds: float) -> None:
            throttle.update(min(99.0, seconds / duration * 100.0))

        await self.runner.encode(src, dst, kind, bitrate, on_time)
        throttle.finish()
        return await asyncio.to_thread(dst.read_bytes)
