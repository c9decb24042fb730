import asyncio
from pathlib import Path

import pytest

from doc2md.conversion.ai_client import AIConversionClient
from doc2md.conversion.encoder import EncodedMedia
from doc2md.conversion.models import ProgressTick
from doc2md.conversion.pipeline import FilePreparer
from doc2md.scheduler import ManualScheduler
from doc2md.tasks import TaskRunner, TaskStore
from doc2md.upload_cache import LocalObjectStore, UploadCache


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class StubBackend:
    """AI backend that streams canned fragments. ``before_chunk(i)`` runs before fragment ``i`` is yielded."""

    name = "Stub AI"

    def __init__(self, chunks=("# Doc\n", "body"), error=None, completion="# Done", before_chunk=None):
        self.chunks = list(chunks)
        self.error = error
        self.completion = completion
        self.before_chunk = before_chunk
        self.calls = []

    async def stream(self, files, prompt, model, temperature=0.1):
        self.calls.append({"files": files, "prompt": prompt, "model": model, "stream": True})
        for i, chunk in enumerate(self.chunks):
            if self.before_chunk:
                self.before_chunk(i)
            await asyncio.sleep(0)
            yield chunk
        if self.error is not None:
            raise self.error

    async def complete(self, files, prompt, model, temperature=0.1, max_tokens=None):
        self.calls.append({"files": files, "prompt": prompt, "model": model, "stream": False})
        if self.error is not None:
            raise self.error
        return self.completion


class StubOffice:
    def __init__(self, configured=True, error=None):
        self.configured = configured
        self.error = error
        self.calls = []

    def is_configured(self) -> bool:
        return self.configured

    async def to_pdf(self, data: bytes, media_type: str) -> bytes:
        self.calls.append(media_type)
        if self.error is not None:
            raise self.error
        return b"%PDF-1.4 " + data


class StubEncoder:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def is_available(self) -> bool:
        return True

    async def encode(self, data, media_type, target_bytes=None, on_progress=None):
        self.calls.append(media_type)
        if self.error is not None:
            raise self.error
        for percent in (25.0, 50.0, 100.0):
            if on_progress:
                on_progress(ProgressTick(percent=percent, eta=1.0))
        out_type = "video/mp4" if media_type.startswith("video/") else "audio/mpeg"
        return EncodedMedia(data=b"encoded:" + data, media_type=out_type, bitrate_kbps=128, passes=1)


class FakeFfmpegRunner:
    """Writes ``sizes[n]`` bytes on the n-th encode call and reports the given progress times."""

    def __init__(self, duration=1.0, sizes=(100,), times=(0.25, 0.5, 0.75), delay=0.0):
        self.duration = duration
        self.sizes = list(sizes)
        self.times = list(times)
        self.delay = delay
        self.calls = []
        self.sources = []

    def is_available(self) -> bool:
        return True

    async def probe_duration(self, path: Path):
        self.sources.append(path)
        return self.duration

    async def encode(self, src, dst, kind, bitrate_kbps, on_time):
        self.calls.append((kind, bitrate_kbps))
        assert src.exists()
        for t in self.times:
            on_time(t)
        if self.delay:
            await asyncio.sleep(self.delay)
        size = self.sizes[min(len(self.calls) - 1, len(self.sizes) - 1)]
        dst.write_bytes(b"\0" * size)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def cache(tmp_path, scheduler):
    return UploadCache(LocalObjectStore(tmp_path / "cache"), scheduler, ttl_seconds=900)


@pytest.fixture
def backend():
    return StubBackend()


@pytest.fixture
def preparer():
    return FilePreparer(StubOffice(), StubEncoder())


def make_store(cache, preparer, backend, scheduler, on_finished=None, retention_seconds=1800):
    runner = TaskRunner(cache, preparer, AIConversionClient(backend, default_model="stub-model"), stream_interval=0.0)
    return TaskStore(runner, scheduler, retention_seconds=retention_seconds, on_finished=on_finished)
