"""Test doubles for the transcode engine, downloads and the repository."""

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from api.enums import JobStatus, OutputFormat
from api.errors import DownloadError, TranscodeError
from api.job_repository import JobRepository


class FakeEngine:
    """
    TranscodeEngine that writes small placeholder files instead of running ffmpeg.

    fail_on names a step ("probe", "thumbnail", "preview" or a format label)
    that raises. on_transcode is awaited at the start of every transcode,
    which lets a test change the job underneath a running pipeline.
    """

    def __init__(self, fail_on: Optional[str] = None, on_transcode=None):
        self.fail_on = fail_on
        self.on_transcode = on_transcode
        self.calls: List[Tuple[str, str]] = []

    async def probe(self, input_path: Path) -> Dict[str, Any]:
        self.calls.append(("probe", input_path.name))
        if self.fail_on == "probe":
            raise TranscodeError("No video stream found")
        return {
            "format": {"format_name": "mov,mp4,m4a"},
            "video": {"codec_name": "h264", "width": 1920, "height": 1080},
            "audio": {"codec_name": "aac"},
            "duration": 12.5,
            "size": 2048,
            "bitrate": 1_000_000,
        }

    async def transcode(self, input_path, profile, output_path, on_progress=None, duration=None):
        profile = OutputFormat(profile)
        self.calls.append(("transcode", profile.value))
        if self.on_transcode is not None:
            await self.on_transcode(profile)
        if self.fail_on == profile.value:
            raise TranscodeError(f"Transcode to {profile.value} failed: ffmpeg {profile.value} exited with code 1")
        if on_progress is not None:
            for percent in (25, 50, 75, 100):
                await on_progress(percent)
        output_path.write_bytes(b"mp4-" + profile.value.encode())

    async def thumbnail(self, input_path, output_path, duration=None):
        self.calls.append(("thumbnail", output_path.name))
        if self.fail_on == "thumbnail":
            raise TranscodeError("Thumbnail generation failed (exit code 1)")
        output_path.write_bytes(b"jpg")

    async def short_preview(self, input_path, output_path):
        self.calls.append(("preview", output_path.name))
        if self.fail_on == "preview":
            raise TranscodeError("Preview generation failed (exit code 1)")
        output_path.write_bytes(b"gif")


async def fake_download(input_source: str, dest: Path, blob_store) -> Path:
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(b"source-video")
    return dest


async def missing_source_download(input_source: str, dest: Path, blob_store) -> Path:
    raise DownloadError("Input source not found", retryable=False)


class RecordingRepository(JobRepository):
    """JobRepository that keeps a history of successful (status, progress) writes."""

    def __init__(self, db):
        super().__init__(db)
        self.history: List[Tuple[str, int]] = []

    async def transition(self, job_id, from_statuses, to_status, **values):
        job = await super().transition(job_id, from_statuses, to_status, **values)
        if job is not None:
            self.history.append((job["status"], job["progress"]))
        return job

    async def update_progress(self, job_id: int, status: JobStatus, progress: int, attempt=None) -> bool:
        ok = await super().update_progress(job_id, status, progress, attempt=attempt)
        if ok:
            self.history.append((JobStatus(status).value, progress))
        return ok


class BlockingPipeline:
    """Pipeline stand-in that holds its slot until `release` is set."""

    def __init__(self, outcome=None, error: Optional[BaseException] = None):
        self.release = asyncio.Event()
        self.running = 0
        self.max_running = 0
        self.started: List[int] = []
        self.outcome = outcome
        self.error = error

    async def execute(self, job_id: int, requested_formats) -> Any:
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        self.started.append(job_id)
        try:
            await self.release.wait()
            if self.error is not None:
                raise self.error
            return self.outcome
        finally:
            self.running -= 1


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll predicate() until it is true or timeout elapses (then AssertionError)."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
