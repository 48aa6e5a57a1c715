"""
FFmpeg-based transcode engine.

All work runs in subprocesses via asyncio so one job's encode never blocks
another job's pipeline. Every call has a timeout; a stuck ffmpeg is killed
rather than left holding a concurrency slot.
"""

import asyncio
import json
import logging
import math
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from api.enums import OutputFormat
from api.errors import TranscodeError, truncate_error
from config import (
    AUDIO_BITRATE,
    AUDIO_CODEC,
    AUX_ASSET_TIMEOUT,
    ENCODER_CRF,
    ENCODER_PRESET,
    ERROR_DETAIL_MAX_LENGTH,
    FFMPEG_TIMEOUT_BASE_MULTIPLIER,
    FFMPEG_TIMEOUT_MAXIMUM,
    FFMPEG_TIMEOUT_MINIMUM,
    FFMPEG_TIMEOUT_RESOLUTION_MULTIPLIERS,
    OUTPUT_FPS,
    PREVIEW_DURATION,
    PREVIEW_FILTER,
    PROBE_TIMEOUT,
    THUMBNAIL_HEIGHT,
    THUMBNAIL_POSITION,
    THUMBNAIL_WIDTH,
    TRANSCODE_PROFILES,
    VIDEO_CODEC,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], Awaitable[None]]

# Sanity bound on probed durations (catches corrupted metadata)
MAX_DURATION_SECONDS = 24 * 3600


class TranscodeEngine(Protocol):
    async def probe(self, input_path: Path) -> Dict[str, Any]: ...

    async def transcode(
        self,
        input_path: Path,
        profile: OutputFormat,
        output_path: Path,
        on_progress: Optional[ProgressCallback] = None,
        duration: Optional[float] = None,
    ) -> None: ...

    async def thumbnail(self, input_path: Path, output_path: Path, duration: Optional[float] = None) -> None: ...

    async def short_preview(self, input_path: Path, output_path: Path) -> None: ...


def calculate_ffmpeg_timeout(duration: float, height: int = 1080) -> float:
    """
    Timeout for one encode, scaled by source duration and target resolution.

    Returns:
        Seconds, clamped to [FFMPEG_TIMEOUT_MINIMUM, FFMPEG_TIMEOUT_MAXIMUM]
    """
    resolution_multiplier = FFMPEG_TIMEOUT_RESOLUTION_MULTIPLIERS.get(height, 2.0)
    timeout = (duration or 0) * FFMPEG_TIMEOUT_BASE_MULTIPLIER * resolution_multiplier
    return max(FFMPEG_TIMEOUT_MINIMUM, min(timeout, FFMPEG_TIMEOUT_MAXIMUM))


def validate_duration(duration: Any) -> float:
    """
    Normalize a duration reported by ffprobe.

    Raises:
        ValueError: missing, non-numeric, non-finite, non-positive or absurdly long
    """
    if duration is None:
        raise ValueError("Could not determine video duration")
    try:
        duration = float(duration)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Could not convert duration to float: {type(duration).__name__}") from e
    if math.isnan(duration) or math.isinf(duration):
        raise ValueError(f"Invalid duration value: {duration}")
    if duration <= 0:
        raise ValueError(f"Invalid duration: {duration} seconds (must be positive)")
    if duration > MAX_DURATION_SECONDS:
        raise ValueError(f"Duration too long: {duration} seconds (max {MAX_DURATION_SECONDS})")
    return duration


def parse_progress_line(line: str, duration: float) -> Optional[int]:
    """Map an `out_time_ms=<microseconds>` line from -progress output to 0..100."""
    if not line.startswith("out_time_ms=") or duration <= 0:
        return None
    try:
        # ffmpeg reports microseconds despite the _ms suffix
        seconds = int(line.split("=", 1)[1]) / 1_000_000
    except (ValueError, IndexError):
        return None
    return max(0, min(100, int(seconds / duration * 100)))


async def cleanup_ffmpeg_process(process: asyncio.subprocess.Process, context: str = "ffmpeg") -> None:
    """Kill the process if it is still running and reap it."""
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


async def run_ffmpeg_with_progress(
    cmd: List[str],
    duration: float,
    timeout: float,
    progress_callback: Optional[ProgressCallback] = None,
    context: str = "ffmpeg",
) -> Tuple[bool, Optional[str]]:
    """
    Run ffmpeg with `-progress pipe:1`, reporting percent complete.

    Args:
        cmd: Full command line
        duration: Source duration in seconds (0 disables progress reporting)
        timeout: Kill the process after this many seconds
        progress_callback: Awaited with each new, higher percentage
        context: Label for logs and error messages

    Returns:
        (success, error_message)
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        # stderr is not read; a full pipe would stall ffmpeg
        stderr=asyncio.subprocess.DEVNULL,
    )

    loop = asyncio.get_running_loop()
    started = loop.time()
    timed_out = False
    last_reported = -1

    async def read_progress():
        nonlocal last_reported
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            progress = parse_progress_line(line.decode("utf-8", errors="ignore").strip(), duration)
            if progress is not None and progress > last_reported:
                last_reported = progress
                if progress_callback:
                    await progress_callback(progress)

    async def timeout_killer():
        nonlocal timed_out
        await asyncio.sleep(timeout)
        timed_out = True
        logger.warning(f"{context} exceeded {timeout:.0f}s limit, killing it")
        try:
            process.kill()
        except ProcessLookupError:
            pass

    killer = asyncio.create_task(timeout_killer())
    try:
        await read_progress()
        await process.wait()
    finally:
        killer.cancel()
        try:
            await killer
        except asyncio.CancelledError:
            pass
        await cleanup_ffmpeg_process(process, context)

    if timed_out:
        elapsed = loop.time() - started
        return False, f"{context} timed out after {elapsed:.0f} seconds (limit: {timeout:.0f}s)"
    if process.returncode != 0:
        return False, f"{context} exited with code {process.returncode}"
    return True, None


async def _run_capture(cmd: List[str], timeout: float, context: str) -> bytes:
    """Run a short command, returning stdout; TranscodeError on failure or timeout."""
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except FileNotFoundError as e:
        raise TranscodeError(f"{context} failed: {cmd[0]} is not installed") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await cleanup_ffmpeg_process(process, context)
        raise TranscodeError(f"{context} timed out after {timeout:.0f}s")

    if process.returncode != 0:
        detail = truncate_error(stderr.decode("utf-8", errors="ignore"), ERROR_DETAIL_MAX_LENGTH)
        logger.warning(f"{context} failed: {detail}")
        raise TranscodeError(f"{context} failed (exit code {process.returncode})")
    return stdout


class FFmpegTranscodeEngine:
    """TranscodeEngine backed by the ffmpeg/ffprobe binaries on PATH."""

    def __init__(self, ffmpeg: str = "ffmpeg", ffprobe: str = "ffprobe"):
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe

    async def probe(self, input_path: Path) -> Dict[str, Any]:
        """
        Read container and stream metadata.

        Returns:
            {format, video, audio, duration, size, bitrate}; video/audio are the
            first stream of each kind (audio may be None)

        Raises:
            TranscodeError: ffprobe failed, timed out, or found no video stream
        """
        cmd = [self.ffprobe, "-v", "quiet", "-print_format", "json", "-show_format", "-show_streams", str(input_path)]
        stdout = await _run_capture(cmd, PROBE_TIMEOUT, "ffprobe")
        try:
            data = json.loads(stdout.decode("utf-8", errors="ignore"))
        except ValueError as e:
            raise TranscodeError("ffprobe returned unreadable output") from e

        streams = data.get("streams", [])
        video = next((s for s in streams if s.get("codec_type") == "video"), None)
        audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
        if video is None:
            raise TranscodeError("No video stream found")

        fmt = data.get("format", {})
        try:
            duration = validate_duration(fmt.get("duration"))
        except ValueError as e:
            raise TranscodeError(str(e)) from e

        return {
            "format": fmt,
            "video": video,
            "audio": audio,
            "duration": duration,
            "size": int(fmt["size"]) if fmt.get("size") else None,
            "bitrate": int(fmt["bit_rate"]) if fmt.get("bit_rate") else None,
        }

    def build_transcode_command(self, input_path: Path, profile: OutputFormat, output_path: Path) -> List[str]:
        settings = TRANSCODE_PROFILES[OutputFormat(profile).value]
        bitrate = settings["bitrate"]
        return [
            self.ffmpeg,
            "-y",
            "-i",
            str(input_path),
            "-c:v",
            VIDEO_CODEC,
            "-preset",
            ENCODER_PRESET,
            "-crf",
            str(ENCODER_CRF),
            "-maxrate",
            bitrate,
            "-bufsize",
            f"{int(bitrate.rstrip('k')) * 2}k",
            "-vf",
            f"scale=-2:{settings['height']}",
            "-r",
            str(OUTPUT_FPS),
            "-c:a",
            AUDIO_CODEC,
            "-b:a",
            AUDIO_BITRATE,
            "-movflags",
            "+faststart",
            "-progress",
            "pipe:1",
            "-nostats",
            str(output_path),
        ]

    async def transcode(
        self,
        input_path: Path,
        profile: OutputFormat,
        output_path: Path,
        on_progress: Optional[ProgressCallback] = None,
        duration: Optional[float] = None,
    ) -> None:
        """Encode one MP4 rendition. Raises TranscodeError naming the format."""
        profile = OutputFormat(profile)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        timeout = calculate_ffmpeg_timeout(duration or 0, profile.height)
        logger.debug(f"Transcoding {input_path.name} to {profile.value} (timeout {timeout:.0f}s)")

        try:
            success, error = await run_ffmpeg_with_progress(
                self.build_transcode_command(input_path, profile, output_path),
                duration=duration or 0,
                timeout=timeout,
                progress_callback=on_progress,
                context=f"ffmpeg {profile.value}",
            )
        except FileNotFoundError as e:
            raise TranscodeError(f"Transcode to {profile.value} failed: {self.ffmpeg} is not installed") from e

        if not success:
            raise TranscodeError(f"Transcode to {profile.value} failed: {error}")

    async def thumbnail(self, input_path: Path, output_path: Path, duration: Optional[float] = None) -> None:
        """One JPEG frame at THUMBNAIL_POSITION of the duration."""
        output_path.parent.mkdir(parents=True, exist_ok=True)
        timestamp = (duration or 0) * THUMBNAIL_POSITION
        cmd = [
            self.ffmpeg,
            "-y",
            # Input seeking: jumps to the nearest keyframe without decoding up to it
            "-ss",
            f"{timestamp:.3f}",
            "-i",
            str(input_path),
            "-vframes",
            "1",
            "-vf",
            f"scale={THUMBNAIL_WIDTH}:{THUMBNAIL_HEIGHT}",
            str(output_path),
        ]
        await _run_capture(cmd, AUX_ASSET_TIMEOUT, "Thumbnail generation")

    async def short_preview(self, input_path: Path, output_path: Path) -> None:
        """Looping animated GIF of the first PREVIEW_DURATION seconds."""
        output_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = [
            self.ffmpeg,
            "-y",
            "-t",
            str(PREVIEW_DURATION),
            "-i",
            str(input_path),
            "-vf",
            PREVIEW_FILTER,
            "-loop",
            "0",
            str(output_path),
        ]
        await _run_capture(cmd, AUX_ASSET_TIMEOUT, "Preview generation")
