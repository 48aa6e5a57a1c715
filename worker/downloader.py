"""
Fetch a job's input source into the job's work directory.

Supported sources:
- http(s)://...   streamed with httpx
- blob://<key>    or a bare storage key, read from the blob store
- file://<path>   or an absolute local path, copied
"""

import asyncio
import logging
import shutil
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from api.blob_store import BlobStore, BlobStoreError
from api.errors import DownloadError
from api.metrics import DOWNLOAD_RETRIES_TOTAL
from config import (
    DOWNLOAD_BACKOFF_BASE,
    DOWNLOAD_CHUNK_SIZE,
    DOWNLOAD_MAX_ATTEMPTS,
    DOWNLOAD_MAX_REDIRECTS,
    DOWNLOAD_TIMEOUT,
)

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base: float = DOWNLOAD_BACKOFF_BASE) -> float:
    """Delay after failed attempt N (1-based): base, 2*base, 4*base, ..."""
    return base * (2 ** (attempt - 1))


async def _stream_to_file(url: str, tmp: Path, timeout: float) -> None:
    async with httpx.AsyncClient(
        timeout=timeout, follow_redirects=True, max_redirects=DOWNLOAD_MAX_REDIRECTS
    ) as client:
        async with client.stream("GET", url) as response:
            if response.status_code >= 400:
                # Client errors will not fix themselves on retry (429 aside)
                retryable = response.status_code >= 500 or response.status_code == 429
                raise DownloadError(f"Source returned HTTP {response.status_code}", retryable=retryable)
            with tmp.open("wb") as f:
                async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                    f.write(chunk)


async def _download_http(url: str, dest: Path, timeout: float) -> Path:
    tmp = dest.with_name(f".{dest.name}.part")
    try:
        # httpx timeouts are per connect/read; this bounds the whole attempt
        await asyncio.wait_for(_stream_to_file(url, tmp, timeout), timeout=timeout)
    except (httpx.TimeoutException, asyncio.TimeoutError) as e:
        tmp.unlink(missing_ok=True)
        raise DownloadError(f"Download timed out after {timeout:.0f}s") from e
    except httpx.TooManyRedirects as e:
        tmp.unlink(missing_ok=True)
        raise DownloadError("Too many redirects", retryable=False) from e
    except httpx.HTTPError as e:
        tmp.unlink(missing_ok=True)
        raise DownloadError(f"Download failed: {type(e).__name__}") from e
    except DownloadError:
        tmp.unlink(missing_ok=True)
        raise

    tmp.replace(dest)
    return dest


async def _copy_local(path: Path, dest: Path) -> Path:
    if not await asyncio.to_thread(path.is_file):
        raise DownloadError("Input source not found", retryable=False)
    await asyncio.to_thread(shutil.copyfile, path, dest)
    return dest


async def download_source(input_source: str, dest: Path, blob_store: BlobStore, timeout: float = DOWNLOAD_TIMEOUT) -> Path:
    """
    One download attempt.

    Args:
        input_source: URL, blob key or local path as submitted
        dest: Where to write the file (parent directory is created)
        blob_store: Store used for blob:// and bare keys
        timeout: Limit on the whole attempt, in seconds

    Returns:
        dest

    Raises:
        DownloadError: retryable unless the source is missing or a 4xx was returned
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    parsed = urlparse(input_source)

    if parsed.scheme in ("http", "https"):
        return await _download_http(input_source, dest, timeout)

    if parsed.scheme == "file":
        return await _copy_local(Path(unquote(parsed.path)), dest)

    if parsed.scheme == "" and input_source.startswith("/"):
        return await _copy_local(Path(input_source), dest)

    if parsed.scheme in ("blob", ""):
        key = input_source[len("blob://"):] if parsed.scheme == "blob" else input_source
        try:
            return await asyncio.wait_for(blob_store.get_local(key, dest), timeout=timeout)
        except FileNotFoundError as e:
            raise DownloadError("Input source not found", retryable=False) from e
        except BlobStoreError as e:
            raise DownloadError(str(e), retryable=False) from e
        except asyncio.TimeoutError as e:
            raise DownloadError(f"Download timed out after {timeout:.0f}s") from e
        except OSError as e:
            raise DownloadError(f"Download failed: {type(e).__name__}") from e

    raise DownloadError(f"Unsupported input source scheme: {parsed.scheme}", retryable=False)


async def download_with_retry(
    input_source: str,
    dest: Path,
    blob_store: BlobStore,
    max_attempts: int = DOWNLOAD_MAX_ATTEMPTS,
    backoff_base: float = DOWNLOAD_BACKOFF_BASE,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> Path:
    """
    download_source with exponential backoff between attempts.

    Non-retryable errors fail on the first attempt. After max_attempts the
    last DownloadError is raised unchanged.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await download_source(input_source, dest, blob_store, timeout=timeout)
        except DownloadError as e:
            if not e.retryable or attempt >= max_attempts:
                raise
            delay = backoff_delay(attempt, backoff_base)
            DOWNLOAD_RETRIES_TOTAL.inc()
            logger.warning(f"Download attempt {attempt}/{max_attempts} failed ({e}), retrying in {delay:.1f}s")
            await asyncio.sleep(delay)
    # max_attempts < 1
    raise DownloadError("No download attempts configured", retryable=False)
