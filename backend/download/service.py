"""
HTTP download service for the LocalSend download API.

Performs the prepare-download handshake against a sender, then fetches every
file of the returned manifest concurrently, streaming each one to disk.
"""

import asyncio
import contextlib
import logging
import os
import time
from pathlib import Path

import aiohttp
from cryptography.hazmat.primitives import hashes
from pydantic import ValidationError

from config import (
    CHUNK_SIZE,
    DOWNLOAD_PATH,
    HTTP_TIMEOUT,
    PREPARE_DOWNLOAD_PATH,
    USER_AGENT,
)
from discovery.models import Protocol
from download.models import (
    DownloadState,
    FileDownloadResult,
    FileErrorKind,
    FileInfo,
    PrepareDownloadResponse,
)
from download.paths import resolve_destination
from errors import (
    HandshakeConnectionError,
    InvalidManifest,
    handshake_error_for_status,
)

logger = logging.getLogger(__name__)

PROGRESS_INTERVAL = 0.2  # seconds between progress callbacks per file


def build_base_url(host: str, port: int, protocol: Protocol | str = Protocol.HTTP) -> str:
    """Base URL of a sender, e.g. http://192.168.1.20:53317."""
    scheme = protocol.value if isinstance(protocol, Protocol) else str(protocol).lower()
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"{scheme}://{host}:{port}"


def create_session() -> aiohttp.ClientSession:
    """A client session shared by the handshake and all file fetches."""
    return aiohttp.ClientSession(
        headers={"User-Agent": USER_AGENT},
        timeout=aiohttp.ClientTimeout(
            total=None,
            sock_connect=HTTP_TIMEOUT,
            sock_read=HTTP_TIMEOUT,
        ),
        # LocalSend senders in https mode use self-signed certificates
        connector=aiohttp.TCPConnector(ssl=False),
    )


def _is_success(status: int) -> bool:
    return 200 <= status < 300


class SpeedTracker:
    """Rolling average speed calculator."""

    def __init__(self, window: float = 2.0):
        self._window = window
        self._samples: list[tuple[float, int]] = []

    def record(self, byte_count: int) -> None:
        now = time.monotonic()
        self._samples.append((now, byte_count))
        cutoff = now - self._window
        self._samples = [(t, b) for t, b in self._samples if t >= cutoff]

    def get_speed(self) -> float:
        """Returns speed in bytes/sec."""
        if len(self._samples) < 2:
            return 0.0
        total_bytes = sum(b for _, b in self._samples[1:])
        elapsed = self._samples[-1][0] - self._samples[0][0]
        if elapsed <= 0:
            return 0.0
        return total_bytes / elapsed


async def prepare_download(
    base_url: str,
    pin: str | None = None,
    *,
    session: aiohttp.ClientSession | None = None,
) -> PrepareDownloadResponse:
    """
    Ask the sender for its file manifest.

    Args:
        base_url: Sender base URL, see build_base_url().
        pin: Sent as the `pin` query parameter when given.
        session: Client session to reuse; a temporary one is used otherwise.

    Raises:
        HandshakeError subclass: Unauthorized (401), Forbidden (403),
        RateLimited (429), PeerError (5xx), UnexpectedStatus, InvalidManifest
        or HandshakeConnectionError.
    """
    url = f"{base_url.rstrip('/')}{PREPARE_DOWNLOAD_PATH}"
    params = {"pin": pin} if pin else None

    async with contextlib.AsyncExitStack() as stack:
        if session is None:
            session = await stack.enter_async_context(create_session())
        try:
            async with session.post(url, params=params, allow_redirects=False) as response:
                if not _is_success(response.status):
                    logger.warning(f"Prepare-download at {base_url} answered {response.status}")
                    raise handshake_error_for_status(response.status)
                body = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise HandshakeConnectionError(f"Could not reach {base_url}: {e}") from e

    try:
        manifest = PrepareDownloadResponse.model_validate_json(body)
    except ValidationError as e:
        raise InvalidManifest(f"Malformed manifest from {base_url}: {e}") from e

    logger.info(
        f"Session {manifest.session_id} from {manifest.info}: "
        f"{len(manifest.files)} file(s), {manifest.total_size} bytes"
    )
    return manifest


async def _discard(path: Path | None) -> None:
    if path is None:
        return
    with contextlib.suppress(OSError):
        await asyncio.to_thread(path.unlink, missing_ok=True)


async def _report_progress(progress_callback, result: FileDownloadResult) -> None:
    try:
        await progress_callback(result)
    except Exception as e:
        logger.error(f"Progress callback error: {e}")


async def download_file(
    session: aiohttp.ClientSession,
    base_url: str,
    session_id: str,
    file_info: FileInfo,
    destination: str | os.PathLike,
    pin: str | None = None,
    progress_callback=None,
) -> FileDownloadResult:
    """
    Fetch a single file of a manifest into `destination`.

    Failures are returned in the result, never raised, so sibling downloads
    keep running.

    Args:
        progress_callback: optional async fn(result) called while streaming.
    """
    result = FileDownloadResult(
        session_id=session_id,
        file_id=file_info.id,
        file_name=file_info.file_name,
        path="",
        size=file_info.size,
    )

    try:
        path = resolve_destination(destination, file_info.file_name)
        result.path = str(path)
        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
    except (OSError, ValueError) as e:
        logger.error(f"Cannot prepare destination for {file_info.file_name!r}: {e}")
        return result.fail(FileErrorKind.IO, f"Cannot prepare destination: {e}")

    url = f"{base_url.rstrip('/')}{DOWNLOAD_PATH}"
    params = {"sessionId": session_id, "fileId": file_info.id}
    if pin:
        params["pin"] = pin

    created = False
    try:
        async with session.get(url, params=params, allow_redirects=False) as response:
            if not _is_success(response.status):
                logger.warning(
                    f"Download of {file_info.file_name!r} answered {response.status}"
                )
                return result.fail(
                    FileErrorKind.STATUS,
                    f"Sender answered {response.status} {response.reason or ''}".strip(),
                    status_code=response.status,
                )

            result.state = DownloadState.DOWNLOADING
            digest = hashes.Hash(hashes.SHA256()) if file_info.sha256 else None
            tracker = SpeedTracker()
            last_progress_time = time.monotonic()

            logger.info(f"Writing {path}")
            with open(path, "wb") as f:
                created = True
                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    await asyncio.to_thread(f.write, chunk)
                    if digest is not None:
                        digest.update(chunk)

                    result.bytes_written += len(chunk)
                    tracker.record(len(chunk))

                    now = time.monotonic()
                    if progress_callback and now - last_progress_time >= PROGRESS_INTERVAL:
                        result.speed_bps = tracker.get_speed()
                        result.progress_percent = (
                            result.bytes_written / result.size * 100
                            if result.size > 0
                            else 100
                        )
                        await _report_progress(progress_callback, result)
                        last_progress_time = now

        if digest is not None:
            actual = digest.finalize().hex()
            if actual.lower() != file_info.sha256.lower():
                await _discard(path)
                logger.error(f"Checksum mismatch for {file_info.file_name!r}")
                return result.fail(
                    FileErrorKind.INTEGRITY,
                    f"SHA-256 mismatch: expected {file_info.sha256}, got {actual}",
                )

    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        if created:
            await _discard(path)
        logger.error(f"Download error for {file_info.file_name!r}: {e!r}")
        return result.fail(FileErrorKind.NETWORK, str(e) or type(e).__name__)
    except OSError as e:
        if created:
            await _discard(path)
        logger.error(f"Write error for {file_info.file_name!r}: {e}")
        return result.fail(FileErrorKind.IO, str(e))
    except asyncio.CancelledError:
        if created:
            await _discard(path)
        raise
    except Exception as e:
        if created:
            await _discard(path)
        logger.exception(f"Unexpected error downloading {file_info.file_name!r}")
        return result.fail(FileErrorKind.IO, str(e) or type(e).__name__)

    result.state = DownloadState.COMPLETED
    result.progress_percent = 100.0
    result.speed_bps = 0.0
    return result


async def fetch_all(
    base_url: str,
    pin: str | None,
    manifest: PrepareDownloadResponse,
    destination: str | os.PathLike,
    *,
    session: aiohttp.ClientSession | None = None,
    progress_callback=None,
) -> list[FileDownloadResult]:
    """
    Download every file in `manifest` concurrently.

    Returns one result per file once all fetches have finished. Order is
    not significant. A file whose sanitized name lands on a path already
    claimed by an earlier manifest entry is not fetched and fails with
    an `io` error.
    """
    claimed: dict[Path, str] = {}
    to_fetch: list[FileInfo] = []
    collisions: list[FileDownloadResult] = []
    for file_info in manifest.files.values():
        try:
            path = resolve_destination(destination, file_info.file_name)
        except ValueError:
            # download_file reports it
            to_fetch.append(file_info)
            continue
        if path in claimed:
            logger.warning(
                f"{file_info.file_name!r} collides with file {claimed[path]} at {path}"
            )
            collisions.append(
                FileDownloadResult(
                    session_id=manifest.session_id,
                    file_id=file_info.id,
                    file_name=file_info.file_name,
                    path=str(path),
                    size=file_info.size,
                ).fail(
                    FileErrorKind.IO,
                    f"Destination {path} is already used by file {claimed[path]}",
                )
            )
            continue
        claimed[path] = file_info.id
        to_fetch.append(file_info)

    async with contextlib.AsyncExitStack() as stack:
        if session is None:
            session = await stack.enter_async_context(create_session())

        tasks = [
            asyncio.create_task(
                download_file(
                    session,
                    base_url,
                    manifest.session_id,
                    file_info,
                    destination,
                    pin=pin,
                    progress_callback=progress_callback,
                )
            )
            for file_info in to_fetch
        ]
        results = list(await asyncio.gather(*tasks)) + collisions

    succeeded = sum(1 for r in results if r.ok)
    logger.info(
        f"Session {manifest.session_id}: {succeeded}/{len(results)} file(s) downloaded"
    )
    return results
