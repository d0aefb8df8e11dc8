"""
Download Manager — orchestrates download sessions.

Holds manifests between the handshake and the user's decision, runs the
accepted batches and forwards their progress to the event system.
"""

import asyncio
import logging
import os

from pydantic import BaseModel

from config import DEFAULT_SAVE_DIR
from discovery.models import Protocol
from download.models import (
    DownloadState,
    FileDownloadResult,
    PrepareDownloadResponse,
)
from download.service import build_base_url, fetch_all, prepare_download
from errors import UnknownSessionError

logger = logging.getLogger(__name__)


class PendingDownload(BaseModel):
    """A manifest waiting for the user to accept or reject it."""
    base_url: str
    pin: str | None = None
    manifest: PrepareDownloadResponse


class DownloadManager:
    """Manages pending manifests and completed file downloads."""

    def __init__(self, save_dir: str = DEFAULT_SAVE_DIR) -> None:
        self._pending: dict[str, PendingDownload] = {}
        self._results: dict[tuple[str, str], FileDownloadResult] = {}
        self._lock = asyncio.Lock()
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._save_dir = save_dir

    @property
    def save_dir(self) -> str:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._save_dir = path

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def get_pending(self) -> list[PendingDownload]:
        return list(self._pending.values())

    def get_results(self) -> list[FileDownloadResult]:
        return list(self._results.values())

    async def prepare(
        self,
        host: str,
        port: int,
        pin: str | None = None,
        protocol: Protocol | str = Protocol.HTTP,
    ) -> PendingDownload:
        """Run the handshake and park the manifest until accept()/reject()."""
        base_url = build_base_url(host, port, protocol)
        manifest = await prepare_download(base_url, pin)

        pending = PendingDownload(base_url=base_url, pin=pin, manifest=manifest)
        async with self._lock:
            self._pending[manifest.session_id] = pending

        await self._emit("download_request", pending.model_dump(exclude={"pin"}))
        return pending

    async def reject(self, session_id: str) -> None:
        """Forget a pending manifest without downloading anything."""
        async with self._lock:
            pending = self._pending.pop(session_id, None)
        if pending is None:
            raise UnknownSessionError(session_id)
        logger.info(f"Download session {session_id} rejected")

    async def accept(
        self, session_id: str, destination: str | None = None
    ) -> list[FileDownloadResult]:
        """Download every file of a pending manifest."""
        async with self._lock:
            pending = self._pending.pop(session_id, None)
        if pending is None:
            raise UnknownSessionError(session_id)

        destination = destination or self._save_dir
        os.makedirs(destination, exist_ok=True)
        logger.info(
            f"Downloading {len(pending.manifest.files)} file(s) "
            f"from {pending.base_url} to {destination}"
        )

        results = await fetch_all(
            pending.base_url,
            pending.pin,
            pending.manifest,
            destination,
            progress_callback=self._on_progress,
        )

        for result in results:
            await self._on_result(result)

        succeeded = sum(1 for r in results if r.ok)
        failed = len(results) - succeeded
        if failed == 0:
            notification = {
                "type": "success",
                "message": f"{succeeded} file(s) received successfully!",
            }
        elif succeeded == 0:
            notification = {
                "type": "error",
                "message": f"All {failed} file(s) failed to download.",
            }
        else:
            notification = {
                "type": "warning",
                "message": f"{succeeded} file(s) received, {failed} failed.",
            }
        await self._emit("notification", notification)
        return results

    async def _on_progress(self, result: FileDownloadResult) -> None:
        """Called by the download service while a file streams."""
        await self._emit("download_progress", result.model_dump())

    async def _on_result(self, result: FileDownloadResult) -> None:
        async with self._lock:
            self._results[(result.session_id, result.file_id)] = result
        await self._emit("download_result", result.model_dump())

        if result.state == DownloadState.FAILED:
            logger.warning(
                f"'{result.file_name}' failed ({result.error_kind.value}): "
                f"{result.error_message}"
            )
