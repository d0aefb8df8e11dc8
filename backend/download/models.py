"""Pydantic models for the LocalSend download API."""

from enum import Enum
from typing import Any

from pydantic import BaseModel

from config import PROTOCOL_VERSION
from discovery.models import DeviceInfo, WireModel


class FileInfo(WireModel):
    """One file offered by the sender."""
    id: str
    file_name: str
    size: int  # bytes
    file_type: str  # MIME type
    sha256: str | None = None
    preview: str | None = None  # base64 thumbnail
    metadata: dict[str, Any] | None = None


class SenderInfo(DeviceInfo):
    """The `info` block of a prepare-download response."""
    version: str = PROTOCOL_VERSION
    download: bool | None = None


class PrepareDownloadResponse(WireModel):
    """The manifest returned by a successful prepare-download handshake."""
    info: SenderInfo
    session_id: str
    files: dict[str, FileInfo]

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files.values())


Manifest = PrepareDownloadResponse


class DownloadState(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"


class FileErrorKind(str, Enum):
    NETWORK = "network"
    STATUS = "status"
    IO = "io"
    INTEGRITY = "integrity"


class FileDownloadResult(BaseModel):
    """Outcome of fetching a single file, exposed to the caller."""
    session_id: str
    file_id: str
    file_name: str
    path: str
    size: int
    bytes_written: int = 0
    state: DownloadState = DownloadState.PENDING
    speed_bps: float = 0.0
    progress_percent: float = 0.0
    error_kind: FileErrorKind | None = None
    status_code: int | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.state == DownloadState.COMPLETED

    def fail(
        self,
        kind: FileErrorKind,
        message: str,
        status_code: int | None = None,
    ) -> "FileDownloadResult":
        self.state = DownloadState.FAILED
        self.error_kind = kind
        self.error_message = message
        self.status_code = status_code
        self.speed_bps = 0.0
        return self
