"""Pydantic models for LocalSend peer discovery."""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from config import LOCALSEND_PORT, PROTOCOL_VERSION
from errors import MessageDecodeError


class DeviceType(str, Enum):
    MOBILE = "mobile"
    DESKTOP = "desktop"
    WEB = "web"
    HEADLESS = "headless"
    SERVER = "server"


class Protocol(str, Enum):
    HTTP = "http"
    HTTPS = "https"


class WireModel(BaseModel):
    """Base for messages exchanged with peers (camelCase JSON, nulls omitted)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def encode(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


class DeviceInfo(WireModel):
    """Identity fields a device presents to others."""
    alias: str
    device_model: str | None = None  # e.g. "Samsung", "Linux"
    device_type: DeviceType
    fingerprint: str  # only used to ignore our own messages

    def __str__(self) -> str:
        return f"{self.alias} ({self.device_model or 'Generic'} {self.device_type.value})"


class MulticastCommon(DeviceInfo):
    """Fields shared by the multicast announce and response."""
    version: str = PROTOCOL_VERSION
    port: int = Field(default=LOCALSEND_PORT, ge=1, le=65535)
    protocol: Protocol = Protocol.HTTP
    download: bool | None = None  # download API active, absent means false

    @property
    def device_info(self) -> DeviceInfo:
        return DeviceInfo(
            alias=self.alias,
            device_model=self.device_model,
            device_type=self.device_type,
            fingerprint=self.fingerprint,
        )


class MulticastAnnounce(MulticastCommon):
    """Sent to the multicast group to make ourselves known."""
    announce: Literal[True]

    @classmethod
    def for_device(
        cls,
        device_info: DeviceInfo,
        port: int = LOCALSEND_PORT,
        protocol: Protocol = Protocol.HTTP,
        download: bool | None = True,
    ) -> "MulticastAnnounce":
        return cls(
            **device_info.model_dump(),
            port=port,
            protocol=protocol,
            download=download,
            announce=True,
        )


class MulticastResponse(MulticastCommon):
    """Reply to an announce; `announce` is either absent or false."""
    announce: Literal[False] | None = None

    @classmethod
    def for_device(
        cls,
        device_info: DeviceInfo,
        port: int = LOCALSEND_PORT,
        protocol: Protocol = Protocol.HTTP,
        download: bool | None = True,
    ) -> "MulticastResponse":
        return cls(
            **device_info.model_dump(),
            port=port,
            protocol=protocol,
            download=download,
            announce=False,
        )


MulticastMessage = MulticastAnnounce | MulticastResponse


def parse_multicast_message(data: bytes | str) -> MulticastMessage:
    """
    Decode a datagram payload into an announce or a response.

    The announce shape is tried first, then the response shape. Raises
    MessageDecodeError if the payload is not UTF-8 or matches neither.
    """
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MessageDecodeError(f"Payload is not valid UTF-8: {e}") from e

    last_error: ValidationError | None = None
    for model in (MulticastAnnounce, MulticastResponse):
        try:
            return model.model_validate_json(data)
        except ValidationError as e:
            last_error = e

    raise MessageDecodeError(
        f"Payload is neither an announce nor a response: {last_error}"
    ) from last_error


class PeerRecord(BaseModel):
    """A discovered device on the LAN."""
    device_info: DeviceInfo
    address: str  # origin of the datagram, never taken from the payload
    port: int
    protocol: Protocol
    download_mode: bool = False
    first_seen: float  # Unix timestamp
    last_seen: float

    @property
    def fingerprint(self) -> str:
        return self.device_info.fingerprint

    @property
    def base_url(self) -> str:
        return f"{self.protocol.value}://{self.address}:{self.port}"

    @classmethod
    def from_message(
        cls, message: MulticastMessage, address: str, seen_at: float
    ) -> "PeerRecord":
        return cls(
            device_info=message.device_info,
            address=address,
            port=message.port,
            protocol=message.protocol,
            download_mode=bool(message.download),
            first_seen=seen_at,
            last_seen=seen_at,
        )

    def __str__(self) -> str:
        mode = "download" if self.download_mode else "upload"
        return f"{self.device_info} @{self.address}:{self.port} [{mode}]"
