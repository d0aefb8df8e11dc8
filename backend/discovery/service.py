"""
UDP multicast discovery service.

Announces this device to the LocalSend multicast group and listens for
announcements and responses from other devices on the same LAN.
"""

import asyncio
import contextlib
import logging
import socket
import struct
import time

from config import (
    ANNOUNCE_INTERVAL,
    DISCOVERY_TIMEOUT,
    LOCALSEND_PORT,
    MULTICAST_GROUP,
    MULTICAST_TTL,
)
from discovery.models import (
    DeviceInfo,
    MulticastAnnounce,
    MulticastMessage,
    MulticastResponse,
    PeerRecord,
    Protocol,
    parse_multicast_message,
)
from discovery.registry import PeerRegistry
from errors import DiscoveryTransportError, MessageDecodeError

logger = logging.getLogger(__name__)


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol receiving multicast announcements."""

    def __init__(self, service: "DiscoveryService"):
        self.service = service
        self.closed: asyncio.Future = asyncio.get_running_loop().create_future()

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            message = parse_multicast_message(data)
        except MessageDecodeError as e:
            logger.debug(f"Ignoring invalid discovery packet from {addr[0]}: {e}")
            return
        self.service.handle_message(message, addr[0])

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")

    def connection_lost(self, exc: Exception | None) -> None:
        if not self.closed.done():
            self.closed.set_result(None)


class DiscoveryService:
    """One discovery session: an announcer task and a listener over one socket.

    Use start()/stop() or ``async with``. stop() cancels the announcer and
    closes the socket before returning.
    """

    def __init__(
        self,
        identity: DeviceInfo,
        *,
        announce_interval: float = ANNOUNCE_INTERVAL,
        silent: bool = False,
        group: str = MULTICAST_GROUP,
        port: int = LOCALSEND_PORT,
        protocol: Protocol = Protocol.HTTP,
        download: bool = True,
        registry: PeerRegistry | None = None,
    ) -> None:
        self._identity = identity
        self._announce_interval = announce_interval
        self._silent = silent
        self._group = group
        self._port = port
        self._protocol = protocol
        self._download = download
        self._registry = registry if registry is not None else PeerRegistry()
        self._transport: asyncio.DatagramTransport | None = None
        self._datagram_protocol: DiscoveryProtocol | None = None
        self._announce_task: asyncio.Task | None = None
        self._on_peer_change: list = []  # callbacks: async def fn(event, peer)
        self._event_tasks: set[asyncio.Task] = set()

    @property
    def identity(self) -> DeviceInfo:
        return self._identity

    def update_identity(self, identity: DeviceInfo) -> None:
        """Announce and respond as `identity` from the next message on."""
        self._identity = identity
        logger.info(f"Discovery identity is now {identity}")

    @property
    def registry(self) -> PeerRegistry:
        return self._registry

    @property
    def silent(self) -> bool:
        return self._silent

    @property
    def is_running(self) -> bool:
        return self._transport is not None

    def on_peer_change(self, callback) -> None:
        """Register a callback for peer_discovered/peer_updated events."""
        self._on_peer_change.append(callback)

    async def start(self) -> None:
        """Join the multicast group and start the listener and announcer."""
        if self._transport is not None:
            return
        logger.info(f"Starting discovery on {self._group}:{self._port}")

        sock = self._open_socket()
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.create_datagram_endpoint(
                lambda: DiscoveryProtocol(self),
                sock=sock,
            )
        except OSError as e:
            sock.close()
            raise DiscoveryTransportError(f"Cannot listen on discovery socket: {e}") from e
        self._transport = transport
        self._datagram_protocol = protocol

        if not self._silent:
            self._announce_task = asyncio.create_task(self._announce_loop())
        logger.info(
            f"Discovery started as {self._identity} "
            f"({'silent' if self._silent else f'announcing every {self._announce_interval}s'})"
        )

    async def stop(self) -> None:
        """Stop the announcer and release the socket."""
        task, self._announce_task = self._announce_task, None
        if task:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        transport, self._transport = self._transport, None
        if transport:
            transport.close()
            if self._datagram_protocol:
                await self._datagram_protocol.closed
        self._datagram_protocol = None
        logger.info(f"Discovery stopped, {len(self._registry)} peer(s) known")

    async def __aenter__(self) -> "DiscoveryService":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def get_peers(self) -> list[PeerRecord]:
        """Return a list of currently known peers."""
        return list(self._registry.snapshot().values())

    def snapshot(self) -> dict[str, PeerRecord]:
        return self._registry.snapshot()

    def handle_message(self, message: MulticastMessage, address: str) -> None:
        """Insert or refresh the sender of a decoded message."""
        if message.fingerprint == self._identity.fingerprint:
            return

        record = PeerRecord.from_message(message, address, time.time())
        record, is_new = self._registry.upsert(record)

        if is_new:
            logger.info(f"Discovered peer: {record}")
            self._emit("peer_discovered", record)
        else:
            logger.debug(f"Refreshed peer: {record}")
            self._emit("peer_updated", record)

        if isinstance(message, MulticastAnnounce) and not self._silent:
            self._send_response()

    def _open_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            # Other LocalSend apps on this host listen on the same port
            if hasattr(socket, "SO_REUSEPORT"):
                with contextlib.suppress(OSError):
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            sock.bind(("", self._port))

            mreq = struct.pack(
                "4s4s",
                socket.inet_aton(self._group),
                socket.inet_aton("0.0.0.0"),
            )
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, MULTICAST_TTL)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1)
            sock.setblocking(False)
        except OSError as e:
            sock.close()
            raise DiscoveryTransportError(
                f"Cannot join multicast group {self._group}:{self._port}: {e}"
            ) from e
        return sock

    def _emit(self, event: str, peer: PeerRecord) -> None:
        for cb in self._on_peer_change:
            task = asyncio.ensure_future(cb(event, peer))
            self._event_tasks.add(task)
            task.add_done_callback(self._event_tasks.discard)

    def _send(self, data: bytes) -> None:
        if self._transport is None:
            return
        self._transport.sendto(data, (self._group, self._port))

    def _send_response(self) -> None:
        response = MulticastResponse.for_device(
            self._identity,
            port=self._port,
            protocol=self._protocol,
            download=self._download,
        )
        try:
            self._send(response.encode())
        except OSError as e:
            logger.warning(f"Multicast response failed: {e}")

    async def _announce_loop(self) -> None:
        """Periodically send our announcement to the multicast group."""
        while True:
            announce = MulticastAnnounce.for_device(
                self._identity,
                port=self._port,
                protocol=self._protocol,
                download=self._download,
            )
            try:
                self._send(announce.encode())
                logger.debug(f"Announced to {self._group}:{self._port}")
            except OSError as e:
                logger.warning(f"Announce failed: {e}")

            await asyncio.sleep(self._announce_interval)


async def start_discovery(
    identity: DeviceInfo,
    timeout: float = DISCOVERY_TIMEOUT,
    announce_interval: float = ANNOUNCE_INTERVAL,
    silent: bool = False,
    **options,
) -> dict[str, PeerRecord]:
    """
    Run a discovery session for `timeout` seconds.

    Returns the peers seen before the deadline, keyed by fingerprint. Raises
    DiscoveryTransportError if the multicast socket cannot be set up.
    """
    service = DiscoveryService(
        identity,
        announce_interval=announce_interval,
        silent=silent,
        **options,
    )
    await service.start()
    try:
        await asyncio.sleep(timeout)
    finally:
        await service.stop()
    return service.snapshot()
