import hashlib
import socket

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from discovery.models import DeviceInfo, DeviceType, MulticastAnnounce, Protocol
from discovery.service import DiscoveryService


@pytest.fixture
def identity():
    return DeviceInfo(
        alias="Local Fox",
        device_model="Linux",
        device_type=DeviceType.HEADLESS,
        fingerprint="self-fingerprint",
    )


def make_device(fingerprint: str, alias: str = "Nice Orange") -> DeviceInfo:
    return DeviceInfo(
        alias=alias,
        device_model="Samsung",
        device_type=DeviceType.MOBILE,
        fingerprint=fingerprint,
    )


def make_announce(fingerprint: str, alias: str = "Nice Orange", port: int = 53317) -> MulticastAnnounce:
    return MulticastAnnounce.for_device(
        make_device(fingerprint, alias),
        port=port,
        protocol=Protocol.HTTPS,
        download=True,
    )


@pytest.fixture
def loopback_sockets(monkeypatch):
    """Make DiscoveryService use a unicast loopback socket instead of multicast."""
    opened: list[socket.socket] = []

    def open_loopback(self):
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.bind(("127.0.0.1", 0))
        sock.setblocking(False)
        self._group, self._port = sock.getsockname()
        opened.append(sock)
        return sock

    monkeypatch.setattr(DiscoveryService, "_open_socket", open_loopback)
    return opened


class FakeSender:
    """A LocalSend sender exposing the download API."""

    def __init__(self) -> None:
        self.session_id = "session-1"
        self.prepare_status = 200
        self.prepare_body: dict | None = None
        self.required_pin: str | None = None
        self.files: dict[str, dict] = {}
        self.contents: dict[str, bytes] = {}
        self.file_status: dict[str, int] = {}
        self.requests: list[tuple[str, dict]] = []
        self.base_url = ""

    def add_file(
        self,
        file_id: str,
        file_name: str,
        content: bytes,
        status: int = 200,
        sha256: str | None = None,
    ) -> None:
        self.files[file_id] = {
            "id": file_id,
            "fileName": file_name,
            "size": len(content),
            "fileType": "application/octet-stream",
            "sha256": sha256,
            "preview": None,
        }
        self.contents[file_id] = content
        self.file_status[file_id] = status

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/localsend/v2/prepare-download", self.prepare)
        app.router.add_get("/api/localsend/v2/download", self.download)
        return app

    async def prepare(self, request: web.Request) -> web.Response:
        self.requests.append(("prepare", dict(request.query)))
        if self.prepare_status != 200:
            return web.Response(status=self.prepare_status)
        if self.required_pin and request.query.get("pin") != self.required_pin:
            return web.Response(status=401)
        if self.prepare_body is not None:
            return web.json_response(self.prepare_body)
        return web.json_response({
            "info": {
                "alias": "Nice Orange",
                "version": "2.0",
                "deviceModel": "Samsung",
                "deviceType": "mobile",
                "fingerprint": "sender-fingerprint",
                "download": True,
            },
            "sessionId": self.session_id,
            "files": self.files,
        })

    async def download(self, request: web.Request) -> web.Response:
        query = dict(request.query)
        self.requests.append(("download", query))
        if query.get("sessionId") != self.session_id:
            return web.Response(status=403)
        if self.required_pin and query.get("pin") != self.required_pin:
            return web.Response(status=401)
        file_id = query.get("fileId")
        if file_id not in self.contents:
            return web.Response(status=404)
        if self.file_status[file_id] != 200:
            return web.Response(status=self.file_status[file_id])
        return web.Response(body=self.contents[file_id], content_type="application/octet-stream")

    def download_requests(self) -> list[dict]:
        return [q for kind, q in self.requests if kind == "download"]


@pytest_asyncio.fixture
async def fake_sender():
    sender = FakeSender()
    server = TestServer(sender.app())
    await server.start_server()
    sender.base_url = f"http://{server.host}:{server.port}"
    yield sender
    await server.close()


def sha256_hex(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()
