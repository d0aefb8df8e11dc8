import pytest

from conftest import sha256_hex
from download.models import DownloadState, FileErrorKind
from download.service import (
    SpeedTracker,
    build_base_url,
    create_session,
    download_file,
    fetch_all,
    prepare_download,
)
from errors import (
    Forbidden,
    HandshakeConnectionError,
    InvalidManifest,
    PeerError,
    RateLimited,
    Unauthorized,
    UnexpectedStatus,
)


def test_build_base_url():
    assert build_base_url("192.168.1.20", 53317) == "http://192.168.1.20:53317"
    assert build_base_url("10.0.0.1", 8443, "HTTPS") == "https://10.0.0.1:8443"
    assert build_base_url("fe80::1", 53317) == "http://[fe80::1]:53317"


@pytest.mark.asyncio
async def test_prepare_download_returns_manifest(fake_sender):
    fake_sender.add_file("f1", "photo.jpg", b"jpeg")

    manifest = await prepare_download(fake_sender.base_url)

    assert manifest.session_id == "session-1"
    assert manifest.info.fingerprint == "sender-fingerprint"
    assert list(manifest.files) == ["f1"]
    assert manifest.files["f1"].size == 4
    assert fake_sender.requests == [("prepare", {})]


@pytest.mark.asyncio
async def test_pin_is_only_sent_when_given(fake_sender):
    fake_sender.required_pin = "123456"

    with pytest.raises(Unauthorized):
        await prepare_download(fake_sender.base_url)
    await prepare_download(fake_sender.base_url, pin="123456")

    assert fake_sender.requests == [
        ("prepare", {}),
        ("prepare", {"pin": "123456"}),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, error",
    [
        (401, Unauthorized),
        (403, Forbidden),
        (429, RateLimited),
        (500, PeerError),
        (503, PeerError),
        (404, UnexpectedStatus),
        (409, UnexpectedStatus),
        (302, UnexpectedStatus),
        (307, UnexpectedStatus),
    ],
)
async def test_handshake_status_mapping(fake_sender, status, error):
    fake_sender.prepare_status = status

    with pytest.raises(error) as excinfo:
        await prepare_download(fake_sender.base_url)

    assert excinfo.value.status == status


@pytest.mark.asyncio
async def test_handshake_rejection_writes_nothing(fake_sender, tmp_path):
    fake_sender.prepare_status = 401
    fake_sender.add_file("f1", "a.txt", b"aaa")

    with pytest.raises(Unauthorized):
        manifest = await prepare_download(fake_sender.base_url)
        await fetch_all(fake_sender.base_url, None, manifest, tmp_path)

    assert list(tmp_path.iterdir()) == []
    assert fake_sender.download_requests() == []


@pytest.mark.asyncio
async def test_unreachable_sender_is_a_handshake_error():
    with pytest.raises(HandshakeConnectionError):
        await prepare_download("http://127.0.0.1:1")


@pytest.mark.asyncio
async def test_malformed_manifest(fake_sender):
    fake_sender.prepare_body = {"sessionId": "x"}

    with pytest.raises(InvalidManifest):
        await prepare_download(fake_sender.base_url)


@pytest.mark.asyncio
async def test_partial_failure_is_isolated(fake_sender, tmp_path):
    fake_sender.add_file("f1", "one.bin", b"1" * 1000)
    fake_sender.add_file("f2", "two.bin", b"2" * 2000, status=403)
    fake_sender.add_file("f3", "three.bin", b"3" * 300000)

    manifest = await prepare_download(fake_sender.base_url)
    results = await fetch_all(fake_sender.base_url, None, manifest, tmp_path)

    by_id = {r.file_id: r for r in results}
    assert len(results) == 3
    assert [r.file_id for r in results if r.ok] == ["f1", "f3"]
    assert by_id["f2"].state == DownloadState.FAILED
    assert by_id["f2"].error_kind == FileErrorKind.STATUS
    assert by_id["f2"].status_code == 403
    assert (tmp_path / "one.bin").stat().st_size == 1000
    assert (tmp_path / "three.bin").stat().st_size == 300000
    assert not (tmp_path / "two.bin").exists()
    assert by_id["f3"].bytes_written == 300000


@pytest.mark.asyncio
async def test_every_fetch_carries_session_and_pin(fake_sender, tmp_path):
    fake_sender.required_pin = "0000"
    fake_sender.add_file("f1", "a.txt", b"a")
    fake_sender.add_file("f2", "b.txt", b"b")

    manifest = await prepare_download(fake_sender.base_url, pin="0000")
    results = await fetch_all(fake_sender.base_url, "0000", manifest, tmp_path)

    assert all(r.ok for r in results)
    queries = sorted(fake_sender.download_requests(), key=lambda q: q["fileId"])
    assert queries == [
        {"sessionId": "session-1", "fileId": "f1", "pin": "0000"},
        {"sessionId": "session-1", "fileId": "f2", "pin": "0000"},
    ]


@pytest.mark.asyncio
async def test_nested_and_hostile_names_land_under_destination(fake_sender, tmp_path):
    fake_sender.add_file("f1", "album/2024/cover.png", b"png")
    fake_sender.add_file("f2", "/../../escape.txt", b"nope")

    manifest = await prepare_download(fake_sender.base_url)
    results = await fetch_all(fake_sender.base_url, None, manifest, tmp_path / "dest")

    assert all(r.ok for r in results)
    assert (tmp_path / "dest" / "album" / "2024" / "cover.png").read_bytes() == b"png"
    assert (tmp_path / "dest" / "escape.txt").read_bytes() == b"nope"
    assert not (tmp_path / "escape.txt").exists()


@pytest.mark.asyncio
async def test_checksum_is_verified_when_declared(fake_sender, tmp_path):
    fake_sender.add_file("good", "good.txt", b"hello", sha256=sha256_hex(b"hello"))
    fake_sender.add_file("bad", "bad.txt", b"hello", sha256=sha256_hex(b"other"))

    manifest = await prepare_download(fake_sender.base_url)
    results = {r.file_id: r for r in await fetch_all(fake_sender.base_url, None, manifest, tmp_path)}

    assert results["good"].ok
    assert results["bad"].error_kind == FileErrorKind.INTEGRITY
    assert (tmp_path / "good.txt").exists()
    assert not (tmp_path / "bad.txt").exists()


@pytest.mark.asyncio
async def test_network_failure_is_reported_per_file(tmp_path, fake_sender):
    fake_sender.add_file("f1", "a.txt", b"a")
    manifest = await prepare_download(fake_sender.base_url)

    results = await fetch_all("http://127.0.0.1:1", None, manifest, tmp_path)

    assert len(results) == 1
    assert results[0].error_kind == FileErrorKind.NETWORK
    assert not (tmp_path / "a.txt").exists()


@pytest.mark.asyncio
async def test_unwritable_destination_is_io_failure(fake_sender, tmp_path):
    fake_sender.add_file("f1", "sub/a.txt", b"a")
    manifest = await prepare_download(fake_sender.base_url)
    # A regular file where the parent directory should be
    (tmp_path / "sub").write_text("in the way")

    results = await fetch_all(fake_sender.base_url, None, manifest, tmp_path)

    assert results[0].error_kind == FileErrorKind.IO
    assert fake_sender.download_requests() == []


@pytest.mark.asyncio
async def test_download_file_reports_progress(fake_sender, tmp_path, monkeypatch):
    monkeypatch.setattr("download.service.PROGRESS_INTERVAL", 0)
    monkeypatch.setattr("download.service.CHUNK_SIZE", 1024)
    fake_sender.add_file("f1", "big.bin", b"x" * 10240)
    manifest = await prepare_download(fake_sender.base_url)
    seen = []

    async def on_progress(result):
        seen.append(result.bytes_written)

    async with create_session() as session:
        result = await download_file(
            session,
            fake_sender.base_url,
            manifest.session_id,
            manifest.files["f1"],
            tmp_path,
            progress_callback=on_progress,
        )

    assert result.ok
    assert result.progress_percent == 100.0
    assert seen
    assert seen == sorted(seen)
    assert seen[-1] <= 10240


@pytest.mark.asyncio
async def test_colliding_names_fail_without_fetching(fake_sender, tmp_path):
    fake_sender.add_file("f1", "dup.txt", b"first")
    fake_sender.add_file("f2", "../dup.txt", b"second")
    fake_sender.add_file("f3", "other.txt", b"other")

    manifest = await prepare_download(fake_sender.base_url)
    results = {r.file_id: r for r in await fetch_all(fake_sender.base_url, None, manifest, tmp_path)}

    assert len(results) == 3
    assert results["f1"].ok
    assert results["f3"].ok
    assert results["f2"].error_kind == FileErrorKind.IO
    assert results["f2"].path == str(tmp_path / "dup.txt")
    assert (tmp_path / "dup.txt").read_bytes() == b"first"
    assert sorted(q["fileId"] for q in fake_sender.download_requests()) == ["f1", "f3"]


@pytest.mark.asyncio
async def test_raising_progress_callback_does_not_break_batch(fake_sender, tmp_path, monkeypatch):
    monkeypatch.setattr("download.service.PROGRESS_INTERVAL", 0)
    monkeypatch.setattr("download.service.CHUNK_SIZE", 256)
    fake_sender.add_file("f1", "a.bin", b"a" * 1024)
    fake_sender.add_file("f2", "b.bin", b"b" * 1024)
    manifest = await prepare_download(fake_sender.base_url)

    async def on_progress(result):
        if result.file_id == "f1":
            raise RuntimeError("listener gone")

    results = await fetch_all(
        fake_sender.base_url, None, manifest, tmp_path, progress_callback=on_progress
    )

    assert len(results) == 2
    assert all(r.ok for r in results)
    assert (tmp_path / "a.bin").read_bytes() == b"a" * 1024
    assert (tmp_path / "b.bin").read_bytes() == b"b" * 1024


@pytest.mark.asyncio
async def test_unexpected_error_discards_partial_file(fake_sender, tmp_path, monkeypatch):
    monkeypatch.setattr("download.service.CHUNK_SIZE", 256)
    fake_sender.add_file("f1", "a.bin", b"a" * 1024)
    manifest = await prepare_download(fake_sender.base_url)

    def broken_record(self, byte_count):
        raise RuntimeError("tracker broke")

    monkeypatch.setattr("download.service.SpeedTracker.record", broken_record)

    results = await fetch_all(fake_sender.base_url, None, manifest, tmp_path)

    assert len(results) == 1
    assert results[0].state == DownloadState.FAILED
    assert results[0].error_kind == FileErrorKind.IO
    assert "tracker broke" in results[0].error_message
    assert list(tmp_path.iterdir()) == []


def test_speed_tracker():
    tracker = SpeedTracker()
    assert tracker.get_speed() == 0.0

    tracker.record(100)
    tracker.record(100)

    assert tracker.get_speed() >= 0.0
