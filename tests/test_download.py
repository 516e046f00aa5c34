from __future__ import annotations

import pytest

from conftest import b64, ok, raw

from akeeba_client.state import COMPLETED, FAILED


class BrokenSink:
    def __init__(self, fail_create: bool = False):
        self.fail_create = fail_create
        self.appends = 0

    def create_or_truncate(self, path):
        if self.fail_create:
            raise PermissionError(13, "Permission denied")

    def append(self, path, data):
        self.appends += 1
        raise OSError(28, "No space left on device")


def test_chunked_download_walks_parts_and_segments(make_client, tmp_path):
    out = tmp_path / "site.jpa"
    client, transport, rec = make_client(ok(b64(b"A")), ok(""), ok(""))
    state = client.download(7, out)

    assert out.read_bytes() == b"A"
    assert rec.names == ["step", "completed"]
    assert rec.payloads("completed") == [{"file": str(out)}]
    assert [c["data"] for c in transport.calls] == [
        {"backup_id": 7, "part_id": 1, "segment": 1},
        {"backup_id": 7, "part_id": 1, "segment": 2},
        {"backup_id": 7, "part_id": 2, "segment": 1},
    ]
    assert state.status == COMPLETED
    assert state.requests == 3
    assert state.bytes_written == 1


def test_chunked_download_multiple_parts(make_client, tmp_path):
    out = tmp_path / "site.jpa"
    client, transport, rec = make_client(
        ok(b64(b"part1-a")), ok(b64(b"part1-b")), ok(""),
        ok(b64(b"part2-a")), ok(""),
        ok(""),
    )
    client.download("3", out)
    assert out.read_bytes() == b"part1-apart1-bpart2-a"
    assert rec.names == ["step", "step", "step", "completed"]
    assert [(p["part"], p["segment"]) for p in rec.payloads("step")] == [(1, 1), (1, 2), (2, 1)]
    assert len(transport.urls) == 6


def test_download_truncates_existing_file(make_client, tmp_path):
    out = tmp_path / "site.jpa"
    out.write_bytes(b"stale content")
    client, _, _ = make_client(ok(""))
    client.download(1, out)
    assert out.read_bytes() == b""


def test_corrupted_chunk_is_an_error(make_client, tmp_path):
    client, transport, rec = make_client(ok("***not base64***"))
    state = client.download(1, tmp_path / "x.jpa")
    assert rec.names == ["error"]
    assert "base64" in rec.payloads("error")[0]["error"]
    assert state.status == FAILED
    assert len(transport.urls) == 1


def test_sink_failure_aborts_download(make_client):
    sink = BrokenSink()
    client, transport, rec = make_client(ok(b64(b"A")), ok(b64(b"B")), sink=sink)
    state = client.download(1, "ignored.jpa")
    assert rec.names == ["step", "error"]
    assert "No space left" in rec.payloads("error")[0]["error"]
    assert sink.appends == 1
    assert len(transport.urls) == 1
    assert state.status == FAILED


def test_unwritable_destination_sends_nothing(make_client):
    client, transport, rec = make_client(sink=BrokenSink(fail_create=True))
    state = client.download(1, "ignored.jpa")
    assert rec.names == ["error"]
    assert transport.urls == []
    assert state.status == FAILED


def test_direct_download_appends_raw_parts(make_client, tmp_path):
    out = tmp_path / "site.zip"
    client, transport, rec = make_client(raw(b"\x00PK\x03\x04raw"), raw(b""))
    state = client.download_direct(9, out)

    assert out.read_bytes() == b"\x00PK\x03\x04raw"
    assert rec.names == ["step", "completed"]
    assert transport.methods == ["downloadDirect", "downloadDirect"]
    assert [c["data"] for c in transport.calls] == [
        {"backup_id": 9, "part_id": 1},
        {"backup_id": 9, "part_id": 2},
    ]
    assert state.requests == 2


def test_direct_download_http_error(make_client, tmp_path):
    client, _, rec = make_client(raw(b"first"), raw(b"Not Found", status_code=404))
    state = client.download_direct(9, tmp_path / "site.zip")
    assert rec.names == ["step", "error"]
    assert rec.payloads("error")[0]["status_code"] == 404
    assert state.status == FAILED


def test_get_log_writes_decoded_content(make_client, tmp_path):
    out = tmp_path / "backup.log"
    client, transport, rec = make_client(ok(b64(b"line 1\nline 2\n")))
    assert client.get_log("remote", out) is True
    assert out.read_bytes() == b"line 1\nline 2\n"
    assert transport.calls[0]["method"] == "getLog"
    assert transport.calls[0]["data"] == {"tag": "remote"}
    assert rec.names == ["completed"]


def test_get_log_empty_is_an_error(make_client, tmp_path):
    client, _, rec = make_client(ok(""))
    assert client.get_log("remote", tmp_path / "backup.log") is False
    assert rec.names == ["error"]
    assert rec.payloads("error")[0]["error"] == "Empty Log File"


@pytest.mark.parametrize("method", ["download", "download_direct"])
def test_transport_exception_is_reported(make_client, tmp_path, method):
    from akeeba_client.net import TransportResponse
    failure = TransportResponse(status_code=None, error=ConnectionError("refused"))
    client, _, rec = make_client(failure)
    state = getattr(client, method)(1, tmp_path / "x")
    assert rec.names == ["error"]
    assert "refused" in rec.payloads("error")[0]["error"]
    assert state.status == FAILED
