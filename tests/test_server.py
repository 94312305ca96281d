from __future__ import annotations

import io
import os
import random
import socket
import threading

import pytest

from tftp.client import TftpClient
from tftp.constants import ERR_ACCESS_VIOLATION, ERR_FILE_NOT_FOUND, ERR_ILLEGAL_OPERATION
from tftp.errors import NegotiationError, RemoteError
from tftp.net import Impairment
from tftp.packet import Ack, Data, ReadRequest, decode, encode
from tftp.timer import Timing


def make_client(server, **kwargs) -> TftpClient:
    kwargs.setdefault("timing", Timing(deadline_s=5.0, retransmit_s=0.2))
    return TftpClient(server.address, **kwargs)


def write_file(server, name: str, content: bytes) -> None:
    with open(os.path.join(server.root, name), "wb") as f:
        f.write(content)


def read_file(server, name: str) -> bytes:
    with open(os.path.join(server.root, name), "rb") as f:
        return f.read()


@pytest.mark.parametrize("size,blocks", [(0, 1), (1000, 2), (1024, 3), (5000, 10)])
def test_get(server, size, blocks):
    content = os.urandom(size)
    write_file(server, "f.bin", content)
    out = io.BytesIO()
    result = make_client(server).get_file("f.bin", out)
    assert out.getvalue() == content
    assert result.bytes_transferred == size
    assert result.blocks == blocks


@pytest.mark.parametrize("size", [0, 1, 511, 512, 1024, 3000])
def test_put(server, size):
    content = os.urandom(size)
    result = make_client(server).put_file("up.bin", io.BytesIO(content))
    server.join(2.0)
    assert read_file(server, "up.bin") == content
    assert result.blocks == size // 512 + 1


def test_blksize_negotiation_both_directions(server):
    content = os.urandom(3000)
    client = make_client(server)
    client.put_file("big.bin", io.BytesIO(content), blksize=1024)
    server.join(2.0)
    out = io.BytesIO()
    result = client.get_file("big.bin", out, blksize=1024)
    assert out.getvalue() == content
    assert result.blocks == 3


def test_clamped_blksize_fails_on_client(server_factory):
    server = server_factory(max_block_size=512)
    write_file(server, "f", b"x" * 100)
    with pytest.raises(NegotiationError):
        make_client(server).get_file("f", io.BytesIO(), blksize=1024)
    with pytest.raises(NegotiationError):
        make_client(server).put_file("g", io.BytesIO(b"x"), blksize=1024)


def test_missing_file(server):
    with pytest.raises(RemoteError) as exc:
        make_client(server).get_file("missing", io.BytesIO())
    assert exc.value.code == ERR_FILE_NOT_FOUND


def test_path_traversal_is_refused(server):
    with pytest.raises(RemoteError) as exc:
        make_client(server).get_file("../../etc/passwd", io.BytesIO())
    assert exc.value.code == ERR_ACCESS_VIOLATION


def test_unsupported_mode(server):
    write_file(server, "f", b"x")
    with pytest.raises(RemoteError) as exc:
        make_client(server, mode="mail").get_file("f", io.BytesIO())
    assert exc.value.code == ERR_ILLEGAL_OPERATION


def test_listener_survives_bad_datagrams(server):
    write_file(server, "f", b"still here")
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        for junk in (b"", b"\x00", b"\x00\x09xx", b"\x00\x04\x00\x01", b"\x00\x01nofields"):
            s.sendto(junk, server.address)
    out = io.BytesIO()
    make_client(server).get_file("f", out)
    assert out.getvalue() == b"still here"


def test_concurrent_transfers_are_isolated(server):
    files = {f"f{i}": os.urandom(2000 + i * 100) for i in range(4)}
    for name, content in files.items():
        write_file(server, name, content)

    results = {}

    def fetch(name):
        out = io.BytesIO()
        make_client(server).get_file(name, out)
        results[name] = out.getvalue()

    threads = [threading.Thread(target=fetch, args=(n,)) for n in files]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10.0)
    assert results == files


def test_get_survives_packet_loss(server_factory):
    random.seed(1350)
    server = server_factory(
        timing=Timing(deadline_s=5.0, retransmit_s=0.05),
        impairment=Impairment(loss_rate=0.2),
    )
    content = os.urandom(8000)
    write_file(server, "lossy", content)
    out = io.BytesIO()
    result = make_client(server, timing=Timing(deadline_s=5.0, retransmit_s=0.05)).get_file("lossy", out)
    assert out.getvalue() == content
    assert result.bytes_transferred == 8000


def test_put_survives_packet_loss(server_factory):
    random.seed(1350)
    server = server_factory(
        timing=Timing(deadline_s=5.0, retransmit_s=0.05),
        impairment=Impairment(loss_rate=0.2),
    )
    content = os.urandom(8000)
    result = make_client(server, timing=Timing(deadline_s=5.0, retransmit_s=0.05)).put_file(
        "lossy", io.BytesIO(content)
    )
    assert result.bytes_transferred == 8000
    assert read_file(server, "lossy") == content


def test_block_numbers_wrap_past_65535(server):
    # 65536 full blocks of 8 bytes and a 3 byte tail: block 65536 goes out as 0
    content = os.urandom(65536 * 8 + 3)
    client = make_client(server)

    put = client.put_file("wrap.bin", io.BytesIO(content), blksize=8)
    assert put.blocks == 65537
    assert read_file(server, "wrap.bin") == content

    out = io.BytesIO()
    got = client.get_file("wrap.bin", out, blksize=8)
    assert got.blocks == 65537
    assert out.getvalue() == content


def test_repeated_request_is_dropped_while_transfer_runs(server):
    write_file(server, "f", b"once")
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        s.bind(("127.0.0.1", 0))
        s.settimeout(5.0)
        addr = s.getsockname()
        request = encode(ReadRequest("f"))

        worker = server.dispatch(request, addr)
        assert worker is not None
        assert server.dispatch(request, addr) is None

        raw, handler_addr = s.recvfrom(65535)
        assert decode(raw) == Data(1, b"once")
        s.sendto(encode(Ack(1)), handler_addr)
        worker.join(5.0)
        assert not worker.is_alive()

        s.settimeout(0.3)
        with pytest.raises(TimeoutError):
            s.recvfrom(65535)
