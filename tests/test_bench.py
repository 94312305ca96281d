from __future__ import annotations

import os

from tftp.bench import run_benchmark
from tftp.timer import Timing

TIMING = Timing(deadline_s=5.0, retransmit_s=0.2)


def test_bench_reads(server):
    with open(os.path.join(server.root, "testfile"), "wb") as f:
        f.write(b"r" * 700)
    r = run_benchmark(server.address, threads=2, loops=3, filename="testfile", timing=TIMING)
    assert r.transfers == 6
    assert r.bytes_transferred == 4200
    assert r.bandwidth_bps > 0


def test_bench_uploads(server):
    r = run_benchmark(server.address, threads=2, loops=2, filename="file", upload=600, block_size=256, timing=TIMING)
    server.join(2.0)
    assert r.transfers == 4
    assert r.bytes_transferred == 2400
    names = sorted(os.listdir(server.root))
    assert names == ["file0-0", "file0-1", "file1-0", "file1-1"]
    for name in names:
        assert os.path.getsize(os.path.join(server.root, name)) == 600
