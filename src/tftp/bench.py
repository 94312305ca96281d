from __future__ import annotations

import io
import time
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from .client import TftpClient
from .net import Address
from .timer import Timing


@dataclass(frozen=True, slots=True)
class BenchmarkResult:
    transfers: int
    bytes_transferred: int
    duration_s: float
    retransmits: int

    @property
    def bandwidth_bps(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return self.bytes_transferred / self.duration_s


class _Discard(io.RawIOBase):
    def writable(self) -> bool:
        return True

    def write(self, b) -> int:
        return len(b)


def _worker(
    server: Address,
    worker_id: int,
    loops: int,
    filename: str,
    upload: Optional[int],
    block_size: Optional[int],
    timing: Timing,
) -> tuple[int, int, int]:
    client = TftpClient(server, timing=timing)
    transfers = nbytes = retransmits = 0
    for i in range(loops):
        if upload is not None:
            payload = io.BytesIO(b"A" * upload)
            r = client.put_file(f"{filename}{worker_id}-{i}", payload, blksize=block_size)
        else:
            r = client.get_file(filename, _Discard(), blksize=block_size)
        transfers += 1
        nbytes += r.bytes_transferred
        retransmits += r.retransmits
    return transfers, nbytes, retransmits


def _run_threads(
    server: Address,
    proc_id: int,
    threads: int,
    loops: int,
    filename: str,
    upload: Optional[int],
    block_size: Optional[int],
    timing: Timing,
) -> tuple[int, int, int]:
    with ThreadPoolExecutor(max_workers=threads) as pool:
        futures = [
            pool.submit(_worker, server, proc_id * threads + t, loops, filename, upload, block_size, timing)
            for t in range(threads)
        ]
        totals = [f.result() for f in futures]
    return tuple(sum(col) for col in zip(*totals))  # type: ignore[return-value]


def run_benchmark(
    server: Address,
    *,
    procs: int = 1,
    threads: int = 1,
    loops: int = 1,
    filename: str = "testfile",
    upload: Optional[int] = None,
    block_size: Optional[int] = None,
    timing: Timing | None = None,
) -> BenchmarkResult:
    """Drive ``procs * threads`` concurrent clients, ``loops`` transfers each.

    With ``upload`` set every transfer writes that many bytes to a file
    named ``<filename><worker>-<loop>``; otherwise every transfer reads
    ``filename``.
    """
    timing = timing or Timing()
    args = (threads, loops, filename, upload, block_size, timing)

    start = time.monotonic()
    if procs <= 1:
        transfers, nbytes, retransmits = _run_threads(server, 0, *args)
    else:
        with ProcessPoolExecutor(max_workers=procs) as pool:
            futures = [pool.submit(_run_threads, server, p, *args) for p in range(procs)]
            results = [f.result() for f in futures]
        transfers, nbytes, retransmits = (sum(col) for col in zip(*results))
    duration_s = max(0.001, time.monotonic() - start)

    return BenchmarkResult(
        transfers=transfers,
        bytes_transferred=nbytes,
        duration_s=duration_s,
        retransmits=retransmits,
    )
