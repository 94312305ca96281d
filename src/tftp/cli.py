from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import sys

from .bench import run_benchmark
from .client import TftpClient
from .constants import DEFAULT_DEADLINE_S, DEFAULT_PORT, DEFAULT_RETRANSMIT_S, MAX_BLOCK_SIZE
from .errors import TftpError
from .net import Address, Impairment
from .server import TftpServer
from .session import TransferResult
from .timer import Timing


def parse_address(value: str) -> Address:
    host, sep, port = value.rpartition(":")
    if not sep:
        return value, DEFAULT_PORT
    return host or "127.0.0.1", int(port)


def _timing(args: argparse.Namespace) -> Timing:
    return Timing(deadline_s=args.deadline, retransmit_s=args.retransmit)


def _impairment(args: argparse.Namespace) -> Impairment:
    return Impairment(args.loss_rate, args.delay_ms)


def _emit(args: argparse.Namespace, payload: dict) -> None:
    print(json.dumps(payload, indent=2) if args.json else payload)


def _transfer_payload(role: str, r: TransferResult) -> dict:
    return {
        "role": role,
        "bytes": r.bytes_transferred,
        "blocks": r.blocks,
        "retransmits": r.retransmits,
        "seconds": r.duration_s,
        "mbps": r.throughput_mbps,
    }


def cmd_serve(args: argparse.Namespace) -> int:
    server = TftpServer(
        args.dir,
        args.address,
        args.port,
        timing=_timing(args),
        max_block_size=args.max_blocksize,
        impairment=_impairment(args),
        reuse_port=args.reuseport,
    )
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.shutdown()
    return 0


def cmd_get(args: argparse.Namespace) -> int:
    client = TftpClient(parse_address(args.serv), timing=_timing(args), impairment=_impairment(args))
    out_path = args.out or os.path.basename(args.file)
    out = open(out_path, "wb")
    try:
        with out:
            r = client.get_file(args.file, out, blksize=args.blocksize)
    except BaseException:
        # a failed download leaves no partial file behind
        os.remove(out_path)
        raise
    _emit(args, _transfer_payload("get", r))
    return 0


def cmd_put(args: argparse.Namespace) -> int:
    client = TftpClient(parse_address(args.serv), timing=_timing(args), impairment=_impairment(args))
    with open(args.file, "rb") as f:
        r = client.put_file(args.name or os.path.basename(args.file), f, blksize=args.blocksize)
    _emit(args, _transfer_payload("put", r))
    return 0


def cmd_bench(args: argparse.Namespace) -> int:
    r = run_benchmark(
        parse_address(args.serv),
        procs=args.procs,
        threads=args.threads,
        loops=args.loops,
        filename=args.file,
        upload=args.upload if args.upload > 0 else None,
        block_size=args.blocksize,
        timing=_timing(args),
    )
    _emit(args, {"role": "bench", **dataclasses.asdict(r), "bandwidth_bps": r.bandwidth_bps})
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tftp", description="Lockstep TFTP client and server over UDP.")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_common(x: argparse.ArgumentParser) -> None:
        x.add_argument("--deadline", type=float, default=DEFAULT_DEADLINE_S, help="total seconds to wait per block")
        x.add_argument("--retransmit", type=float, default=DEFAULT_RETRANSMIT_S, help="seconds between resends")
        x.add_argument("--loss-rate", type=float, default=0.0, help="simulate packet loss")
        x.add_argument("--delay-ms", type=int, default=0, help="simulate per-packet delay")
        x.add_argument("--json", action="store_true")

    serve = sub.add_parser("serve", help="serve a directory")
    add_common(serve)
    serve.add_argument("--dir", default=os.getcwd(), help="directory to serve files from")
    serve.add_argument("--port", type=int, default=DEFAULT_PORT)
    serve.add_argument("--address", default="", help="address to listen on")
    serve.add_argument("--max-blocksize", type=int, default=MAX_BLOCK_SIZE)
    serve.add_argument("--reuseport", action="store_true", help="set SO_REUSEPORT on the listening socket")
    serve.set_defaults(func=cmd_serve)

    get = sub.add_parser("get", help="download a file")
    add_common(get)
    get.add_argument("--serv", default=f"127.0.0.1:{DEFAULT_PORT}")
    get.add_argument("--blocksize", type=int, default=None)
    get.add_argument("--out", default=None)
    get.add_argument("file")
    get.set_defaults(func=cmd_get)

    put = sub.add_parser("put", help="upload a file")
    add_common(put)
    put.add_argument("--serv", default=f"127.0.0.1:{DEFAULT_PORT}")
    put.add_argument("--blocksize", type=int, default=None)
    put.add_argument("--name", default=None, help="remote filename")
    put.add_argument("file")
    put.set_defaults(func=cmd_put)

    bench = sub.add_parser("bench", help="benchmark a server with concurrent clients")
    add_common(bench)
    bench.add_argument("--procs", type=int, default=1, help="number of processes")
    bench.add_argument("--threads", type=int, default=1, help="clients per process")
    bench.add_argument("--loops", type=int, default=1, help="transfers per client")
    bench.add_argument("--serv", default=f"127.0.0.1:{DEFAULT_PORT}")
    bench.add_argument("--file", default="testfile", help="file to read, or upload name prefix")
    bench.add_argument("--upload", type=int, default=-1, help="bytes per upload; reads when <= 0")
    bench.add_argument("--blocksize", type=int, default=None)
    bench.set_defaults(func=cmd_bench)

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s [%(levelname)s] %(message)s")
    try:
        return int(args.func(args))
    except (TftpError, OSError) as e:
        logging.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
