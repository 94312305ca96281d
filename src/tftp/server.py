from __future__ import annotations

import logging
import os
import threading

from .constants import DEFAULT_PORT, MAX_BLOCK_SIZE
from .errors import DecodeError, TftpError
from .handlers import handler_for
from .net import Address, Impairment, UdpEndpoint
from .packet import ReadRequest, WriteRequest, decode
from .session import TransferSession
from .timer import Timing

log = logging.getLogger(__name__)


class TftpServer:
    """Dispatches read and write requests arriving on one listening socket.

    Every accepted request gets a new socket dialed to the requester and a
    thread running its handler; the listener never waits on a transfer.
    """

    def __init__(
        self,
        root: str,
        host: str = "",
        port: int = DEFAULT_PORT,
        *,
        timing: Timing | None = None,
        max_block_size: int = MAX_BLOCK_SIZE,
        impairment: Impairment | None = None,
        reuse_port: bool = False,
    ):
        self.root = os.path.abspath(root)
        self.host = host
        self.port = port
        self.timing = timing or Timing()
        self.max_block_size = max_block_size
        self.impairment = impairment
        self.reuse_port = reuse_port

        self._listener: UdpEndpoint | None = None
        self._stopped = threading.Event()
        # requester address -> its handler thread; repeats of a request in flight are dropped
        self._active: dict[Address, threading.Thread] = {}
        self._lock = threading.Lock()

    @property
    def address(self) -> Address:
        if self._listener is None:
            raise RuntimeError("server is not bound")
        return self._listener.address

    def bind(self) -> Address:
        return self._open_listener().address

    def _open_listener(self) -> UdpEndpoint:
        if self._listener is None:
            self._listener = UdpEndpoint.listening(self.host, self.port, reuse_port=self.reuse_port)
            log.info("serving %s on %s:%d", self.root, *self._listener.address)
        return self._listener

    def serve_forever(self, poll_interval: float = 0.5) -> None:
        listener = self._open_listener()
        while not self._stopped.is_set():
            try:
                raw, addr = listener.recvfrom(poll_interval)
            except TimeoutError:
                continue
            except OSError:
                if self._stopped.is_set():
                    break
                raise
            self.dispatch(raw, addr)

    def dispatch(self, raw: bytes, addr: Address) -> threading.Thread | None:
        """Decode one datagram and start a handler thread for a valid request."""
        try:
            request = decode(raw)
        except DecodeError as e:
            log.warning("dropping bad datagram from %s: %s", addr, e)
            return None
        if not isinstance(request, (ReadRequest, WriteRequest)):
            log.warning("dropping %s from %s outside a transfer", request.opcode.name, addr)
            return None
        with self._lock:
            running = self._active.get(addr)
        if running is not None and running.is_alive():
            log.debug("dropping repeated %s from %s, transfer in progress", request.opcode.name, addr)
            return None

        log.info("%s %r from %s", request.opcode.name, request.filename, addr)
        try:
            endpoint = UdpEndpoint.connected(addr, self.host, impairment=self.impairment)
        except OSError as e:
            log.warning("cannot open transfer socket for %s: %s", addr, e)
            return None
        session = TransferSession(endpoint, self.timing)
        handler = handler_for(session, request, self.root, self.max_block_size)

        def run() -> None:
            try:
                handler.run()
            except (TftpError, OSError) as e:
                log.warning("%s %r with %s failed: %s", request.opcode.name, request.filename, addr, e)

        worker = threading.Thread(target=run, name=f"tftp-{addr[0]}:{addr[1]}", daemon=True)
        with self._lock:
            self._active = {a: w for a, w in self._active.items() if w.is_alive()}
            self._active[addr] = worker
        worker.start()
        return worker

    def join(self, timeout: float | None = None) -> None:
        """Wait for in-flight transfers to finish."""
        with self._lock:
            workers = list(self._active.values())
        for worker in workers:
            worker.join(timeout)

    def shutdown(self) -> None:
        self._stopped.set()
        if self._listener is not None:
            self._listener.close()
            self._listener = None

    def __enter__(self) -> "TftpServer":
        self.bind()
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()
