from __future__ import annotations

import logging
import os
from typing import cast

from .constants import MAX_BLOCK_SIZE, MIN_BLOCK_SIZE, MODES, OPT_BLKSIZE
from .errors import AccessViolation, FileNotFound, NegotiationError, ProtocolError, TftpError
from .packet import Ack, Data, OptionAck, Packet, ReadRequest, WriteRequest, encode
from .session import TransferResult, TransferSession, next_block

log = logging.getLogger(__name__)


def resolve_path(root: str, filename: str) -> str:
    """Map a requested filename to a path that stays inside ``root``."""
    base = os.path.realpath(root)
    path = os.path.realpath(os.path.join(base, filename.lstrip("/")))
    if os.path.commonpath([base, path]) != base or path == base:
        raise AccessViolation(f"{filename!r} is outside the served directory")
    return path


class _Handler:
    def __init__(
        self,
        session: TransferSession,
        request: ReadRequest | WriteRequest,
        root: str,
        max_block_size: int = MAX_BLOCK_SIZE,
    ):
        self.session = session
        self.request = request
        self.root = root
        self.max_block_size = max_block_size
        # (block, encoded ACK) once the final DATA has been acknowledged
        self.final_ack: tuple[int, bytes] | None = None

    def run(self) -> TransferResult:
        """Serve the transfer. The session is closed on every exit path."""
        with self.session as session:
            try:
                if self.request.mode not in MODES:
                    raise ProtocolError(f"unsupported mode {self.request.mode!r}")
                self.transfer(resolve_path(self.root, self.request.filename))
            except TftpError as e:
                session.report(e)
                raise
            result = session.result()
            if self.final_ack is not None:
                session.linger(*self.final_ack)
        log.info(
            "%s %r with %s done: %d bytes, %d blocks, %d retransmits",
            self.request.opcode.name,
            self.request.filename,
            session.peer,
            result.bytes_transferred,
            result.blocks,
            result.retransmits,
        )
        return result

    def transfer(self, path: str) -> None:
        raise NotImplementedError

    def negotiate(self) -> OptionAck | None:
        """Settle the block size, returning the OACK to send if any."""
        try:
            requested = self.request.blksize
        except ValueError:
            raise NegotiationError(f"invalid blksize {self.request.options[OPT_BLKSIZE]!r}") from None
        if requested is None:
            return None
        if requested < MIN_BLOCK_SIZE:
            raise NegotiationError(f"blksize {requested} below {MIN_BLOCK_SIZE}")

        self.session.block_size = min(requested, self.max_block_size)
        return OptionAck({OPT_BLKSIZE: str(self.session.block_size)})


class ReadHandler(_Handler):
    """Streams a file to the client, one acknowledged block at a time."""

    def transfer(self, path: str) -> None:
        try:
            f = open(path, "rb")
        except FileNotFoundError:
            raise FileNotFound(f"{self.request.filename!r} not found") from None
        except (PermissionError, IsADirectoryError):
            raise AccessViolation(f"cannot read {self.request.filename!r}") from None

        session = self.session
        with f:
            oack = self.negotiate()
            if oack is not None:
                session.timer.exchange(encode(oack), self._expect_ack(0))

            session.block = 1
            while True:
                chunk = f.read(session.block_size)
                session.timer.exchange(encode(Data(session.block, chunk)), self._expect_ack(session.block))
                session.bytes_transferred += len(chunk)
                session.blocks += 1
                if len(chunk) < session.block_size:
                    break
                session.block = next_block(session.block)

    @staticmethod
    def _expect_ack(block: int):
        def match(packet: Packet) -> bool:
            return isinstance(packet, Ack) and packet.block == block

        return match


class WriteHandler(_Handler):
    """Receives a file from the client, acknowledging every block."""

    def transfer(self, path: str) -> None:
        try:
            f = open(path, "wb")
        except (PermissionError, IsADirectoryError, FileNotFoundError):
            raise AccessViolation(f"cannot write {self.request.filename!r}") from None

        session = self.session
        with f:
            oack = self.negotiate()
            reply = encode(oack if oack is not None else Ack(0))
            session.block = 1
            while True:
                data = cast(Data, session.timer.exchange(reply, self._expect_data(session.block)))
                if len(data.payload) > session.block_size:
                    raise ProtocolError(
                        f"DATA {data.block} carries {len(data.payload)} bytes, "
                        f"block size is {session.block_size}"
                    )
                f.write(data.payload)
                session.bytes_transferred += len(data.payload)
                session.blocks += 1

                reply = encode(Ack(data.block))
                if len(data.payload) < session.block_size:
                    break
                session.block = next_block(session.block)

        # the file is closed before the client can see the final ACK
        session.endpoint.send(reply)
        self.final_ack = (session.block, reply)

    @staticmethod
    def _expect_data(block: int):
        def match(packet: Packet) -> bool:
            return isinstance(packet, Data) and packet.block == block

        return match


def handler_for(
    session: TransferSession,
    request: ReadRequest | WriteRequest,
    root: str,
    max_block_size: int = MAX_BLOCK_SIZE,
) -> _Handler:
    cls = ReadHandler if isinstance(request, ReadRequest) else WriteHandler
    return cls(session, request, root, max_block_size)

