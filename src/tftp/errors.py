from __future__ import annotations

from .constants import (
    ERR_ACCESS_VIOLATION,
    ERR_FILE_NOT_FOUND,
    ERR_ILLEGAL_OPERATION,
    ERR_NOT_DEFINED,
    ERR_OPTION_NEGOTIATION,
)


class TftpError(Exception):
    """Base class for transfer failures.

    ``code`` is the TFTP error code reported to the peer when the failure
    is local to this side.
    """

    code = ERR_NOT_DEFINED


class DecodeError(TftpError, ValueError):
    code = ERR_ILLEGAL_OPERATION


class MalformedPacket(DecodeError):
    pass


class UnknownOpcode(DecodeError):
    pass


class ProtocolError(TftpError):
    code = ERR_ILLEGAL_OPERATION


class TransferTimeout(TftpError):
    pass


class NegotiationError(TftpError):
    code = ERR_OPTION_NEGOTIATION


class FileNotFound(TftpError):
    code = ERR_FILE_NOT_FOUND


class AccessViolation(TftpError):
    code = ERR_ACCESS_VIOLATION


class RemoteError(TftpError):
    """The peer aborted the transfer with an ERROR packet."""

    def __init__(self, code: int, message: str):
        super().__init__(f"remote error {code}: {message}")
        self.code = code
        self.message = message
