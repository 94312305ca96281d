"""Lockstep TFTP over UDP.

The package keeps packet framing, the retransmission timer and the client
and server state machines in separate modules so that each can be tested
on its own against loopback sockets.
"""

from .client import TftpClient
from .server import TftpServer
from .session import TransferResult
from .timer import Timing

__all__ = ["TftpClient", "TftpServer", "Timing", "TransferResult"]
