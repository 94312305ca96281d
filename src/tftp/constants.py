from __future__ import annotations

# opcodes (RFC 1350, RFC 2347)
RRQ = 1
WRQ = 2
DATA = 3
ACK = 4
ERROR = 5
OACK = 6

# error codes
ERR_NOT_DEFINED = 0
ERR_FILE_NOT_FOUND = 1
ERR_ACCESS_VIOLATION = 2
ERR_DISK_FULL = 3
ERR_ILLEGAL_OPERATION = 4
ERR_UNKNOWN_TID = 5
ERR_FILE_EXISTS = 6
ERR_NO_SUCH_USER = 7
ERR_OPTION_NEGOTIATION = 8

OPT_BLKSIZE = "blksize"
MODES = ("octet", "netascii")

DEFAULT_BLOCK_SIZE = 512
MIN_BLOCK_SIZE = 8
MAX_BLOCK_SIZE = 65464
BLOCK_MODULUS = 1 << 16

DEFAULT_PORT = 6900
DEFAULT_DEADLINE_S = 20.0
DEFAULT_RETRANSMIT_S = 5.0
RECV_BUFSIZE = 65535
