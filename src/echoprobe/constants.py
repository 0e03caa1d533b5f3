from __future__ import annotations

LENGTH_FORMAT = "!i"  # signed 32-bit big-endian length prefix
LENGTH_FIELD_BYTES = 4
PHASE_END_LENGTH = 0
TERMINATE_LENGTH = -1
MAX_FRAME_LENGTH = 2**31 - 1

TERMINATION_MESSAGE = b"END_OF_MESSAGES"

KEY_SEED = 123456789
KEY_MASK = 0xFFFFFFFFFFFFFFFF

DEFAULT_PORT = 26881
DEFAULT_CONNECT_TIMEOUT_MS = 5000
DEFAULT_READ_TIMEOUT_MS = 10000
DEFAULT_MAX_DATAGRAM_SIZE = 1024
DEFAULT_MAX_FRAME_SIZE = 16 * 1024 * 1024

DEFAULT_LATENCY_SIZES = (8, 64, 512)
DEFAULT_THROUGHPUT_TRIALS = ((16384, 64), (4096, 256), (1024, 1024))

TIME_RESOLUTION_S = 0.001  # one millisecond tick
POLL_INTERVAL_S = 0.5
SHUTDOWN_GRACE_S = 2.0
SESSION_HISTORY = 256  # finished sessions kept by the tcp responder
