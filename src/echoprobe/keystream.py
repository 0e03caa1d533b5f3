"""Single-byte XOR keystream with xorshift(13, 7, 17) key rotation.

Both endpoints seed a :class:`KeyStream` identically and advance it once per
message at the same position in the exchange. There is no way to
resynchronise two streams that have drifted apart.
"""
from __future__ import annotations

from .constants import KEY_MASK, KEY_SEED

_XOR_TABLES = [bytes(b ^ k for b in range(256)) for k in range(256)]


def advance(key: int) -> int:
    """Return the key that follows ``key``."""
    key &= KEY_MASK
    key ^= (key << 13) & KEY_MASK
    key ^= key >> 7
    key ^= (key << 17) & KEY_MASK
    return key


def transform(data: bytes, key: int) -> bytes:
    """XOR every byte of ``data`` with the low byte of ``key``.

    Applying it twice with the same key gives back the input, so the same
    call both encrypts and decrypts.
    """
    return bytes(data).translate(_XOR_TABLES[key & 0xFF])


class KeyStream:
    def __init__(self, seed: int = KEY_SEED):
        self.current = seed & KEY_MASK
        self.messages = 0

    def step(self) -> int:
        """Advance the stream and return the key that was in effect."""
        used = self.current
        self.current = advance(used)
        self.messages += 1
        return used

    def apply(self, data: bytes) -> bytes:
        return transform(data, self.step())

    def __repr__(self) -> str:
        return f"KeyStream(current={self.current:#018x}, messages={self.messages})"
