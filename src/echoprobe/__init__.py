"""Encrypted echo probe for TCP and UDP.

Measures round-trip latency and throughput against an echo responder, with
payloads masked by a rotating single-byte XOR keystream. Framing, key
rotation, the client measurement loops and the server echo loops live in
separate modules so each can be tested on its own.
"""

__all__ = []
