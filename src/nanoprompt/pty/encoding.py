"""Transport encoding for PTY output chunks.

Raw terminal output may contain control bytes and partial UTF-8 sequences,
so chunks cross the event boundary as standard base64 text (RFC 4648
alphabet, ``=`` padding). Any standard decoder on the receiving side can
reverse it.
"""

from __future__ import annotations

import base64


def encode_output(data: bytes) -> str:
    """Encode a raw output chunk as base64 text."""
    return base64.b64encode(data).decode("ascii")


def decode_output(text: str) -> bytes:
    """Decode a payload produced by :func:`encode_output`."""
    return base64.b64decode(text, validate=True)
