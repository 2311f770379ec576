"""Content materialization and hashing."""

import hashlib
from typing import Any, Optional

from .exceptions import UnsupportedInputKind

CHECKSUM_ALGORITHM = "sha256"
CHECKSUM_LENGTH = 64
_CHUNK_SIZE = 64 * 1024


def materialize(content: Any, limit: Optional[int] = None) -> bytes:
    """Return the complete payload as bytes.

    Accepts bytes-like objects or a readable binary stream. A stream is read
    to the end, or to ``limit + 1`` bytes when a limit is given so that an
    oversized stream is detectable without buffering all of it.
    """
    if isinstance(content, bytes):
        return content
    if isinstance(content, (bytearray, memoryview)):
        return bytes(content)
    read = getattr(content, "read", None)
    if read is None or isinstance(content, str):
        raise UnsupportedInputKind(
            "content must be bytes or a binary stream",
            {"type": type(content).__name__},
        )

    budget = None if limit is None else limit + 1
    chunks = []
    consumed = 0
    while budget is None or consumed < budget:
        size = _CHUNK_SIZE if budget is None else min(_CHUNK_SIZE, budget - consumed)
        chunk = read(size)
        if not chunk:
            break
        if not isinstance(chunk, (bytes, bytearray)):
            raise UnsupportedInputKind(
                "stream must yield bytes",
                {"type": type(chunk).__name__},
            )
        chunks.append(bytes(chunk))
        consumed += len(chunk)
    return b"".join(chunks)


class ChecksumComputer:
    """SHA-256 over the entire payload, hex-encoded."""

    algorithm = CHECKSUM_ALGORITHM

    def compute(self, content: Any) -> str:
        digest = hashlib.new(self.algorithm)
        digest.update(materialize(content))
        return digest.hexdigest()
