"""Atomic secret-file writer used to provision web form MAC keys."""

import os
import secrets
from pathlib import Path

DEFAULT_SECRET_BYTES = 32


def generate_secret(nbytes: int = DEFAULT_SECRET_BYTES) -> bytearray:
    """Generate a cryptographically secure random MAC key."""
    return bytearray(secrets.token_bytes(nbytes))


def write_secret(path: Path, secret: bytearray) -> None:
    """
    Atomically write raw secret bytes to ``path`` with owner-only permissions.

    Uses a temp-file + os.replace so a crash mid-write never leaves a
    half-written key where the service would load it. The file is created
    with mode 0600 before any key bytes are written; a temp file left behind
    by an earlier crash is removed first so its permissions are never reused.

    Args:
        path: Destination secret file.
        secret: Raw key material (written verbatim, no encoding).
    """
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.unlink(missing_ok=True)
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb", buffering=0) as f:
            os.fchmod(f.fileno(), 0o600)
            with memoryview(secret) as view:
                written = 0
                # Unbuffered writes may be short
                while written < len(view):
                    written += f.write(view[written:])
        os.replace(tmp, path)
    except Exception:
        # Clean up temp file on failure
        if tmp.exists():
            tmp.unlink(missing_ok=True)
        raise
