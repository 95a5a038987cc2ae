"""Web form MAC secret loading and disposal.

The secret is re-read from disk on every operation so keys can be rotated
without restarting the service. Every buffer the raw key passes through is
zero-filled before it is dropped, so partial copies don't linger in memory
for a core dump or heap inspection to find.

Wiping is best-effort: the interpreter (and ``hmac`` itself) may make copies
we never see. Only the buffers owned here are guaranteed to be cleared.
"""

import hashlib
import logging
import os
from pathlib import Path
from typing import IO, Any, Callable, Optional, TypeVar

from audirectdebit.errors import ConfigurationError, DestroyFailedError

logger = logging.getLogger(__name__)

R = TypeVar("R")

DEFAULT_SECRET_FILE = "/run/secrets/turnstile-audirectdebit-gw_webformmac_secret"
DEFAULT_ALGORITHM = "HmacSHA256"

SECRET_FILE_ENV = "WEBFORMMAC_SECRET"
ALGORITHM_ENV = "WEBFORMMAC_ALGORITHM"

# Standard Mac algorithm names → hashlib digest constructors
MAC_ALGORITHMS: dict[str, Callable[..., Any]] = {
    "HmacSHA1": hashlib.sha1,
    "HmacSHA224": hashlib.sha224,
    "HmacSHA256": hashlib.sha256,
    "HmacSHA384": hashlib.sha384,
    "HmacSHA512": hashlib.sha512,
    "HmacSHA3-256": hashlib.sha3_256,
    "HmacSHA3-384": hashlib.sha3_384,
    "HmacSHA3-512": hashlib.sha3_512,
}

ALLOC_STEP_SIZE = 32


def _new_buffer(size: int) -> bytearray:
    return bytearray(size)


def _wipe(buf: bytearray) -> None:
    buf[:] = bytes(len(buf))


def _secure_resize(old_buf: bytearray, new_size: int) -> bytearray:
    """Copy into a new buffer of ``new_size`` bytes, then zero the old one."""
    new_buf = _new_buffer(new_size)
    keep = min(len(old_buf), new_size)
    new_buf[:keep] = memoryview(old_buf)[:keep]
    _wipe(old_buf)
    return new_buf


def load_raw_secret(stream: IO[bytes]) -> bytearray:
    """
    Read a binary stream to EOF into a buffer that is the only surviving copy.

    No line or text parsing is done; the secret is arbitrary binary. Any
    intermediate buffer is zero-filled before being abandoned, including
    when the read fails.

    Args:
        stream: Binary stream supporting ``readinto`` (ideally unbuffered).

    Returns:
        Buffer holding exactly the bytes read. Empty if the stream was empty.
    """
    buf = _new_buffer(ALLOC_STEP_SIZE)
    length = 0
    try:
        while True:
            if length >= len(buf):
                buf = _secure_resize(buf, len(buf) + ALLOC_STEP_SIZE)
            with memoryview(buf)[length:] as view:
                n = stream.readinto(view)
            if not n:
                break
            length += n
        return _secure_resize(buf, length) if length < len(buf) else buf
    except BaseException:
        # Blank the partial secret before the error propagates
        _wipe(buf)
        raise


class SecretKey:
    """Raw MAC key material bound to a Mac algorithm name."""

    def __init__(self, material: bytearray, algorithm: str) -> None:
        self._material = material
        self.algorithm = algorithm
        self._destroyed = False

    @property
    def material(self) -> bytearray:
        if self._destroyed:
            raise ValueError("Secret key has been destroyed")
        return self._material

    @property
    def digest_method(self) -> Callable[..., Any]:
        return MAC_ALGORITHMS[self.algorithm]

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def destroy(self) -> None:
        """Zero-fill and release the key material."""
        _wipe(self._material)
        self._destroyed = True
        try:
            self._material.clear()
        except BufferError as exc:
            raise DestroyFailedError("Key material is still referenced") from exc

    def __repr__(self) -> str:
        state = "destroyed" if self._destroyed else f"{len(self._material)} bytes"
        return f"SecretKey(algorithm={self.algorithm!r}, {state})"


def destroy_secret(secret: Optional[SecretKey]) -> None:
    """Destroy a key, logging (never raising) if that fails."""
    if secret is None:
        return
    try:
        secret.destroy()
    except DestroyFailedError as exc:
        # The MAC operation has already completed; all we can do is note it.
        logger.debug("Unable to destroy secret: %s", exc)


class SecretStore:
    """Loads the web form MAC secret from a file on every use."""

    def __init__(self, secret_file: Path, algorithm: str = DEFAULT_ALGORITHM) -> None:
        if algorithm not in MAC_ALGORITHMS:
            raise ConfigurationError(
                f"Unsupported web form MAC algorithm '{algorithm}' "
                f"(expected one of: {', '.join(MAC_ALGORITHMS)})"
            )
        self.secret_file = Path(secret_file)
        self.algorithm = algorithm

    @classmethod
    def from_env(
        cls,
        default_file: str = DEFAULT_SECRET_FILE,
        default_algorithm: str = DEFAULT_ALGORITHM,
    ) -> "SecretStore":
        """Build a store from WEBFORMMAC_SECRET / WEBFORMMAC_ALGORITHM."""
        return cls(
            Path(os.environ.get(SECRET_FILE_ENV, default_file)),
            os.environ.get(ALGORITHM_ENV, default_algorithm),
        )

    def load(self) -> SecretKey:
        """
        Load the secret from disk.

        Returns:
            A fresh SecretKey; the caller must destroy it when done.

        Raises:
            ConfigurationError: If the file is missing, unreadable or empty.
        """
        try:
            # Unbuffered, so no intermediate read buffer holds a copy
            with open(self.secret_file, "rb", buffering=0) as f:
                raw = load_raw_secret(f)
        except OSError as exc:
            raise ConfigurationError(
                f"Unable to load web form MAC secret file: {self.secret_file}"
            ) from exc
        if not raw:
            raise ConfigurationError(f"Web form MAC secret file is empty: {self.secret_file}")
        return SecretKey(raw, self.algorithm)

    def with_secret(self, action: Callable[[SecretKey], R]) -> R:
        """
        Run ``action`` with a freshly loaded key, destroying it afterwards.

        The key is destroyed whether ``action`` returns or raises.
        """
        secret = self.load()
        try:
            return action(secret)
        finally:
            destroy_secret(secret)

    def __repr__(self) -> str:
        return f"SecretStore(secret_file={str(self.secret_file)!r}, algorithm={self.algorithm!r})"
