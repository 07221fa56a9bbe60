"""
Password-derived encryption session (PBKDF2 + AES-256-CBC).

The key is derived on unlock and zeroed on lock. There is no way to tell a
wrong password from a right one at derivation time: callers verify by trying
to decrypt a blob that is already on disk (see `KeyManager.test_password`).

Envelopes are ``ivHex:cipherHex`` where cipherHex is the AES ciphertext
followed by a 32-byte HMAC-SHA256 tag. Untagged envelopes (plain
``iv:ciphertext`` as written by earlier deployments) fail authentication, so
a data directory written that way cannot be unlocked or read: it has to be
re-encrypted before it is moved under this code.
"""

from __future__ import annotations

import json
import os
import threading
from typing import Any, Iterable, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptionError, LockedError
from .log import get_logger


logger = get_logger("crypto")

# Application-wide pepper used to derive per-identity salts
APP_PEPPER = b"wingman-global-pepper-v2"
SALT_ITERATIONS = 10_000
KEY_ITERATIONS = 100_000
KEY_LENGTH_BYTES = 32  # AES-256

IV_LENGTH_BYTES = 16  # AES block size
MAC_LENGTH_BYTES = 32  # HMAC-SHA256 tag appended to the ciphertext
_MAC_KEY_LABEL = b"wingman-envelope-mac-v1"


def _pbkdf2(secret: bytes, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret)


def derive_identity_salt(identity: str) -> bytes:
    """Derive the 32-byte salt for `identity` from the application pepper."""
    return _pbkdf2(identity.encode("utf-8"), APP_PEPPER, SALT_ITERATIONS)


def derive_key_bytes(password: str, identity: str) -> bytes:
    """Two-pass derivation: identity -> salt, then password + salt -> key."""
    salt = derive_identity_salt(identity)
    return _pbkdf2(password.encode("utf-8"), salt, KEY_ITERATIONS)


def _mac(key: bytes, iv: bytes, ciphertext: bytes) -> hmac.HMAC:
    mac_key = hmac.HMAC(key, hashes.SHA256())
    mac_key.update(_MAC_KEY_LABEL)
    h = hmac.HMAC(mac_key.finalize(), hashes.SHA256())
    h.update(iv)
    h.update(ciphertext)
    return h


def _encrypt_with(key: bytes, data: bytes) -> str:
    iv = os.urandom(IV_LENGTH_BYTES)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(data) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    tag = _mac(key, iv, ciphertext).finalize()
    return iv.hex() + ":" + (ciphertext + tag).hex()


def _decrypt_with(key: bytes, payload: str) -> bytes:
    try:
        parts = payload.strip().split(":")
        if len(parts) != 2:
            raise ValueError("Invalid encrypted data format")
        iv = bytes.fromhex(parts[0])
        body = bytes.fromhex(parts[1])
        if len(iv) != IV_LENGTH_BYTES or len(body) <= MAC_LENGTH_BYTES:
            raise ValueError("Invalid encrypted data length")
        ciphertext, tag = body[:-MAC_LENGTH_BYTES], body[-MAC_LENGTH_BYTES:]
        _mac(key, iv, ciphertext).verify(tag)

        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except (ValueError, TypeError, AttributeError, InvalidSignature) as ex:
        raise DecryptionError() from ex


class KeyManager:
    """
    Holds the working encryption key for this process.

    - Locked until `derive_key` runs; `clear_key` zeroes the key and locks again.
    - Exactly one key is active at a time, regardless of which identity
      unlocked it. Share one instance between every store that persists data.
    - Thread-safe: key reads are synchronized against derive/clear.
    """

    def __init__(self) -> None:
        self._key: Optional[bytearray] = None
        self._lock = threading.RLock()

    # -------- Session state --------
    def derive_key(self, password: str, identity: str = "default") -> None:
        """Derive the working key and unlock. Always succeeds."""
        # KDF work runs outside the lock; only the swap is synchronized
        key = bytearray(derive_key_bytes(password, identity))
        with self._lock:
            self._zero_locked()
            self._key = key
        logger.debug("Encryption key derived")

    def clear_key(self) -> None:
        """Overwrite the key bytes with zeros and return to the locked state."""
        with self._lock:
            self._zero_locked()
        logger.debug("Encryption key cleared")

    lock = clear_key

    def is_unlocked(self) -> bool:
        with self._lock:
            return self._key is not None

    def _zero_locked(self) -> None:
        if self._key is not None:
            for i in range(len(self._key)):
                self._key[i] = 0
            self._key = None

    def _current_key(self) -> bytes:
        with self._lock:
            if self._key is None:
                raise LockedError("System is locked. Unlock first.")
            return bytes(self._key)

    # -------- Envelope operations --------
    def encrypt(self, data: bytes | str) -> str:
        """Encrypt bytes (or UTF-8 text) into an ``ivHex:cipherHex`` envelope."""
        raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        return _encrypt_with(self._current_key(), raw)

    def decrypt(self, payload: str) -> bytes:
        """Decrypt an ``ivHex:cipherHex`` envelope.

        Raises:
        - LockedError if no key is held.
        - DecryptionError for malformed input, a wrong key or corrupted data.
        """
        key = self._current_key()
        if not isinstance(payload, str):
            raise DecryptionError()
        return _decrypt_with(key, payload)

    def encrypt_object(self, data: Any) -> str:
        """Encrypt a JSON-serializable object."""
        return self.encrypt(json.dumps(data, separators=(",", ":")))

    def decrypt_object(self, payload: str) -> Any:
        """Decrypt an envelope and parse the JSON inside it."""
        raw = self.decrypt(payload)
        try:
            return json.loads(raw.decode("utf-8"))
        except ValueError as ex:
            raise DecryptionError() from ex

    def test_password(
        self,
        password: str,
        payloads: Union[str, Iterable[str]],
        identity: str = "default",
    ) -> bool:
        """Derive a candidate key from `password` once and try it on each payload.

        `payloads` is a single envelope or an iterable of them, consumed lazily.
        The first envelope that authenticates makes the candidate the working
        key. If none does, False is returned and the current session (locked
        or unlocked) is left as it was.
        """
        if isinstance(payloads, str):
            payloads = (payloads,)
        candidate = bytearray(derive_key_bytes(password, identity))
        key = bytes(candidate)
        rejected = 0
        for payload in payloads:
            try:
                _decrypt_with(key, payload)
            except DecryptionError:
                rejected += 1
                continue
            with self._lock:
                self._zero_locked()
                self._key = candidate
            if rejected:
                logger.info(f"Key verified after skipping {rejected} envelopes that did not authenticate")
            logger.debug("Encryption key verified and installed")
            return True

        for i in range(len(candidate)):
            candidate[i] = 0
        logger.debug(f"Candidate key rejected by {rejected} envelopes")
        return False
