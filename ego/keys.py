"""
RSA signing key(s) for session tokens: current + optional previous (rotation).
Load from file or generate and persist; no key material in code.
The key is loaded once, on first use, and served from memory for the life of the process.
"""
import base64
import hashlib
import logging
import threading
from pathlib import Path

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey, generate_private_key

from ego.errors import InternalServerError

logger = logging.getLogger(__name__)

_KEY_BITS = 2048


def _generate_key() -> RSAPrivateKey:
    return generate_private_key(65537, _KEY_BITS, default_backend())


def _serialize_private(key: RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _deserialize_private(pem: bytes) -> RSAPrivateKey:
    return serialization.load_pem_private_key(pem, password=None, backend=default_backend())


def load_or_create_signing_key(path: str) -> RSAPrivateKey:
    """Load RSA private key from path, or generate and save it."""
    p = Path(path)
    if p.exists():
        try:
            return _deserialize_private(p.read_bytes())
        except (ValueError, TypeError) as e:
            # An unreadable key file must not be silently replaced
            raise InternalServerError(f"Signing key at {path} could not be loaded: {e}") from e
    key = _generate_key()
    try:
        p.write_bytes(_serialize_private(key))
        logger.info("Generated and saved signing key to %s", path)
    except OSError as e:
        logger.warning("Could not save signing key to %s: %s", path, e)
    return key


def public_key_to_jwk(public_key: RSAPublicKey, kid: str) -> dict:
    """Export RSA public key to JWK with given kid."""
    numbers = public_key.public_numbers()
    n_b64 = base64.urlsafe_b64encode(numbers.n.to_bytes((numbers.n.bit_length() + 7) // 8, "big")).rstrip(b"=").decode("ascii")
    e_b64 = base64.urlsafe_b64encode(numbers.e.to_bytes((numbers.e.bit_length() + 7) // 8, "big")).rstrip(b"=").decode("ascii")
    return {
        "kty": "RSA",
        "kid": kid,
        "alg": "RS256",
        "use": "sig",
        "n": n_b64,
        "e": e_b64,
    }


def key_id(public_key: RSAPublicKey) -> str:
    """kid derived from the public key, so a key keeps its kid when it moves from current to previous."""
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(der).hexdigest()[:16]


class SigningKeyProvider:
    """
    Process-wide signing key holder. Construct once at startup and pass it to the token services.
    Either give key paths (loaded lazily, once) or an already-built private key (tests).
    """

    def __init__(
        self,
        path: str | None = None,
        previous_path: str | None = None,
        private_key: RSAPrivateKey | None = None,
    ):
        self._path = path
        self._previous_path = previous_path
        self._lock = threading.Lock()
        self._current: RSAPrivateKey | None = None
        self._current_kid: str | None = None
        self._keys_by_kid: dict[str, RSAPrivateKey] = {}
        if private_key is not None:
            self._install_current(private_key)

    def _install_current(self, key: RSAPrivateKey) -> None:
        self._current_kid = key_id(key.public_key())
        self._keys_by_kid[self._current_kid] = key
        self._current = key

    def _ensure_loaded(self) -> None:
        if self._current is not None:
            return
        with self._lock:
            if self._current is not None:
                return
            if not self._path:
                raise InternalServerError("No signing key configured")
            current = load_or_create_signing_key(self._path)
            if self._previous_path:
                self._load_previous(self._previous_path)
            self._install_current(current)

    def _load_previous(self, path: str) -> None:
        p = Path(path)
        if not p.exists():
            logger.warning("Previous signing key %s not found; rotation key skipped", path)
            return
        try:
            previous = _deserialize_private(p.read_bytes())
        except (ValueError, TypeError) as e:
            logger.warning("Failed to load previous signing key from %s: %s", path, e)
            return
        kid = key_id(previous.public_key())
        self._keys_by_kid[kid] = previous
        logger.info("Loaded previous signing key (kid=%s) for rotation", kid)

    def signing_key(self) -> tuple[RSAPrivateKey, str]:
        """Return the current (private) key and kid for signing new tokens."""
        self._ensure_loaded()
        return self._current, self._current_kid

    def public_key(self, kid: str | None = None) -> RSAPublicKey | None:
        """Public key for the given kid (current key if None), or None if unknown."""
        self._ensure_loaded()
        private_key = self._keys_by_kid.get(kid or self._current_kid)
        if private_key is None:
            return None
        return private_key.public_key()

    def public_key_pem(self) -> str:
        """Current public key as PEM text, for third parties verifying tokens."""
        return self.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    def jwks(self) -> dict:
        """JWK set with all keys (current + previous) so tokens signed with any exposed key verify."""
        self._ensure_loaded()
        return {"keys": [public_key_to_jwk(k.public_key(), kid) for kid, k in self._keys_by_kid.items()]}
