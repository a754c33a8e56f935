"""
Signed token codec: claims <-> compact RS256 JWT. Pure functions of (claims, key).
"""
import logging

import jwt
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from ego.audit import fingerprint
from ego.errors import InvalidTokenError
from ego.keys import SigningKeyProvider

logger = logging.getLogger(__name__)

ALGORITHM = "RS256"
REQUIRED_CLAIMS = ["iss", "sub", "exp", "context"]


def encode(claims: dict, private_key: RSAPrivateKey, kid: str) -> str:
    token = jwt.encode(claims, private_key, algorithm=ALGORITHM, headers={"kid": kid, "typ": "JWT"})
    if isinstance(token, bytes):
        token = token.decode("utf-8")
    return token


def decode(token: str, keys: SigningKeyProvider, issuer: str) -> dict:
    """
    Verify signature, issuer and expiry; return the claims.
    Raises InvalidTokenError with reason "expired" or "malformed". There is no partially valid token.
    """
    try:
        header = jwt.get_unverified_header(token)
    except jwt.InvalidTokenError as e:
        logger.debug("Unparseable token %s: %s", fingerprint(token), e)
        raise InvalidTokenError("Token is malformed", InvalidTokenError.MALFORMED) from e
    public_key = keys.public_key(header.get("kid"))
    if public_key is None:
        logger.debug("Token %s signed with unknown kid %s", fingerprint(token), header.get("kid"))
        raise InvalidTokenError("Token signed with an unknown key", InvalidTokenError.MALFORMED)
    try:
        return jwt.decode(
            token,
            public_key,
            algorithms=[ALGORITHM],
            issuer=issuer,
            options={"require": REQUIRED_CLAIMS, "verify_aud": False},
        )
    except jwt.ExpiredSignatureError as e:
        logger.debug("Expired token %s", fingerprint(token))
        raise InvalidTokenError("Token has expired", InvalidTokenError.EXPIRED) from e
    except jwt.InvalidTokenError as e:
        logger.debug("Invalid token %s: %s", fingerprint(token), e)
        raise InvalidTokenError("Token signature or claims are invalid", InvalidTokenError.MALFORMED) from e
