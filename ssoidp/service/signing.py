from __future__ import annotations

import base64
import hashlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import jwt as pyjwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from ssoidp.logging import get_logger

logger = get_logger(__name__)

ALGORITHM = "RS256"


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def jwk_thumbprint(public_key: rsa.RSAPublicKey) -> str:
    """RFC 7638 thumbprint: SHA-256 over the canonical ``{e, kty, n}`` JSON."""
    numbers = public_key.public_numbers()
    canonical = json.dumps(
        {"e": _b64url_uint(numbers.e), "kty": "RSA", "n": _b64url_uint(numbers.n)},
        separators=(",", ":"),
        sort_keys=True,
    )
    digest = hashlib.sha256(canonical.encode()).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def _write_private_key(path: Path, key: rsa.RSAPrivateKey) -> None:
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix="signing_key_", suffix=".tmp")
    try:
        os.write(fd, pem)
        os.fchmod(fd, 0o600)
    finally:
        os.close(fd)
    os.replace(tmp_path, str(path))


class TokenSigner:
    """RS256 signer for access and ID tokens plus the published JWKS."""

    def __init__(self, private_key: rsa.RSAPrivateKey, *, issuer: str, key_id: Optional[str] = None):
        self._private_key = private_key
        self.public_key = private_key.public_key()
        self.issuer = issuer
        self.key_id = key_id or jwk_thumbprint(self.public_key)

    @classmethod
    def load_or_create(
        cls,
        key_path: Optional[str],
        fs_root: str,
        *,
        issuer: str,
        key_id: Optional[str] = None,
    ) -> "TokenSigner":
        path = Path(key_path) if key_path else Path(fs_root) / "keys" / "signing_key.pem"
        if path.exists():
            key = serialization.load_pem_private_key(path.read_bytes(), password=None)
            if not isinstance(key, rsa.RSAPrivateKey):
                raise RuntimeError(f"signing key at {path} is not an RSA private key")
            logger.info("signing_key_loaded", path=str(path))
        else:
            key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
            _write_private_key(path, key)
            logger.warning("signing_key_generated", path=str(path))
        return cls(key, issuer=issuer, key_id=key_id)

    def sign(self, claims: Dict[str, Any]) -> str:
        payload = {"iss": self.issuer, **claims}
        return pyjwt.encode(payload, self._private_key, algorithm=ALGORITHM, headers={"kid": self.key_id})

    def verify(self, token: str, *, audience: Optional[str] = None) -> Dict[str, Any]:
        """Decode and check signature, issuer and expiry.

        Raises :class:`jwt.InvalidTokenError` (or a subclass) on any failure.
        """
        header = pyjwt.get_unverified_header(token)
        if header.get("kid") != self.key_id:
            raise pyjwt.InvalidTokenError("unknown key id")
        options = {"require": ["exp", "iat", "sub"]}
        if audience is None:
            options["verify_aud"] = False
        return pyjwt.decode(
            token,
            self.public_key,
            algorithms=[ALGORITHM],
            issuer=self.issuer,
            audience=audience,
            options=options,
        )

    def jwks(self) -> Dict[str, Any]:
        jwk = json.loads(RSAAlgorithm.to_jwk(self.public_key))
        jwk.update({"kid": self.key_id, "use": "sig", "alg": ALGORITHM})
        return {"keys": [jwk]}
