from __future__ import annotations

import base64
import binascii
from functools import lru_cache
import json
import logging
import secrets
import time
from typing import Any

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr
from pydantic import ValidationError as PydanticValidationError

from keyforge.core.config import get_settings


logger = logging.getLogger(__name__)

ROOT_SUBJECT = "root"
TOKEN_HEADER = {"alg": "ES256", "typ": "JWT"}
REQUIRED_CLAIMS = ("sub", "iat", "exp", "jti", "tenantId", "requestId")
# Largest encoded segment accepted before decoding.
MAX_SEGMENT_LENGTH = 10 * 1024 * 1024
# A valid base64 string never needs more than two pad characters.
_MAX_PAD_ITERATIONS = 10


class TokenClaims(BaseModel):
    """Claims carried by a signed bearer token.

    Field names follow the wire payload through aliases so that
    ``model_dump(by_alias=True)`` reproduces the signed JSON object.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    sub: StrictStr
    iat: StrictInt
    exp: StrictInt
    jti: StrictStr
    tenant_id: StrictStr = Field(alias="tenantId")
    request_id: StrictStr = Field(alias="requestId")
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_admin: StrictBool = Field(default=False, alias="isAdmin")

    @property
    def is_root(self) -> bool:
        return self.sub == ROOT_SUBJECT

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes | None:
    # Reject oversized or non-alphabet input instead of raising; pad with a bounded loop.
    if not value or len(value) > MAX_SEGMENT_LENGTH:
        return None
    padded = value
    iterations = 0
    while len(padded) % 4 != 0:
        if iterations >= _MAX_PAD_ITERATIONS:
            return None
        padded += "="
        iterations += 1
    try:
        return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError):
        return None


def _json_segment(data: dict[str, Any]) -> str:
    return b64url_encode(json.dumps(data, separators=(",", ":")).encode("utf-8"))


def generate_key_pair() -> tuple[str, str]:
    # Return (private PKCS8 PEM, public SPKI PEM) for a fresh P-256 key.
    private_key = ec.generate_private_key(ec.SECP256R1())
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return private_pem, public_pem


def generate_jti() -> str:
    return secrets.token_hex(16)


@lru_cache(maxsize=256)
def load_public_key(public_key_pem: str) -> ec.EllipticCurvePublicKey | None:
    # Parse and cache verification keys; anything other than P-256 is unusable.
    try:
        key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
    except (ValueError, TypeError, UnsupportedAlgorithm):
        return None
    if not isinstance(key, ec.EllipticCurvePublicKey) or not isinstance(key.curve, ec.SECP256R1):
        return None
    return key


def _load_private_key(private_key_pem: str) -> ec.EllipticCurvePrivateKey:
    key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(key.curve, ec.SECP256R1):
        raise ValueError("Signing key must be an ECDSA P-256 private key")
    return key


def issue_token(claims: TokenClaims | dict[str, Any], private_key_pem: str) -> str:
    """Sign ``claims`` into a compact token.

    Dict input is validated against the claim schema first, so a token is
    never issued without its required claims.
    """
    if not isinstance(claims, TokenClaims):
        claims = TokenClaims.model_validate(claims)
    signing_input = f"{_json_segment(TOKEN_HEADER)}.{_json_segment(claims.to_payload())}"
    key = _load_private_key(private_key_pem)
    signature = key.sign(signing_input.encode("ascii"), ec.ECDSA(hashes.SHA256()))
    return f"{signing_input}.{b64url_encode(signature)}"


def _split_token(token: str) -> list[str] | None:
    if not isinstance(token, str):
        return None
    parts = token.split(".")
    if len(parts) != 3 or any(not part for part in parts):
        return None
    return parts


def _decode_payload(segment: str) -> dict[str, Any] | None:
    raw = b64url_decode(segment)
    if raw is None:
        return None
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def _has_required_claims(payload: dict[str, Any]) -> bool:
    return all(payload.get(claim) not in (None, "") for claim in REQUIRED_CLAIMS)


def verify_token(
    token: str,
    public_key_pem: str,
    *,
    now: int | None = None,
    clock_skew_s: int | None = None,
) -> TokenClaims | None:
    """Verify a token against one public key.

    Checks run in a fixed order (shape, signature, payload, required
    claims, issued-at skew, expiry, iat <= exp) and the first failure
    yields None.
    """
    parts = _split_token(token)
    if parts is None:
        return None
    header_b64, payload_b64, signature_b64 = parts

    public_key = load_public_key(public_key_pem)
    signature = b64url_decode(signature_b64)
    if public_key is None or signature is None:
        return None
    try:
        public_key.verify(
            signature,
            f"{header_b64}.{payload_b64}".encode("ascii"),
            ec.ECDSA(hashes.SHA256()),
        )
    except (InvalidSignature, ValueError, UnicodeEncodeError):
        return None

    payload = _decode_payload(payload_b64)
    if payload is None or not _has_required_claims(payload):
        return None
    try:
        claims = TokenClaims.model_validate(payload)
    except PydanticValidationError:
        return None

    current = int(time.time()) if now is None else now
    skew = get_settings().token_clock_skew_s if clock_skew_s is None else clock_skew_s
    if claims.iat > current + skew:
        logger.info("token_rejected reason=issued_in_future jti=%s", claims.jti)
        return None
    if claims.exp < current:
        logger.info("token_rejected reason=expired jti=%s", claims.jti)
        return None
    if claims.iat > claims.exp:
        return None
    return claims


def decode_unverified(token: str) -> dict[str, Any] | None:
    # Read claims without trusting them; used only to pick the verification key.
    parts = _split_token(token)
    if parts is None:
        return None
    return _decode_payload(parts[1])
