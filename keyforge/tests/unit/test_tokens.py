from __future__ import annotations

import time

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
import pytest
from pydantic import ValidationError as PydanticValidationError

from keyforge.services.auth.tokens import (
    MAX_SEGMENT_LENGTH,
    TokenClaims,
    b64url_decode,
    b64url_encode,
    decode_unverified,
    generate_jti,
    generate_key_pair,
    issue_token,
    load_public_key,
    verify_token,
)
from keyforge.tests.utils.keys import make_claims, sign_raw_payload


@pytest.fixture(scope="module")
def key_pair() -> tuple[str, str]:
    return generate_key_pair()


def test_issue_and_verify_round_trip(key_pair) -> None:
    private_pem, public_pem = key_pair
    claims = make_claims(sub="instance-a", tenant_id="instance-a", metadata={"team": "ops"})
    token = issue_token(claims, private_pem)

    verified = verify_token(token, public_pem)
    assert verified is not None
    assert verified.sub == "instance-a"
    assert verified.tenant_id == "instance-a"
    assert verified.jti == claims["jti"]
    assert verified.metadata == {"team": "ops"}
    assert verified.is_admin is False
    assert verified.is_root is False


def test_token_has_three_url_safe_segments(key_pair) -> None:
    private_pem, _ = key_pair
    token = issue_token(make_claims(sub="root", tenant_id="root"), private_pem)
    segments = token.split(".")
    assert len(segments) == 3
    for segment in segments:
        assert "=" not in segment
        assert "+" not in segment and "/" not in segment


def test_verify_rejects_other_key(key_pair) -> None:
    private_pem, _ = key_pair
    _, other_public = generate_key_pair()
    token = issue_token(make_claims(sub="instance-a", tenant_id="instance-a"), private_pem)
    assert verify_token(token, other_public) is None


def test_verify_rejects_tampered_payload(key_pair) -> None:
    private_pem, public_pem = key_pair
    token = issue_token(make_claims(sub="instance-a", tenant_id="instance-a"), private_pem)
    header, _payload, signature = token.split(".")
    forged = issue_token(make_claims(sub="instance-b", tenant_id="instance-b"), private_pem).split(".")[1]
    assert verify_token(f"{header}.{forged}.{signature}", public_pem) is None


def test_verify_rejects_flipped_signature_bit(key_pair) -> None:
    private_pem, public_pem = key_pair
    token = issue_token(make_claims(sub="instance-a", tenant_id="instance-a"), private_pem)
    header, payload, signature = token.split(".")
    raw = bytearray(b64url_decode(signature))
    raw[-1] ^= 0x01
    assert verify_token(f"{header}.{payload}.{b64url_encode(bytes(raw))}", public_pem) is None


@pytest.mark.parametrize(
    "token",
    [
        "",
        "onlyone",
        "two.segments",
        "a.b.c.d",
        "a..c",
        ".b.c",
    ],
)
def test_verify_rejects_malformed_shape(key_pair, token) -> None:
    _, public_pem = key_pair
    assert verify_token(token, public_pem) is None


def test_verify_rejects_expired_token(key_pair) -> None:
    private_pem, public_pem = key_pair
    now = int(time.time())
    token = issue_token(
        make_claims(sub="instance-a", tenant_id="instance-a", iat=now - 120, exp=now - 60),
        private_pem,
    )
    assert verify_token(token, public_pem, now=now) is None


def test_verify_accepts_token_expiring_this_second(key_pair) -> None:
    private_pem, public_pem = key_pair
    now = int(time.time())
    token = issue_token(
        make_claims(sub="instance-a", tenant_id="instance-a", iat=now - 10, exp=now),
        private_pem,
    )
    assert verify_token(token, public_pem, now=now) is not None


def test_verify_applies_issued_at_skew(key_pair) -> None:
    private_pem, public_pem = key_pair
    now = int(time.time())
    within = issue_token(
        make_claims(sub="instance-a", tenant_id="instance-a", iat=now + 20, exp=now + 600),
        private_pem,
    )
    beyond = issue_token(
        make_claims(sub="instance-a", tenant_id="instance-a", iat=now + 31, exp=now + 600),
        private_pem,
    )
    assert verify_token(within, public_pem, now=now, clock_skew_s=30) is not None
    assert verify_token(beyond, public_pem, now=now, clock_skew_s=30) is None


def test_verify_rejects_exp_before_iat(key_pair) -> None:
    private_pem, public_pem = key_pair
    now = int(time.time())
    token = issue_token(
        make_claims(sub="instance-a", tenant_id="instance-a", iat=now + 10, exp=now + 5),
        private_pem,
    )
    assert verify_token(token, public_pem, now=now) is None


@pytest.mark.parametrize("missing", ["sub", "iat", "exp", "jti", "tenantId", "requestId"])
def test_verify_rejects_missing_required_claim(key_pair, missing) -> None:
    private_pem, public_pem = key_pair
    payload = make_claims(sub="instance-a", tenant_id="instance-a")
    payload.pop(missing)
    token = sign_raw_payload(payload, private_pem)
    assert verify_token(token, public_pem) is None


def test_verify_rejects_wrongly_typed_claims(key_pair) -> None:
    private_pem, public_pem = key_pair
    payload = make_claims(sub="instance-a", tenant_id="instance-a")
    payload["exp"] = str(payload["exp"])
    assert verify_token(sign_raw_payload(payload, private_pem), public_pem) is None


def test_verify_rejects_non_object_payload(key_pair) -> None:
    private_pem, public_pem = key_pair
    token = sign_raw_payload(["not", "an", "object"], private_pem)
    assert verify_token(token, public_pem) is None


def test_issue_token_requires_claims(key_pair) -> None:
    private_pem, _ = key_pair
    claims = make_claims(sub="instance-a", tenant_id="instance-a")
    claims.pop("jti")
    with pytest.raises(PydanticValidationError):
        issue_token(claims, private_pem)


def test_claims_payload_uses_wire_names() -> None:
    claims = TokenClaims.model_validate(make_claims(sub="root", tenant_id="root", isAdmin=True))
    payload = claims.to_payload()
    assert payload["tenantId"] == "root"
    assert payload["isAdmin"] is True
    assert "requestId" in payload
    assert claims.is_root is True


def test_b64url_decode_rejects_bad_input() -> None:
    assert b64url_decode("") is None
    assert b64url_decode("not*base64") is None
    assert b64url_decode("é") is None
    assert b64url_decode("a" * (MAX_SEGMENT_LENGTH + 1)) is None
    assert b64url_decode(b64url_encode(b"\xff\xfe-payload")) == b"\xff\xfe-payload"


def test_decode_unverified_reads_claims_without_key(key_pair) -> None:
    private_pem, _ = key_pair
    token = issue_token(make_claims(sub="instance-a", tenant_id="instance-a"), private_pem)
    claims = decode_unverified(token)
    assert claims is not None
    assert claims["sub"] == "instance-a"
    assert decode_unverified("garbage") is None


def test_generate_jti_is_random_hex() -> None:
    first = generate_jti()
    second = generate_jti()
    assert len(first) == 32
    int(first, 16)
    assert first != second


def test_load_public_key_rejects_other_curves() -> None:
    p384 = ec.generate_private_key(ec.SECP384R1()).public_key()
    p384_pem = p384.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    ed_pem = ed25519.Ed25519PrivateKey.generate().public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    assert load_public_key(p384_pem) is None
    assert load_public_key(ed_pem) is None
    assert load_public_key("not a key") is None
