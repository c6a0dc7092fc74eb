import pytest
from pydantic import ValidationError

from cipherroom.schemas import MessagePayload, MessageRow, PublicKeyJwk
from cipherroom.utils.encoding import b64url_to_uint, b64url_uint


def test_plaintext_rows_cannot_carry_a_nonce() -> None:
    with pytest.raises(ValidationError):
        MessageRow(channel_id="general", content="hi", payload=MessagePayload(iv="AAAA"))


def test_record_omits_empty_nonce_and_keeps_extras() -> None:
    row = MessageRow(
        channel_id="general",
        content="hi",
        payload=MessagePayload(files=[{"name": "a.txt"}]),
    )
    assert row.to_record() == {
        "content": "hi",
        "is_encrypted": False,
        "payload": {"files": [{"name": "a.txt"}]},
    }


def test_public_jwk_ignores_private_members() -> None:
    jwk = PublicKeyJwk.from_json('{"kty":"RSA","n":"sXch","e":"AQAB","d":"secret","p":"x"}')
    assert "d" not in jwk.to_json()
    assert jwk.key_ops == ["wrapKey"]


def test_public_jwk_requires_modulus() -> None:
    with pytest.raises(ValidationError):
        PublicKeyJwk.from_json('{"kty":"RSA","n":"","e":"AQAB"}')


@pytest.mark.parametrize(("value", "encoded"), [(65537, "AQAB"), (0, "AA"), (255, "_w")])
def test_jwk_integer_encoding(value: int, encoded: str) -> None:
    assert b64url_uint(value) == encoded
    assert b64url_to_uint(encoded) == value
