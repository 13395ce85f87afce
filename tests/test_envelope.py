import base64

import pytest

from shieldscan.scan_core.crypto import EncryptionEnvelope, open_envelope, seal
from shieldscan.scan_core.errors import ConfigurationError, EnvelopeError, InvalidPublicKeyError


def _flip_last_byte(b64: str) -> str:
    raw = bytearray(base64.b64decode(b64))
    raw[-1] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")


def test_round_trip(uvk, public_pem, private_key):
    env = seal(uvk, public_pem)
    assert open_envelope(env, private_key) == uvk


def test_ciphertext_carries_tag(public_pem):
    secret = "uview1" + "x" * 100
    env = seal(secret, public_pem)
    assert len(base64.b64decode(env.encrypted_secret)) == len(secret.encode()) + 16
    assert len(base64.b64decode(env.iv)) == 12
    assert len(base64.b64decode(env.encrypted_key)) == 256  # 2048-bit modulus


def test_fresh_key_and_iv_per_call(uvk, public_pem):
    a = seal(uvk, public_pem)
    b = seal(uvk, public_pem)
    assert a.iv != b.iv
    assert a.encrypted_key != b.encrypted_key
    assert a.encrypted_secret != b.encrypted_secret


def test_wire_field_names(uvk, public_pem):
    wire = seal(uvk, public_pem).to_wire()
    assert set(wire) == {"encrypted_uvk", "encrypted_key", "iv"}
    assert EncryptionEnvelope.from_wire(wire).encrypted_secret == wire["encrypted_uvk"]


def test_from_wire_missing_field():
    with pytest.raises(EnvelopeError):
        EncryptionEnvelope.from_wire({"encrypted_uvk": "a", "iv": "b"})


@pytest.mark.parametrize("pem", ["", "not a pem", "-----BEGIN PUBLIC KEY-----\nAAAA\n-----END PUBLIC KEY-----\n"])
def test_bad_public_key(pem):
    with pytest.raises(InvalidPublicKeyError):
        seal("uview1abc", pem)
    # configuration problem, not a scan problem
    assert issubclass(InvalidPublicKeyError, ConfigurationError)


def test_tampered_ciphertext(uvk, public_pem, private_key):
    env = seal(uvk, public_pem)
    bad = EncryptionEnvelope(_flip_last_byte(env.encrypted_secret), env.encrypted_key, env.iv)
    with pytest.raises(EnvelopeError):
        open_envelope(bad, private_key)


def test_wrong_iv(uvk, public_pem, private_key):
    env = seal(uvk, public_pem)
    other = seal(uvk, public_pem)
    with pytest.raises(EnvelopeError):
        open_envelope(EncryptionEnvelope(env.encrypted_secret, env.encrypted_key, other.iv), private_key)


def test_short_iv(uvk, public_pem, private_key):
    env = seal(uvk, public_pem)
    short = base64.b64encode(b"\x00" * 8).decode()
    with pytest.raises(EnvelopeError):
        open_envelope(EncryptionEnvelope(env.encrypted_secret, env.encrypted_key, short), private_key)


def test_not_base64(private_key):
    with pytest.raises(EnvelopeError):
        open_envelope(EncryptionEnvelope("***", "***", "***"), private_key)
