# scan_core/crypto.py
"""
Viewing-key transport envelope: AES-256-GCM payload + RSA (PKCS#1 v1.5) key wrap.

Wire format (field names are a contract with the receiving decryptor):
    encrypted_uvk : base64(ciphertext || tag16)
    encrypted_key : base64(RSA_PKCS1v15(aes_key))
    iv            : base64(iv12)
"""
import base64
import os
from dataclasses import dataclass
from typing import Dict, Tuple, Union

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import EnvelopeError, InvalidPublicKeyError

AES_KEY_SIZE = 32
IV_SIZE = 12
TAG_SIZE = 16


@dataclass(frozen=True)
class EncryptionEnvelope:
    encrypted_secret: str
    encrypted_key: str
    iv: str

    def to_wire(self) -> Dict[str, str]:
        return {
            "encrypted_uvk": self.encrypted_secret,
            "encrypted_key": self.encrypted_key,
            "iv": self.iv,
        }

    @classmethod
    def from_wire(cls, data: Dict[str, str]) -> "EncryptionEnvelope":
        try:
            return cls(data["encrypted_uvk"], data["encrypted_key"], data["iv"])
        except (KeyError, TypeError) as e:
            raise EnvelopeError(f"envelope missing field: {e}") from e


# ---- key handling ----

def load_public_key(pem: Union[str, bytes]) -> rsa.RSAPublicKey:
    data = pem.encode("ascii") if isinstance(pem, str) else pem
    try:
        key = serialization.load_pem_public_key(data)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise InvalidPublicKeyError(f"malformed recipient public key: {e}") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise InvalidPublicKeyError("recipient public key must be RSA")
    return key


def load_private_key(pem: Union[str, bytes], password: bytes = None) -> rsa.RSAPrivateKey:
    data = pem.encode("ascii") if isinstance(pem, str) else pem
    try:
        key = serialization.load_pem_private_key(data, password=password)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise InvalidPublicKeyError(f"malformed private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise InvalidPublicKeyError("private key must be RSA")
    return key


def generate_rsa_keypair(bits: int = 2048) -> Tuple[str, str]:
    """Return (private_pem, public_pem)."""
    priv = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = priv.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    return private_pem, public_pem_of(priv)


def public_pem_of(private_key: rsa.RSAPrivateKey) -> str:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


# ---- seal / open ----

def seal(secret: str, recipient_public_key: Union[str, bytes, rsa.RSAPublicKey]) -> EncryptionEnvelope:
    """
    Wrap `secret` for the holder of the RSA private key.
    The AES key and IV live only for the duration of this call.
    """
    if isinstance(recipient_public_key, rsa.RSAPublicKey):
        pub = recipient_public_key
    else:
        pub = load_public_key(recipient_public_key)

    aes_key = bytearray(os.urandom(AES_KEY_SIZE))
    iv = os.urandom(IV_SIZE)
    try:
        enc = Cipher(algorithms.AES(bytes(aes_key)), modes.GCM(iv)).encryptor()
        ct = enc.update(secret.encode("utf-8")) + enc.finalize()
        combined = ct + enc.tag
        wrapped = pub.encrypt(bytes(aes_key), padding.PKCS1v15())
    finally:
        for i in range(len(aes_key)):
            aes_key[i] = 0

    return EncryptionEnvelope(
        encrypted_secret=base64.b64encode(combined).decode("ascii"),
        encrypted_key=base64.b64encode(wrapped).decode("ascii"),
        iv=base64.b64encode(iv).decode("ascii"),
    )


def open_envelope(envelope: EncryptionEnvelope, private_key: rsa.RSAPrivateKey) -> str:
    """Receiver side: reverse of seal(). The last 16 bytes of encrypted_uvk are the GCM tag."""
    try:
        combined = base64.b64decode(envelope.encrypted_secret, validate=True)
        wrapped = base64.b64decode(envelope.encrypted_key, validate=True)
        iv = base64.b64decode(envelope.iv, validate=True)
    except (ValueError, TypeError) as e:
        raise EnvelopeError(f"envelope is not valid base64: {e}") from e
    if len(iv) != IV_SIZE:
        raise EnvelopeError(f"iv must be {IV_SIZE} bytes, got {len(iv)}")
    if len(combined) < TAG_SIZE:
        raise EnvelopeError("encrypted secret shorter than the authentication tag")

    try:
        aes_key = bytearray(private_key.decrypt(wrapped, padding.PKCS1v15()))
    except ValueError as e:
        raise EnvelopeError("could not unwrap envelope key") from e
    if len(aes_key) != AES_KEY_SIZE:
        raise EnvelopeError("unwrapped key has the wrong size")

    ct, tag = combined[:-TAG_SIZE], combined[-TAG_SIZE:]
    try:
        dec = Cipher(algorithms.AES(bytes(aes_key)), modes.GCM(iv, tag)).decryptor()
        plaintext = dec.update(ct) + dec.finalize()
    except InvalidTag as e:
        raise EnvelopeError("envelope authentication failed") from e
    finally:
        for i in range(len(aes_key)):
            aes_key[i] = 0

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise EnvelopeError("envelope payload is not UTF-8") from e
