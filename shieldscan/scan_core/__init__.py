# scan_core/__init__.py
from .keys import PoolTag, Scope, ViewingKey, classify, detect_key_type, decode_viewing_key
from .crypto import EncryptionEnvelope, seal, open_envelope, generate_rsa_keypair
from .scan import CompactOutput, DecryptedNote, try_decrypt_output, try_decrypt_transaction, filter_matches
from .capability import TrialDecryptionBackend, LocalBackend
