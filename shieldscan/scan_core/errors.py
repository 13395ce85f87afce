# scan_core/errors.py
"""
Error taxonomy of the scanning core.

A trial decryption that does not match is never an error: it is `None` or an
empty list. Everything below signals something the caller has to act on.
"""


class ScanCoreError(Exception):
    pass


class ConfigurationError(ScanCoreError):
    """Missing or malformed configuration (public key, backend URL). Not retryable."""


class InvalidPublicKeyError(ConfigurationError):
    pass


class EnvelopeError(ScanCoreError):
    """The receiving side could not open an envelope."""


class InvalidViewingKeyError(ScanCoreError):
    """A key that looks shielded but whose body cannot be decoded."""


class MalformedInputError(ScanCoreError, ValueError):
    """Corrupted hex / byte input, distinct from "not for us"."""


class MalformedOutputError(MalformedInputError):
    pass


class MalformedTransactionError(MalformedInputError):
    pass
