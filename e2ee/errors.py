"""
Exception taxonomy for the conversation encryption core.
"""


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class ValidationError(CryptoError):
    """Malformed or missing input (bad base64, wrong key size, ...)"""
    pass


class SignatureError(CryptoError):
    """Handshake signature did not verify over the canonical string"""
    pass


class ProtocolStateError(CryptoError):
    """Operation not allowed in the current key-exchange state"""
    pass


class AuthenticationTagError(CryptoError):
    """AEAD integrity check failed"""
    pass


class NotFoundError(CryptoError):
    """Referenced key record or participant does not exist"""
    pass


class StaleStateError(CryptoError):
    """Conditional update lost a race against a concurrent writer"""
    pass
