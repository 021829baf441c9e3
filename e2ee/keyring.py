"""
Client-side holder of key-agreement secret keys.

The message cipher asks a keyring for the secret half matching one of the
conversation's public keys; it never gets secrets from the key exchange.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional, Union

from .primitives import b64encode


def _key_id(public_key: Union[str, bytes]) -> str:
    return b64encode(public_key) if isinstance(public_key, bytes) else public_key


class Keyring(ABC):
    """Maps a base64 X25519 public key to its raw secret key"""

    @abstractmethod
    def add(self, public_key: Union[str, bytes], secret_key: bytes):
        ...

    @abstractmethod
    def secret_for(self, public_key: str) -> Optional[bytes]:
        ...


class LocalKeyring(Keyring):
    """In-memory keyring"""

    def __init__(self):
        self._secrets: Dict[str, bytes] = {}

    def add(self, public_key: Union[str, bytes], secret_key: bytes):
        self._secrets[_key_id(public_key)] = secret_key

    def secret_for(self, public_key: str) -> Optional[bytes]:
        return self._secrets.get(public_key)

    def __len__(self) -> int:
        return len(self._secrets)
