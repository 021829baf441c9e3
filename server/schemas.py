"""
Request and response bodies of the HTTP/WebSocket boundary.

Payloads are validated once here; the core only sees well-formed values.
"""

from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from e2ee.errors import ValidationError
from e2ee.primitives import NONCE_SIZE, SIGNATURE_SIZE, TAG_SIZE, b64decode, decode_key


def _check_key(value: str, name: str) -> str:
    try:
        decode_key(value, name)
    except ValidationError as e:
        raise ValueError(str(e)) from e
    return value


def _check_b64(value: Optional[str], name: str, min_size: int = 0, exact: Optional[int] = None) -> Optional[str]:
    if value is None:
        return value
    try:
        raw = b64decode(value, name)
    except ValidationError as e:
        raise ValueError(str(e)) from e
    if exact is not None and len(raw) != exact:
        raise ValueError(f"{name} must decode to {exact} bytes")
    if len(raw) < min_size:
        raise ValueError(f"{name} must decode to at least {min_size} bytes")
    return value


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class KeyExchangeRequest(CamelModel):
    """Body of both initiate and complete"""
    conversation_id: str = Field(alias="conversationId", min_length=1)
    public_key: str = Field(alias="publicKey", min_length=1)
    signing_key: str = Field(alias="signingKey", min_length=1)
    signature: str = Field(min_length=1)

    @field_validator("public_key")
    @classmethod
    def _public_key(cls, value: str) -> str:
        return _check_key(value, "publicKey")

    @field_validator("signing_key")
    @classmethod
    def _signing_key(cls, value: str) -> str:
        return _check_key(value, "signingKey")

    @field_validator("signature")
    @classmethod
    def _signature(cls, value: str) -> str:
        return _check_b64(value, "signature", min_size=SIGNATURE_SIZE)


class KeyExchangeResponse(BaseModel):
    # no sharedSecret field: secrets never leave the clients
    success: bool
    message: str
    status: str


class EncryptedMessagePayload(CamelModel):
    """
    A message as posted by a client.

    Encrypted messages carry ciphertext, nonce, sequenceNumber and signature;
    with isEncrypted false only the plaintext content is required.
    """
    conversation_id: str = Field(alias="conversationId", min_length=1)
    ciphertext: Optional[str] = None
    nonce: Optional[str] = None
    sequence_number: Optional[int] = Field(default=None, alias="sequenceNumber", ge=1)
    signature: Optional[str] = None
    sender_id: Optional[str] = Field(default=None, alias="senderId")
    content: Optional[str] = None
    is_encrypted: bool = Field(default=True, alias="isEncrypted")

    @model_validator(mode="after")
    def _required_fields(self) -> "EncryptedMessagePayload":
        if self.is_encrypted:
            missing = [
                name for name in ("ciphertext", "nonce", "sequence_number", "signature")
                if getattr(self, name) is None
            ]
            if missing:
                raise ValueError(f"Encrypted message is missing: {', '.join(missing)}")
        elif not self.content or not self.content.strip():
            raise ValueError("Message content cannot be empty")
        return self

    @field_validator("ciphertext")
    @classmethod
    def _ciphertext(cls, value: Optional[str]) -> Optional[str]:
        return _check_b64(value, "ciphertext", min_size=TAG_SIZE)

    @field_validator("nonce")
    @classmethod
    def _nonce(cls, value: Optional[str]) -> Optional[str]:
        return _check_b64(value, "nonce", exact=NONCE_SIZE)

    @field_validator("signature")
    @classmethod
    def _signature(cls, value: Optional[str]) -> Optional[str]:
        return _check_b64(value, "signature", min_size=SIGNATURE_SIZE)


class StatusResponse(BaseModel):
    status: str
    participantCount: int
    participants: List[str]


class PeerKeysResponse(BaseModel):
    userId: str
    publicKey: str
    signingKey: str


class EncryptionStatusResponse(BaseModel):
    isEncrypted: bool
    keyExchangeStatus: str
    participantCount: int
