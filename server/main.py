"""
FastAPI server exposing the conversation encryption core.

This server:
- Registers users' public keys and runs the signed key exchange
- Reports key-exchange and encryption status of conversations
- Validates encrypted messages and relays them via WebSocket (does NOT store them)

Secret keys never reach the server: clients derive the shared secret
locally from their own secret key and the peer's public key.
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional, Set
from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PayloadError

from e2ee.errors import (
    AuthenticationTagError,
    CryptoError,
    NotFoundError,
    ProtocolStateError,
    SignatureError,
    StaleStateError,
    ValidationError,
)
from e2ee.key_exchange import KeyExchangeProtocol
from e2ee.message_cipher import MessageCipher
from e2ee.models import KeyExchangeStatus
from e2ee.store import KeyStateStore

from .auth import get_current_user, verify_token
from .config import settings
from .database import SQLKeyStore
from .schemas import (
    EncryptedMessagePayload,
    EncryptionStatusResponse,
    KeyExchangeRequest,
    KeyExchangeResponse,
    PeerKeysResponse,
    StatusResponse,
)

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 422,
    SignatureError: 400,
    AuthenticationTagError: 400,
    NotFoundError: 404,
    ProtocolStateError: 409,
    StaleStateError: 409,
}


# WebSocket connection manager
class ConnectionManager:
    """Live WebSocket sessions per user; a user may be connected more than once"""

    def __init__(self):
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    def register(self, user_id: str, websocket: WebSocket):
        """Store an accepted WebSocket connection"""
        self.active_connections.setdefault(user_id, set()).add(websocket)

    def disconnect(self, user_id: str, websocket: WebSocket):
        """Remove a WebSocket connection"""
        sessions = self.active_connections.get(user_id)
        if sessions is None:
            return
        sessions.discard(websocket)
        if not sessions:
            del self.active_connections[user_id]

    async def send_message(self, user_id: str, message: dict) -> int:
        """Send a message to every session of a user, returns how many got it"""
        delivered = 0
        for websocket in list(self.active_connections.get(user_id, ())):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception:
                logger.warning("Dropping broken session of %s", user_id, exc_info=True)
                self.disconnect(user_id, websocket)
        return delivered

    def is_online(self, user_id: str) -> bool:
        """Check if a user is online"""
        return user_id in self.active_connections


def create_app(store: Optional[KeyStateStore] = None) -> FastAPI:
    """
    Build the application around a key state store.

    Args:
        store: Persistence backend, an SQLKeyStore on settings.DATABASE_URL by default
    """
    if store is None:
        store = SQLKeyStore(settings.DATABASE_URL)

    key_exchange = KeyExchangeProtocol(store, max_retries=settings.STATE_UPDATE_RETRIES)
    # validation only needs public keys, so the server keyring stays empty
    cipher = MessageCipher(key_exchange)
    manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        if isinstance(store, SQLKeyStore):
            await store.create_tables()
        logger.info("Key store initialized")
        yield
        if isinstance(store, SQLKeyStore):
            await store.close()
        logger.info("Server shutting down")

    app = FastAPI(
        title="Conversation Encryption Server",
        description="Signed X25519 key exchange and per-message encryption for two-party conversations",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.key_exchange = key_exchange
    app.state.cipher = cipher
    app.state.manager = manager

    @app.exception_handler(CryptoError)
    async def crypto_error_handler(request: Request, exc: CryptoError):
        status_code = ERROR_STATUS.get(type(exc), 400)
        logger.info("%s %s rejected (%d): %s", request.method, request.url.path, status_code, exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    async def notify_peer(conversation_id: str, user_id: str, event: dict):
        state = await key_exchange.get_conversation_keys(conversation_id)
        peer_id = state.peer_of(user_id) if state else None
        if peer_id:
            await manager.send_message(peer_id, event)

    async def accept_message(payload: EncryptedMessagePayload, user_id: str) -> bool:
        if payload.is_encrypted:
            return await cipher.validate_encrypted_message(payload.conversation_id, payload, user_id)
        # no plaintext downgrade once a conversation is encrypted
        status = await cipher.get_encryption_status(payload.conversation_id)
        return not status.is_encrypted

    @app.post("/api/keys")
    async def generate_keys(user_id: str = Depends(get_current_user)):
        """
        Generate key pairs for the caller.

        The secret halves are returned once and not kept by the server.
        """
        keys = await key_exchange.generate_user_keys(user_id)
        return keys.to_dict()

    @app.post("/api/key-exchange/initiate", response_model=KeyExchangeResponse)
    async def initiate_key_exchange(body: KeyExchangeRequest, user_id: str = Depends(get_current_user)):
        """Submit signed public keys to start a conversation's key exchange"""
        result = await key_exchange.initiate(
            user_id, body.conversation_id, body.public_key, body.signing_key, body.signature
        )
        await notify_peer(body.conversation_id, user_id, {
            "type": "key_exchange_request",
            "conversationId": body.conversation_id,
            "from": user_id,
            "publicKey": body.public_key,
            "signingKey": body.signing_key
        })
        return result.to_dict()

    @app.post("/api/key-exchange/complete", response_model=KeyExchangeResponse)
    async def complete_key_exchange(body: KeyExchangeRequest, user_id: str = Depends(get_current_user)):
        """Submit signed public keys for an initiated key exchange"""
        result = await key_exchange.complete(
            user_id, body.conversation_id, body.public_key, body.signing_key, body.signature
        )
        await notify_peer(body.conversation_id, user_id, {
            "type": "key_exchange_completed" if result.status == KeyExchangeStatus.COMPLETED else "key_exchange_request",
            "conversationId": body.conversation_id,
            "from": user_id,
            "publicKey": body.public_key,
            "signingKey": body.signing_key
        })
        return result.to_dict()

    @app.get("/api/key-exchange/{conversation_id}/status", response_model=StatusResponse)
    async def key_exchange_status(conversation_id: str, user_id: str = Depends(get_current_user)):
        status = await key_exchange.get_status(conversation_id)
        return status.to_dict()

    @app.get("/api/key-exchange/{conversation_id}/peer", response_model=PeerKeysResponse)
    async def peer_keys(conversation_id: str, user_id: str = Depends(get_current_user)):
        """Public keys of the other participant, to compute the shared secret locally"""
        state = await key_exchange.get_conversation_keys(conversation_id)
        entry = await key_exchange.get_peer_keys(conversation_id, user_id)
        return {
            "userId": state.peer_of(user_id),
            "publicKey": entry.public_key,
            "signingKey": entry.signing_key
        }

    @app.get("/api/conversations/{conversation_id}/encryption", response_model=EncryptionStatusResponse)
    async def encryption_status(conversation_id: str, user_id: str = Depends(get_current_user)):
        status = await cipher.get_encryption_status(conversation_id)
        return status.to_dict()

    @app.post("/api/messages/validate")
    async def validate_message(body: EncryptedMessagePayload, user_id: str = Depends(get_current_user)):
        """Pre-flight check of a message before it is stored or fanned out"""
        return {"valid": await accept_message(body, user_id)}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        WebSocket endpoint for real-time relay.

        Protocol:
        1. Client sends: {"type": "auth", "token": "jwt_token"}
        2. Server responds: {"type": "auth_success", "userId": "..."}
        3. Client sends: {"type": "encrypted_message", "data": {...}}
        4. Server validates and relays to the peer: {"type": "encrypted_message", "from": "sender", "data": {...}}
        """
        user_id = None

        try:
            await websocket.accept()

            auth_data = await websocket.receive_json()
            if auth_data.get("type") != "auth":
                await websocket.send_json({"type": "error", "message": "Authentication required"})
                await websocket.close()
                return

            user_id = verify_token(auth_data.get("token"))
            if not user_id:
                await websocket.send_json({"type": "error", "message": "Invalid token"})
                await websocket.close()
                return

            manager.register(user_id, websocket)
            await websocket.send_json({"type": "auth_success", "userId": user_id})

            # Message handling loop
            while True:
                data = await websocket.receive_json()

                if data.get("type") == "encrypted_message":
                    try:
                        payload = EncryptedMessagePayload.model_validate(data.get("data") or {})
                    except PayloadError:
                        await websocket.send_json({"type": "error", "message": "Invalid message format"})
                        continue

                    if not await accept_message(payload, user_id):
                        logger.warning(
                            "Rejected message from %s in conversation %s", user_id, payload.conversation_id
                        )
                        await websocket.send_json({"type": "error", "message": "Message rejected"})
                        continue

                    state = await key_exchange.get_conversation_keys(payload.conversation_id)
                    peer_id = state.peer_of(user_id) if state else None
                    message = payload.model_dump(by_alias=True, exclude_none=True)
                    message["senderId"] = user_id

                    if peer_id and await manager.send_message(peer_id, {
                        "type": "encrypted_message",
                        "from": user_id,
                        "data": message
                    }):
                        await websocket.send_json({"type": "delivered", "to": peer_id})
                    else:
                        await websocket.send_json({
                            "type": "error",
                            "message": f"User {peer_id} is offline" if peer_id else "No peer in conversation"
                        })

                elif data.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})

        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("WebSocket error for user %s", user_id)
        finally:
            if user_id:
                manager.disconnect(user_id, websocket)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT)
