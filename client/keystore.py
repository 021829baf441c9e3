"""
Encrypted local keystore for a client's secret keys.

Secret halves of key-agreement (and signing) key pairs are kept on disk,
encrypted with a key derived from the user's password. The store doubles as
the keyring a MessageCipher uses to compute conversation shared secrets.
"""

import os
import sqlite3
from typing import List, Optional, Union
from pathlib import Path
from datetime import datetime, timezone
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from e2ee.keyring import Keyring
from e2ee.primitives import b64encode

PBKDF2_ITERATIONS = 100000
_CHECK_VALUE = b"e2ee-keystore"


class EncryptedKeyStore(Keyring):
    """
    Password-protected SQLite keystore.

    Every secret is encrypted with AES-256-GCM under a PBKDF2-derived key;
    public keys are stored in the clear as lookup ids.
    """

    def __init__(self, username: str, storage_dir: str = "client_data"):
        """
        Initialize encrypted storage.

        Args:
            username: Username for this storage
            storage_dir: Directory to store encrypted data
        """
        self.username = username
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.db_path = self.storage_dir / f"{username}.keys.db"
        self.salt_path = self.storage_dir / f"{username}.salt"
        self.encryption_key: Optional[bytes] = None
        self.db: Optional[sqlite3.Connection] = None

    def derive_key(self, password: str, salt: bytes) -> bytes:
        """
        Derive encryption key from password using PBKDF2.

        Args:
            password: User's password
            salt: Salt for key derivation

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(password.encode())

    def unlock(self, password: str) -> bool:
        """
        Unlock storage with password, creating it on first use.

        Args:
            password: User's password

        Returns:
            True if unlocked, False if the password is wrong
        """
        if not self.db_path.exists() or not self.salt_path.exists():
            salt = os.urandom(16)
            self.salt_path.write_bytes(salt)
            self.encryption_key = self.derive_key(password, salt)
            self._init_database()
            self._set_metadata("check", _CHECK_VALUE)
            return True

        self.encryption_key = self.derive_key(password, self.salt_path.read_bytes())
        self._init_database()

        try:
            if self._get_metadata("check") == _CHECK_VALUE:
                return True
        except InvalidTag:
            pass

        self.close()
        self.encryption_key = None
        return False

    def _init_database(self):
        """Initialize SQLite database"""
        self.db = sqlite3.connect(str(self.db_path))
        cursor = self.db.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS keys (
                public_key TEXT PRIMARY KEY,
                key_type TEXT NOT NULL,
                encrypted_secret BLOB NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                encrypted_value BLOB NOT NULL
            )
        """)

        self.db.commit()

    def _require_unlocked(self):
        if not self.encryption_key or not self.db:
            raise ValueError("Storage not unlocked")

    def _encrypt(self, data: bytes) -> bytes:
        """Encrypt data with storage key"""
        self._require_unlocked()
        nonce = os.urandom(12)
        return nonce + AESGCM(self.encryption_key).encrypt(nonce, data, None)

    def _decrypt(self, encrypted_data: bytes) -> bytes:
        """Decrypt data with storage key"""
        self._require_unlocked()
        nonce, ciphertext = encrypted_data[:12], encrypted_data[12:]
        return AESGCM(self.encryption_key).decrypt(nonce, ciphertext, None)

    def add(self, public_key: Union[str, bytes], secret_key: bytes, key_type: str = "agreement"):
        """
        Store a secret key under its public key.

        Args:
            public_key: Public half, raw or base64
            secret_key: Raw secret half
            key_type: 'agreement' or 'signing'
        """
        if isinstance(public_key, bytes):
            public_key = b64encode(public_key)

        encrypted = self._encrypt(secret_key)
        timestamp = datetime.now(timezone.utc).isoformat()
        self.db.execute(
            "INSERT OR REPLACE INTO keys (public_key, key_type, encrypted_secret, created_at) VALUES (?, ?, ?, ?)",
            (public_key, key_type, encrypted, timestamp)
        )
        self.db.commit()

    def secret_for(self, public_key: str) -> Optional[bytes]:
        """
        Look up the secret key for a public key.

        Returns:
            Raw secret key, or None if unknown
        """
        self._require_unlocked()
        cursor = self.db.execute(
            "SELECT encrypted_secret FROM keys WHERE public_key = ?", (public_key,)
        )
        row = cursor.fetchone()
        return self._decrypt(row[0]) if row else None

    def list_public_keys(self, key_type: Optional[str] = None) -> List[str]:
        """List stored public keys, optionally of one type"""
        self._require_unlocked()
        if key_type is None:
            cursor = self.db.execute("SELECT public_key FROM keys ORDER BY created_at")
        else:
            cursor = self.db.execute(
                "SELECT public_key FROM keys WHERE key_type = ? ORDER BY created_at", (key_type,)
            )
        return [row[0] for row in cursor.fetchall()]

    def _set_metadata(self, key: str, value: bytes):
        self.db.execute(
            "INSERT OR REPLACE INTO metadata (key, encrypted_value) VALUES (?, ?)",
            (key, self._encrypt(value))
        )
        self.db.commit()

    def _get_metadata(self, key: str) -> Optional[bytes]:
        """Get metadata value"""
        cursor = self.db.execute("SELECT encrypted_value FROM metadata WHERE key = ?", (key,))
        row = cursor.fetchone()
        return self._decrypt(row[0]) if row else None

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None
