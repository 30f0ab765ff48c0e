"""
Credential encryption/decryption for store tokens, app secrets and webhook payloads.
"""
import json
import base64
from typing import Any, Optional

from cryptography.fernet import Fernet

from printlink.config import settings

def get_encryption_key() -> bytes:
    """Derive the Fernet key from ENCRYPTION_KEY"""
    key_str = settings.ENCRYPTION_KEY
    # Ensure key is 32 bytes for Fernet
    key_bytes = key_str.encode()[:32].ljust(32, b'0')
    return base64.urlsafe_b64encode(key_bytes)

def encrypt_token(token: str) -> str:
    """Encrypt a token"""
    f = Fernet(get_encryption_key())
    return f.encrypt(token.encode()).decode()

def decrypt_token(encrypted: str) -> str:
    """Decrypt a token"""
    f = Fernet(get_encryption_key())
    return f.decrypt(encrypted.encode()).decode()


def encrypt_payload(payload: Any) -> str:
    """Serialize and encrypt a webhook payload for storage."""
    return encrypt_token(json.dumps(payload, default=str))


def decrypt_payload(ciphertext: Optional[str]) -> Any:
    if not ciphertext:
        return None
    return json.loads(decrypt_token(ciphertext))


def store_access_token(store) -> str:
    """Decrypted access token for a store, or empty string if none is saved."""
    if not store.access_token:
        return ""
    return decrypt_token(store.access_token).strip()
