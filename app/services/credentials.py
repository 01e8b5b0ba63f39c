"""
Credential encryption/decryption and provider credential access.
"""
import json
import base64
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from app.config import settings
from app.models import ProviderCredential

logger = logging.getLogger(__name__)


def get_encryption_key() -> bytes:
    """Fernet key derived from ENCRYPTION_KEY (padded/truncated to 32 bytes)."""
    key_bytes = settings.ENCRYPTION_KEY.encode()[:32].ljust(32, b'0')
    return base64.urlsafe_b64encode(key_bytes)


def encrypt_token(token: str) -> str:
    f = Fernet(get_encryption_key())
    return f.encrypt(token.encode()).decode()


def decrypt_token(encrypted: str) -> str:
    f = Fernet(get_encryption_key())
    return f.decrypt(encrypted.encode()).decode()


def save_provider_credentials(db: Session, operation_id: str, provider_id: str, values: dict[str, Any]) -> ProviderCredential:
    """Create or replace the encrypted credential blob for (operation, provider). Caller commits."""
    cred = (
        db.query(ProviderCredential)
        .filter(
            ProviderCredential.operation_id == operation_id,
            ProviderCredential.provider_id == provider_id,
        )
        .first()
    )
    if cred is None:
        cred = ProviderCredential(operation_id=operation_id, provider_id=provider_id)
        db.add(cred)
    cred.value_encrypted = encrypt_token(json.dumps(values))
    return cred


def get_provider_credentials(db: Session, operation_id: str, provider_id: str) -> dict[str, Any] | None:
    """Return decrypted provider credentials dict for the given operation and provider, or None."""
    cred = (
        db.query(ProviderCredential)
        .filter(
            ProviderCredential.operation_id == operation_id,
            ProviderCredential.provider_id == provider_id,
        )
        .first()
    )
    if not cred or not cred.value_encrypted:
        return None
    try:
        dec = decrypt_token(cred.value_encrypted)
    except InvalidToken:
        logger.warning("Provider credentials for %s/%s cannot be decrypted (ENCRYPTION_KEY changed?)", operation_id, provider_id)
        return None
    if dec.strip().startswith("{"):
        return json.loads(dec)
    return {"apiKey": dec}
