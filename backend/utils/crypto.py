import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

from config.env import BANK_DATA_ENCRYPTION_KEY
from utils.errors import ValidationError

logger = logging.getLogger(__name__)


def _build_fernet(seed: str | None = BANK_DATA_ENCRYPTION_KEY) -> Fernet | None:
    seed = (seed or "").strip()
    if not seed:
        return None
    key = base64.urlsafe_b64encode(hashlib.sha256(seed.encode("utf-8")).digest())
    return Fernet(key)


def mask_account_number(value: str) -> str:
    digits = (value or "").strip()
    if len(digits) <= 4:
        return "X" * len(digits)
    return "X" * (len(digits) - 4) + digits[-4:]


def encrypt_sensitive_value(value: str, seed: str | None = BANK_DATA_ENCRYPTION_KEY) -> str | None:
    """
    Encrypt a bank account number for the payout ledger. Without a configured
    key (development only, production refuses to start) nothing is stored.
    """
    if not value:
        raise ValidationError("Sensitive value missing")
    fernet = _build_fernet(seed)
    if fernet is None:
        logger.warning("BANK_DATA_ENCRYPTION_KEY_MISSING storing masked account only")
        return None
    return fernet.encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_sensitive_value(token: str, seed: str | None = BANK_DATA_ENCRYPTION_KEY) -> str:
    if not token:
        raise ValidationError("Encrypted sensitive value missing")
    fernet = _build_fernet(seed)
    if fernet is None:
        raise ValidationError("Bank data encryption key is not configured")
    try:
        raw = fernet.decrypt(token.encode("utf-8"))
    except InvalidToken:
        raise ValidationError("Invalid encrypted sensitive value")
    return raw.decode("utf-8")
