"""Fernet encryption for provider credentials stored on Connection rows."""

import os
from functools import lru_cache
from cryptography.fernet import Fernet, MultiFernet
from dotenv import load_dotenv

load_dotenv()

# Comma-separated; the first key encrypts, all keys decrypt (for rotation).
# Generate one with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY")


@lru_cache
def get_fernet() -> MultiFernet:
    """Build the cipher from ENCRYPTION_KEY."""
    keys = [k.strip() for k in (ENCRYPTION_KEY or "").split(",") if k.strip()]
    if not keys:
        raise ValueError("ENCRYPTION_KEY environment variable is required")
    return MultiFernet([Fernet(k.encode()) for k in keys])


def encrypt_credential(credential: str) -> str:
    """
    Encrypt a provider access credential for storage.

    Args:
        credential: Plaintext access token issued by the provider

    Returns:
        URL-safe ciphertext for a text column
    """
    return get_fernet().encrypt(credential.encode()).decode()


def decrypt_credential(ciphertext: str) -> str:
    """
    Decrypt a stored provider credential with any configured key.

    Raises:
        cryptography.fernet.InvalidToken: If no configured key matches
    """
    return get_fernet().decrypt(ciphertext.encode()).decode()
