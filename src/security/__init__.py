"""Credential vault module.

This module provides:
- AES-256-GCM decryption of per-user API tokens stored by the web app
- Key rotation (current + previous secret)

Usage:
    from src.security import reveal

    api_token = reveal(linked.api_token_encrypted)
"""

from src.security.vault import CredentialVault, IntegrityError, get_vault, reveal

__all__ = [
    "CredentialVault",
    "IntegrityError",
    "get_vault",
    "reveal",
]
