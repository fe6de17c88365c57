"""
Keyed one-way hashing for client identifiers.
"""

from typing import Optional

from cryptography.hazmat.primitives import hashes, hmac

from config import guest_hash_secret


def _normalize_ip(ip: Optional[str]) -> str:
    value = str(ip or "").strip().lower()
    return value or "unknown"


def hash_client_ip(ip: Optional[str], secret: Optional[str] = None) -> str:
    """
    Derive the guest lookup key for a client IP.

    Args:
        ip: Client IP address as seen by the API
        secret: Override for the process-wide hashing key

    Returns:
        Hex-encoded HMAC-SHA256 digest of the normalized IP
    """
    key = (secret if secret is not None else guest_hash_secret()).encode()
    signer = hmac.HMAC(key, hashes.SHA256())
    signer.update(_normalize_ip(ip).encode())
    return signer.finalize().hex()
