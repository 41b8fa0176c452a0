"""Sequential nonce allocation for transaction-submitting steps."""

from .cache import InMemoryNonceCache, NonceCache, RedisNonceCache, get_nonce_cache
from .errors import (
    NonceAllocationError,
    NonceAllocationInterrupted,
    NonceSourceUnavailable,
    SignerAddressNotFound,
    TransactionMetaLocked,
)
from .manager import NonceAllocation, NonceManager
from .source import NonceSource, nonce_key

__all__ = [
    "InMemoryNonceCache",
    "NonceAllocation",
    "NonceAllocationError",
    "NonceAllocationInterrupted",
    "NonceCache",
    "NonceManager",
    "NonceSource",
    "NonceSourceUnavailable",
    "RedisNonceCache",
    "SignerAddressNotFound",
    "TransactionMetaLocked",
    "get_nonce_cache",
    "nonce_key",
]
