from __future__ import annotations

from ..contracts import ChainflowError


class NonceAllocationError(ChainflowError):
    """An allocation request was rejected."""

    retryable = False


class TransactionMetaLocked(NonceAllocationError):
    """Another allocator already holds (or consumed) the transaction meta lock."""


class SignerAddressNotFound(NonceAllocationError):
    """The logical signer reference has no address on the requested chain."""


class NonceSourceUnavailable(NonceAllocationError):
    """Neither the nonce cache nor any chain node could supply a nonce."""

    retryable = True


class NonceAllocationInterrupted(NonceAllocationError):
    """Allocation aborted by an infrastructure error; the meta row was released."""

    retryable = True
