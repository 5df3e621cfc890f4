"""
Error taxonomy shared by the proof engine and its collaborators.

Every error carries a stable ``code`` used in HTTP error bodies and an
``http_status`` the API layer maps it to. Errors with ``exposed = False``
are answered with the generic internal error body instead. ``stage`` is filled in by the engine
with the generate step that failed.
"""

from typing import Any, Dict, Optional


class ProofVaultError(Exception):
    """Base class for all expected proof vault failures."""

    code = "proof_vault_error"
    http_status = 500
    # False hides the message and code from API callers
    exposed = True

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def details(self) -> Dict[str, Any]:
        """Extra context safe to return to API callers."""
        return {}


class InputError(ProofVaultError):
    """Caller-fixable request problem (e.g. no image payload)."""

    code = "input_error"
    http_status = 400


class PayloadTooLargeError(InputError):
    code = "payload_too_large"
    http_status = 413

    def __init__(self, max_size: int):
        super().__init__(f"File size exceeds maximum allowed size of {max_size} bytes")
        self.max_size = max_size

    def details(self) -> Dict[str, Any]:
        return {"max_size": self.max_size}


class UnsupportedProviderError(ProofVaultError):
    code = "unsupported_provider"

    def __init__(self, selector: Optional[str]):
        super().__init__(f"Unsupported model: {selector}")
        self.selector = selector

    def details(self) -> Dict[str, Any]:
        return {"selector": self.selector}


class ProviderFailure(ProofVaultError):
    """A vision backend call failed (transport, timeout, bad response)."""

    code = "provider_failure"

    def __init__(self, backend: str, cause: Any):
        super().__init__(f"{backend} vision request failed: {cause}")
        self.backend = backend
        self.cause = cause

    def details(self) -> Dict[str, Any]:
        return {"backend": self.backend}


class StoreError(ProofVaultError):
    """Base class for content store failures."""

    code = "store_error"


class StoreUnavailable(StoreError):
    """Backend could not be reached or authenticated."""

    code = "store_unavailable"


class StoreWriteFailure(StoreError):
    """Backend was reachable but rejected or botched the write."""

    code = "store_write_failure"


class StoreMiss(StoreError):
    """Backend was reachable but has no blob for the address."""

    code = "store_miss"

    def __init__(self, address: str):
        super().__init__(f"No content stored at {address}")
        self.address = address


class IndexStorageError(ProofVaultError):
    """The local index medium failed a read or write.

    Reported to callers as an opaque internal error.
    """

    code = "index_error"
    exposed = False


class IndexPersistFailure(ProofVaultError):
    """The proof record was stored remotely but the local index write failed.

    The address is reported so the record can be re-linked by hand.
    """

    code = "index_persist_failure"

    def __init__(self, fingerprint: str, address: str, cause: Any):
        super().__init__(
            f"Proof stored at {address} but index update failed: {cause}"
        )
        self.fingerprint = fingerprint
        self.address = address
        self.cause = cause

    def details(self) -> Dict[str, Any]:
        return {"address": self.address, "fingerprint": self.fingerprint}
