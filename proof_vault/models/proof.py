"""
Proof record, index entry and engine result types.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from proof_vault.config import SCHEMA_VERSION


class MalformedRecordError(ValueError):
    """Fetched bytes do not decode to a proof record."""
    pass


class ProofRecord(BaseModel):
    """Immutable record persisted in the content store.

    Serialized with the vault wire keys (``image_hash``, ``timestamp``,
    ``vault_version``); Python code uses the field names.
    """

    model_config = ConfigDict(
        frozen=True,
        strict=True,
        populate_by_name=True,
        protected_namespaces=(),
    )

    fingerprint: str = Field(..., alias="image_hash", description="SHA-256 hex of the image bytes")
    description: str = Field(..., description="AI generated description")
    model: str = Field(..., description="Model that produced the description")
    created_at: int = Field(..., alias="timestamp", description="Unix seconds at generation")
    schema_version: str = Field(default=SCHEMA_VERSION, alias="vault_version")

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True, indent=2).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: Union[bytes, str]) -> "ProofRecord":
        try:
            return cls.model_validate_json(data)
        except (ValidationError, UnicodeDecodeError) as e:
            raise MalformedRecordError(f"Not a proof record: {e}") from e


@dataclass(frozen=True)
class IndexEntry:
    fingerprint: str
    address: str
    created_at: int


@dataclass(frozen=True)
class Description:
    """What a vision provider returns for one image."""
    description: str
    model: str


@dataclass(frozen=True)
class GenerationResult:
    fingerprint: str
    description: str
    model: str
    timestamp: int
    address: str


class VerifyOutcome(str, Enum):
    """Tagged verify result; never collapse to a boolean before reporting."""
    CONFIRMED = "confirmed"
    RECORD_UNAVAILABLE = "record_unavailable"
    NO_PROOF_FOUND = "no_proof_found"
    HASH_MISMATCH = "hash_mismatch"


@dataclass(frozen=True)
class Verdict:
    outcome: VerifyOutcome
    fingerprint: str
    address: Optional[str] = None
    record: Optional[ProofRecord] = None

    @property
    def valid(self) -> bool:
        """True when a proof exists; check ``confirmed`` for a checked match."""
        return self.outcome in (VerifyOutcome.CONFIRMED, VerifyOutcome.RECORD_UNAVAILABLE)

    @property
    def confirmed(self) -> bool:
        return self.outcome is VerifyOutcome.CONFIRMED

    @property
    def caveat(self) -> Optional[str]:
        if self.outcome is VerifyOutcome.RECORD_UNAVAILABLE:
            return VerifyOutcome.RECORD_UNAVAILABLE.value
        return None

    @property
    def reason(self) -> Optional[str]:
        if self.outcome in (VerifyOutcome.NO_PROOF_FOUND, VerifyOutcome.HASH_MISMATCH):
            return self.outcome.value
        return None
