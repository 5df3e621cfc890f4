"""
Proof lifecycle engine: generate and verify.

Generate walks ``received -> fingerprinted -> described -> recorded ->
indexed -> done``. A failure at any step raises the collaborator's error with
``stage`` set to the step that failed. Nothing is written to the local index
unless the record was stored first.

Verify walks ``received -> fingerprinted -> looked_up -> fetched|missing ->
verdict`` and never raises for "no proof", "can't confirm" or "mismatch";
those come back as a ``Verdict``.

Blocking collaborator calls run in worker threads so that concurrent requests
only suspend on provider, store and index I/O.
"""

import asyncio
import structlog
from enum import Enum
from typing import Callable, Optional

from proof_vault.config import SCHEMA_VERSION
from proof_vault.core.database import ProofIndex
from proof_vault.core.errors import (
    IndexPersistFailure,
    InputError,
    ProofVaultError,
    StoreMiss,
)
from proof_vault.core.storage import ContentStore
from proof_vault.core.utils import current_timestamp
from proof_vault.models.proof import (
    GenerationResult,
    MalformedRecordError,
    ProofRecord,
    Verdict,
    VerifyOutcome,
)
from proof_vault.services.fingerprint import fingerprint as compute_fingerprint
from proof_vault.services.vision import ProviderRegistry

logger = structlog.get_logger()


class GenerateStage(str, Enum):
    RECEIVED = "received"
    FINGERPRINTED = "fingerprinted"
    DESCRIBED = "described"
    RECORDED = "recorded"
    INDEXED = "indexed"
    DONE = "done"


class ProofEngine:
    def __init__(
        self,
        index: ProofIndex,
        providers: ProviderRegistry,
        store: ContentStore,
        default_provider: str = "openai",
        clock: Callable[[], int] = current_timestamp,
        schema_version: str = SCHEMA_VERSION,
    ):
        self.index = index
        self.providers = providers
        self.store = store
        self.default_provider = default_provider
        self.clock = clock
        self.schema_version = schema_version

    @staticmethod
    def _require_image(image: Optional[bytes]) -> bytes:
        if not image:
            raise InputError("missing image", stage=GenerateStage.RECEIVED.value)
        return image

    async def generate(self, image: Optional[bytes], provider: Optional[str] = None) -> GenerationResult:
        image = self._require_image(image)
        selector = provider or self.default_provider

        image_hash = compute_fingerprint(image)
        log = logger.bind(fingerprint=image_hash, provider=selector)
        log.info("Generating proof")

        stage = GenerateStage.DESCRIBED
        try:
            ai = await asyncio.to_thread(self.providers.describe, image, selector)

            record = ProofRecord(
                fingerprint=image_hash,
                description=ai.description,
                model=ai.model,
                created_at=int(self.clock()),
                schema_version=self.schema_version,
            )

            stage = GenerateStage.RECORDED
            address = await asyncio.to_thread(self.store.put, record.to_bytes())
            log = log.bind(address=address)
        except ProofVaultError as e:
            e.stage = stage.value
            log.error("Proof generation failed", stage=stage.value, error_code=e.code, error=str(e))
            raise

        stage = GenerateStage.INDEXED
        try:
            # A cancelled request must not abandon the index write.
            await asyncio.shield(asyncio.to_thread(
                self.index.upsert, image_hash, address, record.created_at
            ))
        except Exception as e:
            log.error("Proof stored but index update failed",
                      stage=stage.value, error=str(e), exc_info=True)
            raise IndexPersistFailure(image_hash, address, e) from e

        log.info("Proof generated", model=record.model, timestamp=record.created_at)
        return GenerationResult(
            fingerprint=image_hash,
            description=record.description,
            model=record.model,
            timestamp=record.created_at,
            address=address,
        )

    async def verify(self, image: Optional[bytes]) -> Verdict:
        image = self._require_image(image)

        image_hash = compute_fingerprint(image)
        log = logger.bind(fingerprint=image_hash)

        entry = await asyncio.to_thread(self.index.lookup, image_hash)
        if entry is None:
            log.info("No proof found")
            return Verdict(outcome=VerifyOutcome.NO_PROOF_FOUND, fingerprint=image_hash)

        log = log.bind(address=entry.address)
        try:
            data = await asyncio.to_thread(self.store.get, entry.address)
        except StoreMiss as e:
            log.warning("Proof record missing from store", error=str(e))
            return Verdict(VerifyOutcome.RECORD_UNAVAILABLE, image_hash, address=entry.address)
        except Exception as e:
            log.warning("Proof record unavailable",
                        error_code=getattr(e, "code", None), error=str(e), exc_info=True)
            return Verdict(VerifyOutcome.RECORD_UNAVAILABLE, image_hash, address=entry.address)

        try:
            record = ProofRecord.from_bytes(data)
        except MalformedRecordError as e:
            log.warning("Stored proof record is malformed", error=str(e))
            return Verdict(VerifyOutcome.HASH_MISMATCH, image_hash, address=entry.address)

        if record.fingerprint != image_hash:
            log.warning("Stored proof record fingerprint mismatch",
                        record_fingerprint=record.fingerprint)
            return Verdict(VerifyOutcome.HASH_MISMATCH, image_hash, address=entry.address)

        log.info("Proof verified", model=record.model, timestamp=record.created_at)
        return Verdict(VerifyOutcome.CONFIRMED, image_hash, address=entry.address, record=record)
