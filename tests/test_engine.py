import asyncio
import json
import threading

import pytest

from proof_vault.core.database import SQLiteProofIndex
from proof_vault.core.errors import (
    IndexPersistFailure,
    InputError,
    ProviderFailure,
    StoreMiss,
    StoreUnavailable,
    StoreWriteFailure,
    UnsupportedProviderError,
)
from proof_vault.core.storage import LocalContentStore
from proof_vault.models.proof import ProofRecord, VerifyOutcome
from proof_vault.services.engine import ProofEngine
from proof_vault.services.fingerprint import fingerprint
from tests.conftest import FIXED_TIME, FailingIndex


def run(coro):
    return asyncio.run(coro)


def test_generate_returns_description_and_address(engine, store, image_a):
    result = run(engine.generate(image_a))

    assert result.description == "a red circle"
    assert result.model == "provider-x"
    assert result.timestamp == FIXED_TIME
    assert result.address == "mem://1"
    assert result.fingerprint == fingerprint(image_a)


def test_generate_stores_record_and_index_entry(engine, store, index, image_a):
    result = run(engine.generate(image_a))

    record = ProofRecord.from_bytes(store.blobs[result.address])
    assert record.fingerprint == fingerprint(image_a)
    assert record.description == "a red circle"
    assert record.created_at == FIXED_TIME
    assert record.schema_version == "0.1.0"

    entry = index.lookup(fingerprint(image_a))
    assert entry.address == result.address
    assert entry.created_at == FIXED_TIME


def test_generate_then_verify_round_trip(engine, image_a):
    generated = run(engine.generate(image_a))
    verdict = run(engine.verify(image_a))

    assert verdict.valid and verdict.confirmed
    assert verdict.outcome is VerifyOutcome.CONFIRMED
    assert verdict.record.description == generated.description
    assert verdict.record.model == generated.model
    assert verdict.record.created_at == generated.timestamp
    assert verdict.address == generated.address


def test_verify_unknown_image_makes_no_store_call(engine, store, image_a, image_b):
    run(engine.generate(image_a))
    verdict = run(engine.verify(image_b))

    assert not verdict.valid
    assert verdict.reason == "no_proof_found"
    assert store.get_calls == 0


@pytest.mark.parametrize("missing", [None, b""])
def test_missing_image_is_input_error(engine, provider, store, missing):
    with pytest.raises(InputError):
        run(engine.generate(missing))
    with pytest.raises(InputError):
        run(engine.verify(missing))
    assert provider.calls == 0
    assert store.put_calls == 0


def test_selector_chooses_provider(engine, provider, image_a):
    run(engine.generate(image_a, "X"))
    assert provider.calls == 1


def test_unsupported_provider_stores_nothing(engine, provider, store, index, image_a):
    with pytest.raises(UnsupportedProviderError) as excinfo:
        run(engine.generate(image_a, "dall-e"))

    assert excinfo.value.selector == "dall-e"
    assert provider.calls == 0
    assert store.put_calls == 0
    assert index.lookup(fingerprint(image_a)) is None


def test_provider_failure_is_reported_verbatim(engine, provider, store, index, image_a, provider_failure):
    provider.error = provider_failure

    with pytest.raises(ProviderFailure) as excinfo:
        run(engine.generate(image_a))

    assert excinfo.value is provider_failure
    assert excinfo.value.stage == "described"
    assert store.put_calls == 0
    assert index.lookup(fingerprint(image_a)) is None


@pytest.mark.parametrize("error", [StoreUnavailable("down"), StoreWriteFailure("rejected")])
def test_failed_put_writes_no_index_entry(engine, store, index, image_a, error):
    store.put_error = error

    with pytest.raises(type(error)) as excinfo:
        run(engine.generate(image_a))

    assert excinfo.value.stage == "recorded"
    assert index.lookup(fingerprint(image_a)) is None
    assert index.count() == 0


def test_failed_upsert_reports_address(tmp_path, registry, store, image_a):
    index = FailingIndex(tmp_path / "vault.db")
    index.initialize()
    engine = ProofEngine(index, registry, store, default_provider="provider-x", clock=lambda: FIXED_TIME)

    with pytest.raises(IndexPersistFailure) as excinfo:
        run(engine.generate(image_a))

    assert excinfo.value.address == "mem://1"
    assert excinfo.value.fingerprint == fingerprint(image_a)
    assert excinfo.value.details() == {"address": "mem://1", "fingerprint": fingerprint(image_a)}
    assert "mem://1" in store.blobs


def test_regenerate_is_last_write_wins(engine, store, index, image_a):
    first = run(engine.generate(image_a))
    second = run(engine.generate(image_a))

    assert first.address != second.address
    assert index.lookup(fingerprint(image_a)).address == second.address
    assert run(engine.verify(image_a)).address == second.address
    # The earlier record is orphaned, not deleted.
    assert first.address in store.blobs


@pytest.mark.parametrize("error", [StoreUnavailable("down"), StoreMiss("mem://1"), TimeoutError("slow")])
def test_unreachable_store_gives_caveat_not_error(engine, store, image_a, error):
    generated = run(engine.generate(image_a))
    store.get_error = error

    verdict = run(engine.verify(image_a))

    assert verdict.valid
    assert not verdict.confirmed
    assert verdict.caveat == "record_unavailable"
    assert verdict.reason is None
    assert verdict.address == generated.address


def test_record_for_other_image_is_hash_mismatch(engine, store, image_a, image_b):
    generated = run(engine.generate(image_a))
    forged = ProofRecord(
        fingerprint=fingerprint(image_b), description="x", model="y", created_at=1,
    )
    store.blobs[generated.address] = forged.to_bytes()

    verdict = run(engine.verify(image_a))

    assert not verdict.valid
    assert verdict.outcome is VerifyOutcome.HASH_MISMATCH


@pytest.mark.parametrize("garbage", [b"\x00\x01garbage", b"{}", json.dumps({"image_hash": 5}).encode()])
def test_malformed_record_is_hash_mismatch(engine, store, image_a, garbage):
    generated = run(engine.generate(image_a))
    store.blobs[generated.address] = garbage

    verdict = run(engine.verify(image_a))

    assert verdict.outcome is VerifyOutcome.HASH_MISMATCH
    assert verdict.reason == "hash_mismatch"


def test_concurrent_requests_are_independent(engine, index, image_a, image_b):
    async def scenario():
        return await asyncio.gather(
            engine.generate(image_a),
            engine.generate(image_b),
            engine.verify(b"never seen"),
        )

    gen_a, gen_b, verdict = run(scenario())

    assert gen_a.address != gen_b.address
    assert index.lookup(fingerprint(image_a)).address == gen_a.address
    assert index.lookup(fingerprint(image_b)).address == gen_b.address
    assert verdict.reason == "no_proof_found"


def test_example_from_docs(engine, image_a, image_b):
    generated = run(engine.generate(image_a))
    assert (generated.description, generated.model, generated.timestamp, generated.address) == (
        "a red circle", "provider-x", FIXED_TIME, "mem://1",
    )

    verdict_a = run(engine.verify(image_a))
    assert (verdict_a.valid, verdict_a.record.description, verdict_a.record.model,
            verdict_a.record.created_at) == (True, "a red circle", "provider-x", FIXED_TIME)

    verdict_b = run(engine.verify(image_b))
    assert (verdict_b.valid, verdict_b.reason) == (False, "no_proof_found")


class SlowIndex(SQLiteProofIndex):
    """Blocks inside upsert until released."""

    def __init__(self, path):
        super().__init__(path)
        self.started = threading.Event()
        self.release = threading.Event()
        self.finished = threading.Event()

    def upsert(self, fingerprint, address, created_at):
        self.started.set()
        self.release.wait(5)
        try:
            return super().upsert(fingerprint, address, created_at)
        finally:
            self.finished.set()


def test_cancelled_generate_still_completes_index_write(tmp_path, registry, store, image_a):
    index = SlowIndex(tmp_path / "vault.db")
    index.initialize()
    engine = ProofEngine(index, registry, store, default_provider="provider-x", clock=lambda: FIXED_TIME)

    async def scenario():
        task = asyncio.create_task(engine.generate(image_a))
        assert await asyncio.to_thread(index.started.wait, 5)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        index.release.set()
        assert await asyncio.to_thread(index.finished.wait, 5)

    run(scenario())

    entry = index.lookup(fingerprint(image_a))
    assert entry.address == "mem://1"
    assert entry.created_at == FIXED_TIME


def test_regenerate_with_local_store_gives_distinct_addresses(tmp_path, index, registry, image_a):
    store = LocalContentStore(tmp_path / "proofs")
    engine = ProofEngine(index, registry, store, default_provider="provider-x", clock=lambda: FIXED_TIME)

    first = run(engine.generate(image_a))
    second = run(engine.generate(image_a))

    assert first.address != second.address
    assert index.lookup(fingerprint(image_a)).address == second.address
    assert run(engine.verify(image_a)).confirmed
