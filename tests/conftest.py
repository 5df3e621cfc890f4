import io

import pytest
from PIL import Image

from proof_vault.core.database import SQLiteProofIndex
from proof_vault.core.errors import IndexStorageError, ProviderFailure, StoreMiss, StoreUnavailable
from proof_vault.core.storage import ContentStore
from proof_vault.models.proof import Description
from proof_vault.services.engine import ProofEngine
from proof_vault.services.vision import DescriptionProvider, ProviderRegistry

FIXED_TIME = 1700000000


def make_png(color=(255, 0, 0), size=(8, 8)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


class InMemoryContentStore(ContentStore):
    """Hands out a fresh address for every put, even for identical bytes."""

    backend = "memory"

    def __init__(self):
        self.blobs = {}
        self.put_calls = 0
        self.get_calls = 0
        self.put_error = None
        self.get_error = None

    def put(self, data: bytes) -> str:
        self.put_calls += 1
        if self.put_error is not None:
            raise self.put_error
        address = f"mem://{self.put_calls}"
        self.blobs[address] = data
        return address

    def get(self, address: str) -> bytes:
        self.get_calls += 1
        if self.get_error is not None:
            raise self.get_error
        if address not in self.blobs:
            raise StoreMiss(address)
        return self.blobs[address]


class FakeProvider(DescriptionProvider):
    name = "provider-x"
    selectors = ("provider-x", "x")

    def __init__(self, description="a red circle", model="provider-x"):
        self.description = description
        self.model = model
        self.calls = 0
        self.error = None

    def describe(self, data: bytes) -> Description:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return Description(description=self.description, model=self.model)


class FailingIndex(SQLiteProofIndex):
    def upsert(self, fingerprint, address, created_at):
        raise IndexStorageError("disk full")


@pytest.fixture
def image_a():
    return make_png((255, 0, 0))


@pytest.fixture
def image_b():
    return make_png((0, 0, 255))


@pytest.fixture
def index(tmp_path):
    idx = SQLiteProofIndex(tmp_path / "vault.db")
    idx.initialize()
    return idx


@pytest.fixture
def store():
    return InMemoryContentStore()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def registry(provider):
    return ProviderRegistry([provider])


@pytest.fixture
def engine(index, registry, store):
    return ProofEngine(
        index=index,
        providers=registry,
        store=store,
        default_provider="provider-x",
        clock=lambda: FIXED_TIME,
    )


@pytest.fixture
def provider_failure():
    return ProviderFailure("provider-x", "timeout")


@pytest.fixture
def store_unavailable():
    return StoreUnavailable("connection refused")
