import hashlib
import os
import re
import tempfile
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from google.api_core.exceptions import Forbidden, ServerError, Unauthorized
from google.auth.exceptions import DefaultCredentialsError, TransportError
from google.cloud import storage
from google.cloud.exceptions import GoogleCloudError, NotFound

from proof_vault.config import Settings
from proof_vault.core.errors import StoreMiss, StoreUnavailable, StoreWriteFailure
from proof_vault.core.utils import ensure_dir_exists, format_file_size

logger = structlog.get_logger()

_OBJECT_KEY_RE = re.compile(r"^[0-9a-f]{64}-[0-9a-f]{32}$")

# HTTP statuses meaning "can't reach or authenticate", as opposed to a rejected write
UNAVAILABLE_STATUSES = {401, 403, 408, 429, 500, 502, 503, 504}


def content_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def object_key(data: bytes) -> str:
    """SHA-256 of the blob plus a per-write id; every put gets its own key."""
    return f"{content_digest(data)}-{uuid.uuid4().hex}"


class ContentStore(ABC):
    """Content-addressed blob store holding serialized proof records.

    ``put`` either returns an address or raises; ``get`` distinguishes an
    unreachable backend (StoreUnavailable) from a missing blob (StoreMiss).
    """

    backend = "unknown"

    @abstractmethod
    def put(self, data: bytes) -> str:
        """Store bytes and return their content address."""

    @abstractmethod
    def get(self, address: str) -> bytes:
        """Fetch bytes previously stored at ``address``."""

    def health_check(self) -> Dict[str, Any]:
        return {"backend": self.backend, "available": True, "error": None}


class WalrusContentStore(ContentStore):
    """Walrus blob storage through its HTTP publisher and aggregator."""

    backend = "walrus"
    scheme = "walrus://"

    def __init__(
        self,
        publisher_url: str,
        aggregator_url: str,
        epochs: int = 5,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.publisher_url = publisher_url.rstrip("/")
        self.aggregator_url = aggregator_url.rstrip("/")
        self.epochs = epochs
        self.timeout = timeout
        self.session = session or self._create_session()

        logger.info("Walrus content store initialized",
                    publisher=self.publisher_url, aggregator=self.aggregator_url)

    @staticmethod
    def _create_session() -> requests.Session:
        """HTTP session with retries on idempotent reads only."""
        session = requests.Session()

        retry_strategy = Retry(
            total=3,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "HEAD"],
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _blob_id(self, address: str) -> str:
        if address.startswith(self.scheme):
            return address[len(self.scheme):]
        return address

    def put(self, data: bytes) -> str:
        url = f"{self.publisher_url}/v1/blobs"
        start_time = time.time()

        try:
            response = self.session.put(
                url, params={"epochs": self.epochs}, data=data, timeout=self.timeout
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            logger.error("Walrus publisher unreachable", error=str(e))
            raise StoreUnavailable(f"Walrus publisher unreachable: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.error("Walrus upload failed", error=str(e))
            raise StoreWriteFailure(f"Walrus upload failed: {e}") from e

        if response.status_code in UNAVAILABLE_STATUSES:
            logger.error("Walrus publisher unavailable", status_code=response.status_code)
            raise StoreUnavailable(f"Walrus publisher returned HTTP {response.status_code}")
        if response.status_code >= 400:
            logger.error("Walrus publisher rejected upload",
                         status_code=response.status_code, body=response.text[:200])
            raise StoreWriteFailure(f"Walrus publisher returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise StoreWriteFailure("Walrus publisher returned invalid JSON") from e

        blob_id = None
        if isinstance(body, dict):
            if "newlyCreated" in body:
                blob_id = body["newlyCreated"].get("blobObject", {}).get("blobId")
            elif "alreadyCertified" in body:
                blob_id = body["alreadyCertified"].get("blobId")

        if not blob_id:
            raise StoreWriteFailure("Walrus upload succeeded but no blob id returned")

        address = f"{self.scheme}{blob_id}"
        logger.info("Walrus upload completed successfully",
                    address=address,
                    size=format_file_size(len(data)),
                    upload_time_seconds=round(time.time() - start_time, 2))
        return address

    def get(self, address: str) -> bytes:
        url = f"{self.aggregator_url}/v1/blobs/{self._blob_id(address)}"

        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.warning("Walrus aggregator unreachable", address=address, error=str(e))
            raise StoreUnavailable(f"Walrus aggregator unreachable: {e}") from e

        if response.status_code == 404:
            raise StoreMiss(address)
        if response.status_code >= 400:
            logger.warning("Walrus aggregator error",
                           address=address, status_code=response.status_code)
            raise StoreUnavailable(f"Walrus aggregator returned HTTP {response.status_code}")

        logger.info("Walrus download completed", address=address)
        return response.content

    def health_check(self) -> Dict[str, Any]:
        health = {"backend": self.backend, "available": False, "error": None}
        try:
            response = self.session.get(f"{self.aggregator_url}/v1/api", timeout=5)
            if response.status_code < 500:
                health["available"] = True
            else:
                health["error"] = f"HTTP {response.status_code}"
        except requests.exceptions.RequestException as e:
            health["error"] = str(e)
        return health


class GCSContentStore(ContentStore):
    """Google Cloud Storage bucket; one object per put, named by `object_key`."""

    backend = "gcs"
    scheme = "gs://"

    def __init__(self, bucket_name: str, prefix: str = "proofs",
                 timeout: float = 30.0, client: Optional[storage.Client] = None):
        self.bucket_name = bucket_name
        self.prefix = prefix.strip("/")
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> storage.Client:
        if self._client is None:
            try:
                self._client = storage.Client()
            except DefaultCredentialsError as e:
                logger.error("GCS credentials not available", error=str(e))
                raise StoreUnavailable(f"GCS credentials not available: {e}") from e
            logger.info("GCS client initialized", bucket_name=self.bucket_name)
        return self._client

    def _parse(self, address: str) -> Tuple[str, str]:
        if not address.startswith(self.scheme):
            raise StoreMiss(address)
        path_parts = address[len(self.scheme):].split("/", 1)
        if len(path_parts) != 2 or not path_parts[1]:
            raise StoreMiss(address)
        return path_parts[0], path_parts[1]

    def put(self, data: bytes) -> str:
        blob_path = f"{self.prefix}/{object_key(data)}"
        try:
            bucket = self._get_client().bucket(self.bucket_name)
            blob = bucket.blob(blob_path)
            blob.upload_from_string(data, content_type="application/json", timeout=self.timeout)
        except (Unauthorized, Forbidden, ServerError, TransportError,
                requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            logger.error("GCS unavailable during upload", blob_path=blob_path, error=str(e))
            raise StoreUnavailable(f"GCS unavailable: {e}") from e
        except GoogleCloudError as e:
            logger.error("GCS API error during upload",
                         blob_path=blob_path, error=str(e), error_code=getattr(e, "code", None))
            raise StoreWriteFailure(f"GCS upload failed: {e}") from e

        address = f"{self.scheme}{self.bucket_name}/{blob_path}"
        logger.info("GCS upload completed successfully", address=address)
        return address

    def get(self, address: str) -> bytes:
        bucket_name, blob_path = self._parse(address)
        try:
            blob = self._get_client().bucket(bucket_name).blob(blob_path)
            data = blob.download_as_bytes(timeout=self.timeout)
        except NotFound as e:
            raise StoreMiss(address) from e
        except (GoogleCloudError, TransportError, requests.exceptions.RequestException) as e:
            logger.warning("GCS download failed", address=address, error=str(e))
            raise StoreUnavailable(f"GCS download failed: {e}") from e

        logger.info("GCS download completed", address=address)
        return data

    def health_check(self) -> Dict[str, Any]:
        health = {"backend": self.backend, "available": False, "error": None}
        try:
            self._get_client().bucket(self.bucket_name).exists()
            health["available"] = True
        except Exception as e:
            health["error"] = str(e)
        return health


class LocalContentStore(ContentStore):
    """Filesystem store; each put is written atomically under a fresh key."""

    backend = "local"
    scheme = "local://"

    def __init__(self, root):
        self.root = ensure_dir_exists(root)
        logger.info("Local content store initialized", root=str(self.root))

    def _path(self, key: str) -> Path:
        return self.root / f"{key}.json"

    def put(self, data: bytes) -> str:
        key = object_key(data)
        path = self._path(key)

        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.root, suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            logger.error("Local upload failed", path=str(path), error=str(e))
            raise StoreWriteFailure(f"Local upload failed: {e}") from e

        address = f"{self.scheme}{key}"
        logger.info("Local upload completed successfully", address=address)
        return address

    def get(self, address: str) -> bytes:
        key = address[len(self.scheme):] if address.startswith(self.scheme) else ""
        if not _OBJECT_KEY_RE.match(key):
            raise StoreMiss(address)

        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise StoreMiss(address) from e
        except OSError as e:
            logger.warning("Local download failed", address=address, error=str(e))
            raise StoreUnavailable(f"Local download failed: {e}") from e

    def health_check(self) -> Dict[str, Any]:
        available = self.root.is_dir() and os.access(self.root, os.W_OK)
        return {
            "backend": self.backend,
            "available": available,
            "error": None if available else f"{self.root} is not writable",
        }


def build_content_store(settings: Settings) -> ContentStore:
    """Create the content store selected by ``STORE_BACKEND``."""
    backend = settings.STORE_BACKEND.strip().lower()

    if backend == "walrus":
        return WalrusContentStore(
            publisher_url=settings.WALRUS_PUBLISHER_URL,
            aggregator_url=settings.WALRUS_AGGREGATOR_URL,
            epochs=settings.WALRUS_EPOCHS,
            timeout=settings.STORE_TIMEOUT,
        )
    if backend == "gcs":
        return GCSContentStore(bucket_name=settings.GCS_BUCKET_NAME, timeout=settings.STORE_TIMEOUT)
    if backend == "local":
        return LocalContentStore(settings.LOCAL_STORE_PATH)

    raise ValueError(f"Unsupported store backend: {settings.STORE_BACKEND}")
