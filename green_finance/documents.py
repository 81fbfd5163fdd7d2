"""
Document Storage Module

Blob storage for loan documents and profile pictures. A blob store accepts
raw bytes under a bucket/path and returns a public URL; failures surface as
StorageError.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple, Union
import threading

from .errors import StorageError
from .logging_config import get_logger

logger = get_logger("green_finance.documents")


class DocumentType(Enum):
    """Supporting documents attached to a loan application"""
    ID_DOCUMENT = "id_document"
    PROOF_OF_INCOME = "proof_of_income"
    BANK_STATEMENT = "bank_statement"

    @property
    def url_field(self) -> str:
        """Column on the application record holding the uploaded URL"""
        return f"{self.value}_url"

    @property
    def label(self) -> str:
        return {
            DocumentType.ID_DOCUMENT: "ID Document",
            DocumentType.PROOF_OF_INCOME: "Proof of Income",
            DocumentType.BANK_STATEMENT: "Bank Statement",
        }[self]


REQUIRED_DOCUMENTS = (DocumentType.ID_DOCUMENT, DocumentType.BANK_STATEMENT)


@dataclass
class Document:
    """An uploaded file held in memory"""
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def extension(self) -> str:
        if '.' not in self.filename:
            return "bin"
        return self.filename.rsplit('.', 1)[-1].lower() or "bin"


class BlobStore(ABC):
    """Abstract interface for blob storage backends"""

    @abstractmethod
    def upload(self, bucket: str, path: str, data: bytes,
               content_type: Optional[str] = None) -> str:
        """Store bytes and return the public URL"""
        pass

    @abstractmethod
    def download(self, bucket: str, path: str) -> bytes:
        """Fetch stored bytes"""
        pass


class InMemoryBlobStore(BlobStore):
    """In-memory blob store for testing"""

    def __init__(self, base_url: str = "memory://"):
        self.base_url = base_url
        self._blobs: Dict[Tuple[str, str], bytes] = {}
        self._lock = threading.Lock()

    def upload(self, bucket: str, path: str, data: bytes,
               content_type: Optional[str] = None) -> str:
        with self._lock:
            if (bucket, path) in self._blobs:
                raise StorageError(f"Object {bucket}/{path} already exists")
            self._blobs[(bucket, path)] = bytes(data)
        return f"{self.base_url}{bucket}/{path}"

    def download(self, bucket: str, path: str) -> bytes:
        with self._lock:
            if (bucket, path) not in self._blobs:
                raise StorageError(f"Object {bucket}/{path} not found")
            return self._blobs[(bucket, path)]

    def __len__(self) -> int:
        return len(self._blobs)


class LocalBlobStore(BlobStore):
    """Blob store writing into a local directory, one sub-directory per bucket"""

    def __init__(self, root: Union[str, Path], base_url: str = "/files"):
        self.root = Path(root)
        self.base_url = base_url.rstrip('/')

    def _resolve(self, bucket: str, path: str) -> Path:
        target = (self.root / bucket / path).resolve()
        if not str(target).startswith(str((self.root / bucket).resolve())):
            raise StorageError(f"Path escapes bucket: {path}")
        return target

    def upload(self, bucket: str, path: str, data: bytes,
               content_type: Optional[str] = None) -> str:
        target = self._resolve(bucket, path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, 'xb') as handle:
                handle.write(data)
        except OSError as e:
            raise StorageError(f"Upload to {bucket}/{path} failed: {e}") from e
        return f"{self.base_url}/{bucket}/{path}"

    def download(self, bucket: str, path: str) -> bytes:
        try:
            return self._resolve(bucket, path).read_bytes()
        except OSError as e:
            raise StorageError(f"Download of {bucket}/{path} failed: {e}") from e


class SupabaseBlobStore(BlobStore):
    """Supabase Storage backend using public bucket URLs"""

    def __init__(self, url: str = "", key: str = "", client=None):
        if client is None:
            from supabase import create_client
            client = create_client(url, key)
        self.client = client

    def upload(self, bucket: str, path: str, data: bytes,
               content_type: Optional[str] = None) -> str:
        options = {"content-type": content_type} if content_type else None
        try:
            storage = self.client.storage.from_(bucket)
            storage.upload(path, data, options)
            return storage.get_public_url(path)
        except Exception as e:
            logger.error(f"Supabase upload to {bucket}/{path} failed: {e}")
            raise StorageError(f"Upload to {bucket}/{path} failed: {e}") from e

    def download(self, bucket: str, path: str) -> bytes:
        try:
            return self.client.storage.from_(bucket).download(path)
        except Exception as e:
            raise StorageError(f"Download of {bucket}/{path} failed: {e}") from e


def create_blob_store(backend: str, directory: str = "uploads", base_url: str = "/files",
                      supabase_url: str = "", supabase_key: str = "") -> BlobStore:
    """Build a blob store by name (memory, local or supabase)"""
    if backend == "memory":
        return InMemoryBlobStore()
    if backend == "local":
        return LocalBlobStore(directory, base_url)
    if backend == "supabase":
        return SupabaseBlobStore(supabase_url, supabase_key)
    raise ValueError(f"Unknown blob backend: {backend}")
