"""
Protocol definitions for the collaborators of a context session.

Defines interface contracts for the boundaries medctx consumes but does
not own:
- DocumentStoreProtocol: where source documents live (persistence and
  encryption at rest are handled by the implementer)
- Decryptor: turns an encrypted embedding blob back into vector bytes

InMemoryDocumentStore is a plain dict-backed implementation used by the
CLI (documents read from a JSON file) and by tests.
"""

import copy
import logging
from typing import Iterable, Mapping, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class DocumentStoreProtocol(Protocol):
    """
    Source of the documents a session searches.

    Documents are mappings with at least an ``id`` key. Implemented by:
    - InMemoryDocumentStore (JSON corpus, tests)
    - the application's encrypted document store
    """

    def get_document(self, document_id: str) -> Optional[dict]: ...

    def update_document(self, document: Mapping) -> None: ...

    def list_documents(self) -> list[dict]: ...


@runtime_checkable
class Decryptor(Protocol):
    """
    Decrypts an embedding blob.

    The plaintext is the vector as packed little-endian float32 values.
    """

    def decrypt(self, ciphertext: bytes, key: bytes) -> bytes: ...


class InMemoryDocumentStore:
    """Dict-backed DocumentStoreProtocol implementation."""

    def __init__(self, documents: Iterable[Mapping] = ()) -> None:
        self._documents: dict[str, dict] = {}
        for doc in documents:
            self.update_document(doc)

    def get_document(self, document_id: str) -> Optional[dict]:
        doc = self._documents.get(document_id)
        return copy.deepcopy(doc) if doc is not None else None

    def update_document(self, document: Mapping) -> None:
        """Insert or replace a document by its ``id``.

        Raises:
            ValueError: If the document has no id
        """
        document_id = document.get("id")
        if not document_id:
            raise ValueError("Document must have an 'id'")
        self._documents[str(document_id)] = copy.deepcopy(dict(document))

    def list_documents(self) -> list[dict]:
        return [copy.deepcopy(doc) for doc in self._documents.values()]

    def __len__(self) -> int:
        return len(self._documents)
