"""
Document Store
---------------
The document metadata collaborator: titles, MIME types, ownership,
folder/tag membership and ingestion status.

The retriever only asks it one question -- "which ready documents does
this scope cover?" -- and the ingestion service drives the status
lifecycle through it.  ``InMemoryDocumentStore`` is thread-safe and can
persist itself as JSON for the CLI.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from loguru import logger

from docuchat.schemas import STATUS_TRANSITIONS, Document, DocumentStatus
from docuchat.utils.helpers import load_json, save_json


class DocumentStore(ABC):
    """Interface for document metadata lookups and status updates."""

    @abstractmethod
    def add(self, document: Document) -> Document: ...

    @abstractmethod
    def get(self, document_id: str) -> Optional[Document]: ...

    @abstractmethod
    def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error: Optional[str] = None,
        chunk_count: Optional[int] = None,
    ) -> Document: ...

    @abstractmethod
    def delete(self, document_id: str) -> bool: ...

    @abstractmethod
    def list_documents(self, organization_id: Optional[str] = None) -> list[Document]: ...

    @abstractmethod
    def list_document_ids(
        self,
        organization_id: str,
        user_id: Optional[str] = None,
        folder_id: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        statuses: Iterable[DocumentStatus] = (DocumentStatus.READY,),
    ) -> set[str]:
        """
        Ids of documents in ``organization_id`` matching every given filter.

        ``tags`` requires all listed tags; only ``statuses`` (ready by
        default) are returned.
        """


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed store guarded by a lock."""

    def __init__(self, documents: Optional[Iterable[Document]] = None) -> None:
        self._docs: dict[str, Document] = {}
        self._lock = threading.RLock()
        for doc in documents or []:
            self._docs[doc.id] = doc

    def add(self, document: Document) -> Document:
        with self._lock:
            if document.id in self._docs:
                raise ValueError(f"Document already exists: {document.id}")
            self._docs[document.id] = document
        logger.debug(f"[DocumentStore] Added {document.id} ({document.title!r})")
        return document

    def get(self, document_id: str) -> Optional[Document]:
        with self._lock:
            return self._docs.get(document_id)

    def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error: Optional[str] = None,
        chunk_count: Optional[int] = None,
    ) -> Document:
        with self._lock:
            doc = self._docs.get(document_id)
            if doc is None:
                raise KeyError(f"Document not found: {document_id}")
            if status not in STATUS_TRANSITIONS[doc.status]:
                raise ValueError(
                    f"Illegal status transition for {document_id}: "
                    f"{doc.status.value} -> {status.value}"
                )
            updates = {
                "status": status,
                "error": error,
                "updated_at": datetime.now(timezone.utc),
            }
            if chunk_count is not None:
                updates["chunk_count"] = chunk_count
            doc = doc.model_copy(update=updates)
            self._docs[document_id] = doc

        logger.debug(f"[DocumentStore] {document_id} -> {status.value}")
        return doc

    def delete(self, document_id: str) -> bool:
        with self._lock:
            return self._docs.pop(document_id, None) is not None

    def list_documents(self, organization_id: Optional[str] = None) -> list[Document]:
        with self._lock:
            docs = list(self._docs.values())
        if organization_id is not None:
            docs = [d for d in docs if d.organization_id == organization_id]
        return docs

    def list_document_ids(
        self,
        organization_id: str,
        user_id: Optional[str] = None,
        folder_id: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        statuses: Iterable[DocumentStatus] = (DocumentStatus.READY,),
    ) -> set[str]:
        wanted_tags = set(tags or [])
        wanted_statuses = set(statuses)
        with self._lock:
            return {
                doc.id
                for doc in self._docs.values()
                if doc.organization_id == organization_id
                and doc.status in wanted_statuses
                and (user_id is None or doc.user_id == user_id)
                and (folder_id is None or doc.folder_id == folder_id)
                and wanted_tags.issubset(doc.tags)
            }

    # --- Persistence ----------------------------------------------------------

    def save(self, path: str | Path) -> None:
        with self._lock:
            data = [doc.model_dump(mode="json") for doc in self._docs.values()]
        save_json(data, path)
        logger.debug(f"[DocumentStore] {len(data)} document(s) saved -> {path}")

    @classmethod
    def load(cls, path: str | Path) -> "InMemoryDocumentStore":
        raw = load_json(path, default=[])
        return cls(Document.model_validate(item) for item in raw)
