"""
Object Store — Abstract Base

The ingestion pipeline stores the raw upload before anything else happens.
Concrete stores (S3 in production, an in-memory dict in tests) implement
put_document for ingest and delete_object for the document delete route.

Key layout (all implementations):
    documents/<tenant_id>/<asset_id>/<filename>
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class UploadedFile:
    """Location of a stored upload."""
    bucket: str
    key:    str


def document_key(tenant_id: str, asset_id: str, filename: str) -> str:
    return f"documents/{tenant_id}/{asset_id}/{filename}"


class ObjectStoreBase(ABC):

    @abstractmethod
    async def put_document(
        self,
        *,
        tenant_id:      str,
        asset_id:       str,
        filename:       str,
        body:           bytes,
        content_type:   str,
        correlation_id: str,
    ) -> UploadedFile:
        """
        Store `body` under the tenant/asset key.
        Raises CollaboratorError on any failure.
        """

    @abstractmethod
    async def delete_object(self, *, bucket: str, key: str, correlation_id: str) -> bool:
        """
        Remove a stored upload. Returns False when the object was already gone.
        Raises CollaboratorError on any other failure.
        """
