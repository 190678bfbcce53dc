from ragtime.vectorstore.base import DistanceMetric, QueryResult, VectorRecord, VectorStoreBase
from ragtime.vectorstore.pgvector_store import PgVectorStore

__all__ = ["VectorStoreBase", "VectorRecord", "QueryResult", "DistanceMetric", "PgVectorStore"]
