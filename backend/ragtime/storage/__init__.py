from ragtime.storage.base import ObjectStoreBase, UploadedFile
from ragtime.storage.s3 import S3ObjectStore

__all__ = ["ObjectStoreBase", "UploadedFile", "S3ObjectStore"]
