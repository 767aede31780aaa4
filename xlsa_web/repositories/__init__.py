from .upload_repository import UploadRepository

__all__ = [
    "UploadRepository",
]
