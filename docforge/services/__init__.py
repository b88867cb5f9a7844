"""DocForge services — upload orchestration and reads."""

from docforge.services.data import DataService, Page  # noqa: F401
from docforge.services.uploads import UploadResult, UploadService  # noqa: F401

__all__ = ["DataService", "Page", "UploadResult", "UploadService"]
