from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Protocol

from .config import CERTIFICATE_MAX_BYTES_DEFAULT

logger = logging.getLogger(__name__)

ALLOWED_CERTIFICATE_TYPES = {
    "application/pdf": "pdf",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
}
PUBLIC_CERTIFICATE_PREFIX = "/uploads/certificates"


class CertificateValidationError(ValueError):
    pass


@dataclass(frozen=True)
class CertificateUpload:
    file_name: str
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


def validate_certificate(upload: CertificateUpload, *, max_bytes: int = CERTIFICATE_MAX_BYTES_DEFAULT) -> None:
    if upload.size == 0:
        raise CertificateValidationError("certificate file is empty")
    if upload.size > max_bytes:
        limit_mb = max_bytes / (1024 * 1024)
        raise CertificateValidationError(f"certificate exceeds the {limit_mb:g} MB limit")
    if upload.content_type not in ALLOWED_CERTIFICATE_TYPES:
        raise CertificateValidationError(
            "certificate must be one of: " + ", ".join(sorted(ALLOWED_CERTIFICATE_TYPES))
        )


def _extension_for(upload: CertificateUpload) -> str:
    suffix = PurePosixPath(upload.file_name).suffix.lstrip(".").lower()
    if suffix and suffix.isalnum() and len(suffix) <= 5:
        return suffix
    return ALLOWED_CERTIFICATE_TYPES.get(upload.content_type, "bin")


class CertificateStorage(Protocol):
    def save(self, upload: CertificateUpload, registration_number: int) -> str: ...

    def delete(self, path: str) -> None: ...

    def resolve(self, path: str | None) -> Path | None: ...


class LocalCertificateStorage:
    """Stores certificates on local disk under a public-looking path."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def save(self, upload: CertificateUpload, registration_number: int) -> str:
        self._root.mkdir(parents=True, exist_ok=True)
        file_name = f"cert_{registration_number}_{int(time.time() * 1000)}.{_extension_for(upload)}"
        (self._root / file_name).write_bytes(upload.content)
        return f"{PUBLIC_CERTIFICATE_PREFIX}/{file_name}"

    def delete(self, path: str) -> None:
        resolved = self.resolve(path)
        if resolved is None:
            return
        try:
            resolved.unlink()
        except FileNotFoundError:
            return

    def resolve(self, path: str | None) -> Path | None:
        if not path:
            return None
        name = PurePosixPath(path).name
        if not name or name in {".", ".."}:
            return None
        candidate = self._root / name
        return candidate if candidate.is_file() else None
