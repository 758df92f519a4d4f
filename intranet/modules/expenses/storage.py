"""Receipt file storage.

Uploaded receipts are written under `<UPLOAD_PATH>/receipts/` with a random
name and referenced from the expense row as `/uploads/receipts/<name>`.
"""
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from fastapi import UploadFile

from intranet.core.config import settings
from intranet.core.exceptions import ValidationError
from intranet.core.logging import get_logger

logger = get_logger(__name__)

RECEIPTS_DIR = "receipts"
REFERENCE_PREFIX = "/uploads/"
CHUNK_SIZE = 64 * 1024


@dataclass
class StagedFile:
    """A receipt written to disk but not yet attached to a committed record."""
    path: Path
    size: int
    original_name: str
    content_type: str | None = None


class ReceiptStorage:
    """Stage, resolve and delete receipt files under a single upload root."""

    def __init__(
        self,
        root: str | Path | None = None,
        max_size: int | None = None,
        allowed_types: list[str] | None = None,
    ):
        self.root = Path(root or settings.UPLOAD_PATH).resolve()
        self.max_size = max_size if max_size is not None else settings.MAX_RECEIPT_SIZE
        self.allowed_types = allowed_types if allowed_types is not None else settings.ALLOWED_RECEIPT_TYPES

    @property
    def receipts_dir(self) -> Path:
        return self.root / RECEIPTS_DIR

    async def stage(self, upload: UploadFile) -> StagedFile:
        """Write an upload to the receipts directory after checking type and size."""
        if not upload.filename:
            raise ValidationError("Receipt file name is missing")
        if self.allowed_types and upload.content_type not in self.allowed_types:
            raise ValidationError(
                f"Receipt type {upload.content_type!r} is not allowed"
            )

        self.receipts_dir.mkdir(parents=True, exist_ok=True)
        suffix = PurePosixPath(upload.filename).suffix.lower()
        target = self.receipts_dir / f"{uuid.uuid4()}{suffix}"

        size = 0
        try:
            with target.open("wb") as fh:
                while chunk := await upload.read(CHUNK_SIZE):
                    size += len(chunk)
                    if size > self.max_size:
                        raise ValidationError(
                            f"Receipt exceeds the maximum size of {self.max_size} bytes"
                        )
                    fh.write(chunk)
        except BaseException:
            target.unlink(missing_ok=True)
            raise

        logger.debug("Receipt staged", path=str(target), size=size)
        return StagedFile(
            path=target,
            size=size,
            original_name=upload.filename,
            content_type=upload.content_type,
        )

    def reference_for(self, staged: StagedFile) -> str:
        """The value stored in `expenses.receipt_path` for a staged file."""
        relative = staged.path.resolve().relative_to(self.root)
        return REFERENCE_PREFIX + relative.as_posix()

    def resolve(self, reference: str) -> Path:
        """Map a stored reference back to a path inside the upload root."""
        if not reference.startswith(REFERENCE_PREFIX):
            raise ValidationError("Receipt reference is outside the upload root")
        candidate = (self.root / reference[len(REFERENCE_PREFIX):]).resolve()
        if not candidate.is_relative_to(self.root):
            raise ValidationError("Receipt reference is outside the upload root")
        return candidate

    def discard(self, staged: StagedFile | None) -> None:
        """Remove an orphaned staged file."""
        if staged is None:
            return
        try:
            staged.path.unlink(missing_ok=True)
            logger.info("Discarded orphaned receipt", path=str(staged.path))
        except OSError as e:
            logger.error(f"Failed to discard staged receipt: {e}", path=str(staged.path))

    def delete(self, reference: str | None) -> bool:
        """
        Delete a stored receipt. Returns True when a file was removed.

        Runs after the owning transaction has committed, so failures are
        logged rather than raised.
        """
        if not reference:
            return False
        try:
            path = self.resolve(reference)
        except ValidationError:
            logger.warning("Refusing to delete receipt outside upload root", reference=reference)
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning("Receipt file already missing", reference=reference)
            return False
        except OSError as e:
            logger.error(f"Failed to delete receipt: {e}", reference=reference)
            return False
        logger.info("Receipt deleted", reference=reference)
        return True


def get_receipt_storage() -> ReceiptStorage:
    """Dependency returning the process-wide receipt storage."""
    return receipt_storage


receipt_storage = ReceiptStorage()
