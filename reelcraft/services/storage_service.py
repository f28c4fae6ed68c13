import logging
from datetime import datetime, timezone
from pathlib import Path
from uuid import UUID

from reelcraft.config import get_settings
from reelcraft.exceptions import InvalidStorageKeyError

logger = logging.getLogger(__name__)

settings = get_settings()


class LocalStorageService:
    """Local file storage. Keys are paths relative to the storage root."""

    def __init__(self, base_path: str | Path | None = None) -> None:
        self.base_path = Path(base_path or settings.local_storage_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, storage_key: str) -> Path:
        full_path = self.get_file_path(storage_key)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        return full_path

    def get_file_path(self, storage_key: str) -> Path:
        """Absolute path for a stored key (the file may not exist).

        Raises:
            InvalidStorageKeyError: If the key resolves outside the storage root
        """
        root = self.base_path.resolve()
        full_path = (root / storage_key).resolve()
        if not full_path.is_relative_to(root):
            raise InvalidStorageKeyError(storage_key)
        return full_path

    def composition_output_key(self, workspace_id: UUID, composition_id: int) -> str:
        """Storage key for a composition's rendered video."""
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
        return f"{settings.compositions_dir}/{workspace_id}/composition_{composition_id}_{stamp}.mp4"

    def prepare_output_path(self, storage_key: str) -> Path:
        """Absolute path for a new file, creating its parent directory."""
        return self._get_full_path(storage_key)

    def delete_file(self, storage_key: str) -> bool:
        """Delete file."""
        full_path = self.get_file_path(storage_key)
        if full_path.exists():
            full_path.unlink()
            return True
        return False

    def delete_file_quietly(self, storage_key: str | None) -> bool:
        """Delete file, logging instead of raising on OS errors."""
        if not storage_key:
            return False
        try:
            return self.delete_file(storage_key)
        except OSError as e:
            logger.warning(f"Could not delete {storage_key}: {e}")
            return False

    def file_exists(self, storage_key: str) -> bool:
        """Check if file exists."""
        return self.get_file_path(storage_key).exists()


_storage_service: LocalStorageService | None = None


def get_storage_service() -> LocalStorageService:
    global _storage_service
    if _storage_service is None:
        _storage_service = LocalStorageService()
    return _storage_service
