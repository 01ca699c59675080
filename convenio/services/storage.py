import logging
import uuid
from typing import Optional
from fastapi.concurrency import run_in_threadpool
from supabase import create_client, Client
from convenio.core import config
from convenio.core.errors import ExternalServiceFailed, ValidationFailed

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {"image/jpeg": ".jpg", "image/png": ".png", "image/webp": ".webp"}


class StorageService:
    """Supabase Storage bucket holding generated documents and photos."""

    def __init__(self, url: Optional[str] = None, key: Optional[str] = None, bucket: Optional[str] = None):
        url = url or config.SUPABASE_URL
        key = key or config.SUPABASE_KEY
        self.bucket_name = bucket or config.SUPABASE_BUCKET
        self._client: Optional[Client] = None
        self._configured = bool(url and key)
        self._url, self._key = url, key
        if not self._configured:
            logger.warning("Supabase credentials not found, uploads are disabled")

    @property
    def supabase(self) -> Client:
        if not self._configured:
            raise ExternalServiceFailed("Armazenamento de arquivos não configurado")
        if self._client is None:
            self._client = create_client(self._url, self._key)
        return self._client

    def upload_file(self, file_bytes: bytes, path: str, content_type: str = "application/pdf") -> str:
        """Sobe um arquivo e devolve a URL pública."""
        bucket = self.supabase.storage.from_(self.bucket_name)
        try:
            bucket.upload(
                file=file_bytes,
                path=path,
                file_options={"content-type": content_type, "upsert": "true"}
            )
            return bucket.get_public_url(path)
        except Exception as e:
            logger.error("Error uploading %s to Supabase: %s", path, e)
            raise ExternalServiceFailed("Falha ao enviar arquivo") from e

    async def upload(self, data: bytes, content_type: str = "image/jpeg", folder: str = "photos") -> dict:
        """Image host interface: returns ``{"url", "public_id"}``."""
        if content_type not in IMAGE_EXTENSIONS:
            raise ValidationFailed("Formato de imagem não suportado")
        path = f"{folder}/{uuid.uuid4().hex}{IMAGE_EXTENSIONS[content_type]}"
        url = await run_in_threadpool(self.upload_file, data, path, content_type)
        return {"url": url, "public_id": path}


storage_service = StorageService()


def get_image_host() -> StorageService:
    return storage_service
