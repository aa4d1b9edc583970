from abc import ABC, abstractmethod
from typing import Optional

import httpx

from ..errors import ProviderError
from ..infra.timings import timeit


class ObjectStore(ABC):
    @abstractmethod
    async def resolve(self, artifact_id: str) -> Optional[str]:
        """Durable download URL of the high-resolution source, or None."""


class PublicBucketStore(ObjectStore):
    """Artifacts live in a public bucket as ``<artifact_id>-hd.png``."""

    def __init__(self, http: httpx.AsyncClient, *, base_url: str,
                 bucket: str) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket

    def url_for(self, artifact_id: str) -> str:
        return (f"{self.base_url}/storage/v1/object/public/"
                f"{self.bucket}/{artifact_id}-hd.png")

    async def resolve(self, artifact_id: str) -> Optional[str]:
        if not self.base_url:
            raise ProviderError("object store is not configured")
        url = self.url_for(artifact_id)
        try:
            async with timeit("storage.head"):
                resp = await self.http.head(url)
        except httpx.HTTPError as exc:
            raise ProviderError(f"object store: {exc}") from exc
        if resp.status_code in (400, 404):
            return None
        if resp.status_code >= 400:
            raise ProviderError(
                f"object store returned {resp.status_code}",
                status_code=resp.status_code,
            )
        return url
