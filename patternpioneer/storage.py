"""
Minimal Supabase Storage client: signed URLs for premium files and direct
downloads of preview files. Uses the shared httpx.AsyncClient.
"""
from urllib.parse import quote, unquote

import httpx
import structlog

from .errors import StorageError

logger = structlog.get_logger()


class SupabaseStorage:
    def __init__(self, http: httpx.AsyncClient, base_url: str,
                 service_key: str):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
        }

    def _object_url(self, kind: str, bucket: str, path: str) -> str:
        # paths cut from public object URLs arrive percent-encoded
        return (
            f"{self.base_url}/storage/v1/{kind}/"
            f"{quote(bucket)}/{quote(unquote(path))}"
        )

    async def create_signed_url(self, bucket: str, path: str,
                                expires_in: int) -> str:
        url = self._object_url("object/sign", bucket, path)
        try:
            resp = await self.http.post(
                url, json={"expiresIn": expires_in}, headers=self._headers()
            )
        except httpx.HTTPError as e:
            raise StorageError(f"signing {bucket}/{path} failed: {e}") from e
        if resp.status_code != 200:
            raise StorageError(
                f"signing {bucket}/{path} failed: HTTP {resp.status_code}"
            )
        signed = resp.json().get("signedURL") or resp.json().get("signedUrl")
        if not signed:
            raise StorageError(f"no signed URL returned for {bucket}/{path}")
        if signed.startswith("http"):
            return signed
        return f"{self.base_url}/storage/v1{signed}"

    async def download(self, bucket: str, path: str) -> bytes:
        url = self._object_url("object", bucket, path)
        try:
            resp = await self.http.get(url, headers=self._headers())
        except httpx.HTTPError as e:
            raise StorageError(f"download {bucket}/{path} failed: {e}") from e
        if resp.status_code != 200:
            raise StorageError(
                f"download {bucket}/{path} failed: HTTP {resp.status_code}"
            )
        return resp.content
