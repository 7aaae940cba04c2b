from __future__ import annotations

from typing import List, Optional
from urllib.parse import quote, unquote

import httpx
from loguru import logger

from ..config import Settings, settings
from ..errors import UpstreamError


class StorageClient:
    """Supabase Storage REST client for the audio bucket."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        bucket: str,
        timeout: float = 30.0,
        http: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self.service_key = service_key
        self.http = http or httpx.Client(timeout=httpx.Timeout(timeout, connect=10.0))

    @classmethod
    def from_settings(cls, cfg: Settings) -> "StorageClient":
        return cls(cfg.supabase_url, cfg.supabase_service_key, cfg.storage_bucket, timeout=cfg.http_timeout_sec)

    @property
    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.service_key}", "apikey": self.service_key}

    def _object_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/{self.bucket}/{quote(path)}"

    def _check(self, resp: httpx.Response, action: str) -> None:
        if resp.status_code >= 400:
            logger.bind(tag="storage").error(f"{action} failed: HTTP {resp.status_code} {resp.text[:200]}")
            raise UpstreamError(f"Failed to {action}")

    def upload(self, path: str, content: bytes, content_type: str) -> str:
        try:
            resp = self.http.post(
                self._object_url(path),
                content=content,
                headers={**self._headers, "Content-Type": content_type, "x-upsert": "false"},
            )
        except httpx.HTTPError as exc:
            logger.bind(tag="storage").error(f"upload error: {exc!r}")
            raise UpstreamError("Failed to upload audio file") from exc
        self._check(resp, "upload audio file")
        logger.bind(tag="storage").info(f"uploaded {len(content)} bytes to {self.bucket}/{path}")
        return path

    def create_signed_url(self, path: str, expires_in: int = 3600) -> str:
        try:
            resp = self.http.post(
                f"{self.base_url}/storage/v1/object/sign/{self.bucket}/{quote(path)}",
                json={"expiresIn": expires_in},
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            raise UpstreamError("Failed to create download URL") from exc
        self._check(resp, "create download URL")
        signed = resp.json().get("signedURL") or resp.json().get("signedUrl")
        if not signed:
            raise UpstreamError("Failed to create download URL")
        if signed.startswith("http"):
            return signed
        return f"{self.base_url}/storage/v1{signed}"

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{quote(path)}"

    def path_from_public_url(self, url: str) -> Optional[str]:
        prefix = f"{self.base_url}/storage/v1/object/public/{self.bucket}/"
        if url.startswith(prefix):
            return unquote(url[len(prefix):])
        # older rows: keep "<meetingId>/<file>"
        parts = url.rstrip("/").split("/")
        return unquote("/".join(parts[-2:])) if len(parts) >= 2 else None

    def remove(self, paths: List[str]) -> None:
        try:
            resp = self.http.request(
                "DELETE",
                f"{self.base_url}/storage/v1/object/{self.bucket}",
                json={"prefixes": paths},
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            raise UpstreamError("Failed to delete audio file") from exc
        self._check(resp, "delete audio file")
        logger.bind(tag="storage").info(f"removed {paths} from {self.bucket}")


_storage: Optional[StorageClient] = None


def get_storage() -> StorageClient:
    global _storage
    if _storage is None:
        _storage = StorageClient.from_settings(settings)
    return _storage
