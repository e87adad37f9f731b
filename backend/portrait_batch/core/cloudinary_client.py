"""Signed uploads to Cloudinary."""

import hashlib
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx

from portrait_batch.core.config import settings


class ArtifactUploadError(Exception):
    """Raised when a generated image cannot be stored."""


@dataclass
class UploadResult:
    public_id: str
    secure_url: str
    bytes: Optional[int] = None
    version: Optional[str] = None


def sign_params(params: Dict[str, str], api_secret: str) -> str:
    """Cloudinary signature: SHA-1 of the sorted params joined with the secret."""
    to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params) if params[key] != "")
    return hashlib.sha1(f"{to_sign}{api_secret}".encode("utf-8")).hexdigest()


class CloudinaryClient:
    def __init__(
        self,
        cloud_name: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        upload_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.cloud_name = cloud_name if cloud_name is not None else settings.CLOUDINARY_CLOUD_NAME
        self.api_key = api_key if api_key is not None else settings.CLOUDINARY_API_KEY
        self.api_secret = api_secret if api_secret is not None else settings.CLOUDINARY_API_SECRET
        self.upload_url = (upload_url or settings.CLOUDINARY_UPLOAD_URL).rstrip("/")
        self.timeout = timeout or settings.UPLOAD_TIMEOUT_S
        self._transport = transport

    def upload_image(
        self,
        data: bytes,
        filename: str,
        mime_type: str = "image/png",
        tags: Optional[List[str]] = None,
    ) -> UploadResult:
        if not (self.cloud_name and self.api_key and self.api_secret):
            raise ArtifactUploadError("Cloudinary credentials are not configured")

        params = {
            "public_id": filename.rsplit(".", 1)[0],
            "tags": ",".join(tags or []),
            "timestamp": str(int(time.time())),
        }
        form = {**params, "api_key": self.api_key, "signature": sign_params(params, self.api_secret)}

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    f"{self.upload_url}/{self.cloud_name}/image/upload",
                    data=form,
                    files={"file": (filename, data, mime_type)},
                )
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            raise ArtifactUploadError(
                f"Upload failed with {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ArtifactUploadError(f"Upload request failed: {exc}") from exc
        except ValueError as exc:
            raise ArtifactUploadError("Upload returned a non-JSON response") from exc

        if not body.get("secure_url") or not body.get("public_id"):
            raise ArtifactUploadError(f"Upload response missing url: {body}")

        version = body.get("version")
        return UploadResult(
            public_id=body["public_id"],
            secure_url=body["secure_url"],
            bytes=body.get("bytes"),
            version=str(version) if version is not None else None,
        )
