"""
R2 Storage - Offloaded asset upload to Cloudflare R2 (S3-compatible)

Keys follow apps/{app_id}/{build_id}/{path}; every build gets its own prefix so
assets are immutable and can be cached forever by the CDN.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from overskill.core.config import settings
from overskill.core.exceptions import StorageError
from overskill.core.logging_config import logger
from overskill.services.retry_policy import BackoffPolicy, retry_async
from overskill.services.worker_optimizer import OffloadedAsset, content_type_for


@dataclass
class UploadedAsset:
    path: str
    key: str
    url: str
    size: int


class R2StorageService:
    """
    Uploads build assets to R2.

    The boto3 client is created lazily so importing this module never needs
    credentials.
    """

    def __init__(
        self,
        bucket_name: Optional[str] = None,
        public_url: Optional[str] = None,
        client: Any = None,
        backoff: Optional[BackoffPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._client = client
        self._bucket_name = bucket_name or settings.R2_BUCKET_NAME
        self._public_url = (public_url or settings.R2_PUBLIC_URL).rstrip("/")
        self.backoff = backoff or BackoffPolicy()
        self._sleep = sleep

    def _get_client(self):
        """Lazy initialization of the R2 client"""
        if self._client is None:
            try:
                self._client = boto3.client(
                    's3',
                    endpoint_url=settings.effective_r2_endpoint,
                    aws_access_key_id=settings.R2_ACCESS_KEY_ID,
                    aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY,
                    config=Config(
                        signature_version='s3v4',
                        s3={'addressing_style': 'path'}
                    ),
                    region_name='auto'
                )
            except (ValueError, BotoCoreError) as e:
                logger.error(f"[R2Storage] ✗ Could not create client: {e}")
                raise StorageError(f"Could not create R2 client: {e}") from e
            logger.info(f"[R2Storage] Client initialized for bucket {self._bucket_name}")
        return self._client

    @staticmethod
    def generate_key(app_id: str, build_id: str, path: str) -> str:
        normalized = path.replace("\\", "/").lstrip("/")
        if normalized.startswith("./"):
            normalized = normalized[2:]
        return f"apps/{app_id}/{build_id}/{normalized}"

    def public_url_for(self, key: str) -> str:
        return f"{self._public_url}/{key}"

    def cdn_url_planner(self, app_id: str, build_id: str) -> Callable[[str], str]:
        """URL function handed to the optimizer before anything is uploaded"""
        return lambda path: self.public_url_for(self.generate_key(app_id, build_id, path))

    async def upload_asset(self, app_id: str, build_id: str, path: str, content: bytes,
                           content_type: Optional[str] = None) -> UploadedAsset:
        key = self.generate_key(app_id, build_id, path)
        client = self._get_client()

        async def put():
            client.put_object(
                Bucket=self._bucket_name,
                Key=key,
                Body=content,
                ContentType=content_type or content_type_for(path),
                CacheControl=settings.R2_ASSET_CACHE_CONTROL,
                Metadata={'app_id': str(app_id), 'build_id': build_id, 'file_path': path},
            )

        try:
            await retry_async(put, self.backoff, sleep=self._sleep, name=f"R2 upload {key}")
        except ClientError as e:
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            logger.error(f"[R2Storage] ✗ Upload failed for {key}: {e}")
            raise StorageError(str(e), key=key, status_code=status) from e
        except (BotoCoreError, ConnectionError, TimeoutError) as e:
            logger.error(f"[R2Storage] ✗ Upload failed for {key}: {e}")
            raise StorageError(str(e), key=key) from e

        logger.info(f"[R2Storage] ✓ Uploaded: {key} ({len(content)} bytes)")
        return UploadedAsset(path=path, key=key, url=self.public_url_for(key), size=len(content))

    async def upload_assets(self, app_id: str, build_id: str,
                            assets: Dict[str, OffloadedAsset]) -> List[UploadedAsset]:
        """Upload every offloaded asset; the first failure aborts the batch"""
        uploaded = []
        for path, asset in assets.items():
            uploaded.append(await self.upload_asset(app_id, build_id, path, asset.content, asset.content_type))
        if uploaded:
            logger.info(f"[R2Storage] Uploaded {len(uploaded)} assets for app {app_id} build {build_id}")
        return uploaded


# Singleton instance
r2_storage = R2StorageService()
