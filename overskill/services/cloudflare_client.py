"""
Cloudflare Client - Workers script upload, secrets and routes

This service handles:
1. Worker script upload (multipart: metadata + worker.js module)
2. Per-key secret upload
3. Route upsert for the app's host name
4. Worker deletion

Every response is checked against the Cloudflare envelope
({"success": bool, "errors": [{"message": ...}], "result": ...}).
Transient failures (network, 5xx) are retried with backoff; 4xx are raised at once.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from overskill.core.config import settings
from overskill.core.exceptions import CloudflareAPIError
from overskill.core.logging_config import logger
from overskill.services.deployment_targets import WorkerSecretSet
from overskill.services.retry_policy import BackoffPolicy, retry_async


MAIN_MODULE = "worker.js"
COMPATIBILITY_FLAGS = ["nodejs_compat"]


@dataclass
class WorkerDeployment:
    """Outcome of a successful worker deployment"""
    worker_name: str
    url: Optional[str]
    route_id: Optional[str] = None
    secrets: List[str] = field(default_factory=list)
    script_size: int = 0


class CloudflareClient:
    """Thin async wrapper over the Cloudflare v4 API"""

    def __init__(
        self,
        account_id: Optional[str] = None,
        api_token: Optional[str] = None,
        zone_id: Optional[str] = None,
        api_base: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff: Optional[BackoffPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.account_id = account_id or settings.CLOUDFLARE_ACCOUNT_ID
        self.api_token = api_token or settings.CLOUDFLARE_API_TOKEN
        self.zone_id = zone_id or settings.CLOUDFLARE_ZONE_ID
        self.api_base = (api_base or settings.CLOUDFLARE_API_BASE).rstrip("/")
        self.backoff = backoff or BackoffPolicy()
        self._transport = transport
        self._sleep = sleep

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            headers={"Authorization": f"Bearer {self.api_token}"},
            timeout=settings.CLOUDFLARE_REQUEST_TIMEOUT,
            transport=self._transport,
        )

    @staticmethod
    def _check_envelope(response: httpx.Response, operation: str) -> Any:
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if isinstance(payload, dict):
            errors = payload.get("errors") or []
            if response.is_success and payload.get("success", True):
                return payload.get("result")
            message = ", ".join(
                str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors
            ) or response.reason_phrase or "request failed"
            raise CloudflareAPIError(f"{operation}: {message}", status_code=response.status_code,
                                     errors=errors)

        if response.is_success:
            return None
        raise CloudflareAPIError(f"{operation}: {response.text[:200] or response.reason_phrase}",
                                 status_code=response.status_code)

    async def _request(self, method: str, path: str, operation: str, **kwargs) -> Any:
        async def send():
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
            return self._check_envelope(response, operation)

        try:
            return await retry_async(send, self.backoff, sleep=self._sleep, name=f"cloudflare {operation}")
        except httpx.HTTPError as e:
            logger.error(f"[CloudflareClient] {operation} failed: {e}")
            raise CloudflareAPIError(f"{operation}: {e}") from e

    # ------------------------------------------------------------------ scripts

    async def upload_worker(self, name: str, script: str,
                            bindings: Optional[List[Dict[str, str]]] = None) -> Any:
        """Upload a worker module script with its plain-text bindings"""
        metadata = {
            "main_module": MAIN_MODULE,
            "compatibility_date": settings.WORKER_COMPATIBILITY_DATE,
            "compatibility_flags": COMPATIBILITY_FLAGS,
            "bindings": bindings or [],
        }
        files = {
            "metadata": (None, json.dumps(metadata), "application/json"),
            MAIN_MODULE: (MAIN_MODULE, script.encode("utf-8"), "application/javascript+module"),
        }
        logger.info(f"[CloudflareClient] Uploading worker {name} "
                    f"({len(script.encode('utf-8'))} bytes, {len(metadata['bindings'])} bindings)")
        return await self._request(
            "PUT", f"/accounts/{self.account_id}/workers/scripts/{name}",
            f"upload worker {name}", files=files,
        )

    async def delete_worker(self, name: str) -> Any:
        logger.info(f"[CloudflareClient] Deleting worker {name}")
        return await self._request(
            "DELETE", f"/accounts/{self.account_id}/workers/scripts/{name}",
            f"delete worker {name}",
        )

    # ------------------------------------------------------------------ secrets

    async def put_secret(self, name: str, key: str, value: str) -> Any:
        return await self._request(
            "PUT", f"/accounts/{self.account_id}/workers/scripts/{name}/secrets",
            f"set secret {key}", json={"name": key, "text": value, "type": "secret_text"},
        )

    async def put_secrets(self, name: str, secrets: Dict[str, str]) -> List[str]:
        uploaded = []
        for key, value in secrets.items():
            await self.put_secret(name, key, value)
            uploaded.append(key)
        logger.info(f"[CloudflareClient] Set {len(uploaded)} secrets on {name}")
        return uploaded

    # ------------------------------------------------------------------ routes

    async def list_routes(self) -> List[Dict[str, Any]]:
        result = await self._request("GET", f"/zones/{self.zone_id}/workers/routes", "list routes")
        return result or []

    async def upsert_route(self, pattern: str, script: str) -> Optional[str]:
        """Point pattern at script, updating an existing route when one matches"""
        existing = next((r for r in await self.list_routes() if r.get("pattern") == pattern), None)
        body = {"pattern": pattern, "script": script}

        if existing:
            await self._request(
                "PUT", f"/zones/{self.zone_id}/workers/routes/{existing['id']}",
                f"update route {pattern}", json=body,
            )
            route_id = existing["id"]
        else:
            result = await self._request(
                "POST", f"/zones/{self.zone_id}/workers/routes",
                f"create route {pattern}", json=body,
            )
            route_id = (result or {}).get("id")

        logger.info(f"[CloudflareClient] Route {pattern} -> {script}")
        return route_id

    # ------------------------------------------------------------------ deploy

    async def deploy_worker(
        self,
        name: str,
        script: str,
        secret_set: WorkerSecretSet,
        pattern: Optional[str] = None,
        url: Optional[str] = None,
    ) -> WorkerDeployment:
        """Upload script, then secrets, then route"""
        await self.upload_worker(name, script, secret_set.bindings())
        uploaded = await self.put_secrets(name, secret_set.secrets)
        route_id = await self.upsert_route(pattern, name) if pattern else None
        logger.log_deploy_event("worker_deployed", name, url=url)
        return WorkerDeployment(
            worker_name=name,
            url=url,
            route_id=route_id,
            secrets=uploaded,
            script_size=len(script.encode("utf-8")),
        )


# Singleton instance
cloudflare_client = CloudflareClient()
