"""
Generic REST driver for providers exposing an asynchronous task API.

Endpoints:
    POST   /servers                 create, honours Idempotency-Key, returns {"task_id"}
    GET    /tasks/{task_id}         task status
    POST   /servers/{ref}/{action}  suspend | resume | resize
    DELETE /servers/{ref}           deprovision
    GET    /servers/{ref}/{usage|status|costs}
    GET    /{regions|images|plans|quotas}

Webhooks are signed with HMAC-SHA256 over "<timestamp>.<body>" and carry the
hex digest in X-Signature and the unix timestamp in X-Timestamp.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any, Callable, Mapping

import httpx
from pydantic import SecretStr

from provisioner.core.errors import PermanentProviderError
from provisioner.drivers.base import (
    Capability,
    PollResult,
    PollStatus,
    ProviderType,
    WebhookResult,
)
from provisioner.drivers.http import DriverHTTPClient
from provisioner.domain.models import Resource, ResourceSpec

_STATUS_MAP: dict[str, PollStatus] = {
    "queued": "pending",
    "pending": "pending",
    "running": "pending",
    "in_progress": "pending",
    "succeeded": "completed",
    "completed": "completed",
    "done": "completed",
    "failed": "failed",
    "error": "failed",
    "cancelled": "failed",
}


def normalize_status(raw: str | None) -> PollStatus:
    if raw is None:
        raise PermanentProviderError("Provider task has no status")
    status = _STATUS_MAP.get(raw.lower())
    if status is None:
        raise PermanentProviderError("Provider reported an unknown task status", {"status": raw})
    return status


class RestComputeDriver:
    requires_credentials = True

    def __init__(
        self,
        driver_id: str,
        base_url: str,
        *,
        provider_type: ProviderType | str = ProviderType.COMPUTE,
        webhook_secret: str | None = None,
        webhook_tolerance_seconds: int = 300,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = driver_id
        self.provider_type = ProviderType(provider_type)
        self._webhook_secret = SecretStr(webhook_secret) if webhook_secret else None
        self._tolerance = webhook_tolerance_seconds
        self._clock = clock
        self._http = DriverHTTPClient(
            base_url,
            timeout=timeout,
            max_retries=max_retries,
            backoff_factor=backoff_factor,
            transport=transport,
        )
        capabilities = {Capability.PROVISIONER, Capability.METRICS, Capability.INVENTORY}
        if self._webhook_secret is not None:
            capabilities.add(Capability.WEBHOOKS)
        self.capabilities = frozenset(capabilities)

    @classmethod
    def from_config(
        cls,
        *,
        driver_id: str,
        base_url: str,
        settings: Any = None,
        **options: Any,
    ) -> RestComputeDriver:
        if settings is not None:
            options.setdefault("timeout", settings.http_timeout)
            options.setdefault("max_retries", settings.http_max_retries)
            options.setdefault("backoff_factor", settings.http_retry_backoff_factor)
            options.setdefault("webhook_tolerance_seconds", settings.webhook_tolerance_seconds)
        return cls(driver_id, base_url, **options)

    # -- Provisioner --

    async def provision(
        self,
        spec: ResourceSpec,
        idempotency_key: str,
        *,
        credentials: SecretStr | None,
    ) -> str:
        body = await self._http.post(
            "/servers",
            credentials=credentials,
            json=spec.model_dump(mode="json"),
            headers={"Idempotency-Key": idempotency_key},
        )
        return self._task_id(body, required=True)  # type: ignore[return-value]

    async def poll(self, provider_task_id: str, *, credentials: SecretStr | None) -> PollResult:
        body = await self._http.get(f"/tasks/{provider_task_id}", credentials=credentials)
        return self._to_result(body)

    async def deprovision(self, resource: Resource, *, credentials: SecretStr | None) -> str | None:
        body = await self._http.delete(f"/servers/{self._ref(resource)}", credentials=credentials)
        return self._task_id(body)

    async def suspend(self, resource: Resource, *, credentials: SecretStr | None) -> str | None:
        return await self._action(resource, "suspend", credentials)

    async def resume(self, resource: Resource, *, credentials: SecretStr | None) -> str | None:
        return await self._action(resource, "resume", credentials)

    async def resize(
        self,
        resource: Resource,
        spec: ResourceSpec,
        *,
        credentials: SecretStr | None,
    ) -> str | None:
        return await self._action(resource, "resize", credentials, json=spec.model_dump(mode="json"))

    # -- Metrics --

    async def usage(self, resource: Resource, *, credentials: SecretStr | None) -> dict[str, Any]:
        return await self._http.get(f"/servers/{self._ref(resource)}/usage", credentials=credentials)

    async def health(self, resource: Resource, *, credentials: SecretStr | None) -> dict[str, Any]:
        return await self._http.get(f"/servers/{self._ref(resource)}/status", credentials=credentials)

    async def costs(self, resource: Resource, *, credentials: SecretStr | None) -> dict[str, Any]:
        return await self._http.get(f"/servers/{self._ref(resource)}/costs", credentials=credentials)

    # -- Inventory --

    async def regions(self, *, credentials: SecretStr | None) -> list[dict[str, Any]]:
        return (await self._http.get("/regions", credentials=credentials)).get("regions", [])

    async def images(self, *, credentials: SecretStr | None) -> list[dict[str, Any]]:
        return (await self._http.get("/images", credentials=credentials)).get("images", [])

    async def plans(self, *, credentials: SecretStr | None) -> list[dict[str, Any]]:
        return (await self._http.get("/plans", credentials=credentials)).get("plans", [])

    async def quotas(self, *, credentials: SecretStr | None) -> dict[str, Any]:
        return await self._http.get("/quotas", credentials=credentials)

    # -- Webhooks --

    def verify_signature(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        if self._webhook_secret is None:
            return False
        lowered = {k.lower(): v for k, v in headers.items()}
        signature = lowered.get("x-signature")
        timestamp = lowered.get("x-timestamp")
        if not signature or not timestamp:
            return False
        try:
            sent_at = int(timestamp)
        except ValueError:
            return False
        if abs(self._clock() - sent_at) > self._tolerance:
            return False
        expected = sign_payload(self._webhook_secret.get_secret_value(), sent_at, payload)
        return hmac.compare_digest(expected, signature)

    def handle_webhook(self, payload: bytes) -> WebhookResult:
        try:
            body = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise PermanentProviderError("Webhook payload is not valid JSON") from exc
        task_id = self._task_id(body, required=True)
        return WebhookResult(provider_task_id=task_id, result=self._to_result(body))  # type: ignore[arg-type]

    async def aclose(self) -> None:
        await self._http.aclose()

    # -- helpers --

    async def _action(
        self,
        resource: Resource,
        action: str,
        credentials: SecretStr | None,
        *,
        json: dict[str, Any] | None = None,
    ) -> str | None:
        body = await self._http.post(
            f"/servers/{self._ref(resource)}/{action}", credentials=credentials, json=json
        )
        return self._task_id(body)

    @staticmethod
    def _ref(resource: Resource) -> str:
        if not resource.provider_ref:
            raise PermanentProviderError(
                "Resource has no provider reference", {"resource_id": resource.id}
            )
        return resource.provider_ref

    @staticmethod
    def _task_id(body: Mapping[str, Any], *, required: bool = False) -> str | None:
        task_id = body.get("task_id")
        if task_id is None and required:
            raise PermanentProviderError("Provider response did not include a task id")
        return str(task_id) if task_id is not None else None

    @staticmethod
    def _to_result(body: Mapping[str, Any]) -> PollResult:
        status = normalize_status(body.get("status"))
        details: dict[str, Any] = {}
        if body.get("error"):
            details["error"] = str(body["error"])
        if body.get("progress") is not None:
            details["progress"] = body["progress"]
        resource_id = body.get("resource_id")
        return PollResult(
            status=status,
            details=details,
            provider_ref=str(resource_id) if resource_id is not None else None,
        )


def sign_payload(secret: str, timestamp: int, payload: bytes) -> str:
    message = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
