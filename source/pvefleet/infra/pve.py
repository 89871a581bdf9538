from __future__ import annotations

import asyncio
import logging
import time
import urllib.parse
from typing import Any

import httpx

from pvefleet.core.errors import (
    AuthenticationError,
    ProviderRejectedError,
    RetryExhaustedError,
    TransientProviderError,
)
from pvefleet.core.models import ProxmoxConfig, RetryConfig
from .utils import redact

LOG = logging.getLogger("pve-fleet")

TRANSIENT_STATUS = {408, 425, 429}


class PveClient:
    def __init__(self, cfg: ProxmoxConfig, retry: RetryConfig | None = None, timeout_s: int = 120):
        self.cfg = cfg
        self.retry = retry or RetryConfig()
        self.timeout_s = timeout_s
        self._client = httpx.AsyncClient(timeout=timeout_s, verify=not cfg.tls_insecure)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"PVEAPIToken={self.cfg.token_id}={self.cfg.token_secret.reveal()}"}

    def _scrub(self, text: Any) -> str:
        return redact(str(text), [self.cfg.token_secret.reveal()])

    async def _sleep(self, seconds: int | float) -> None:
        await asyncio.sleep(seconds)

    async def _request_once(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> Any:
        base = self.cfg.api_url.rstrip("/")
        try:
            resp = await self._client.request(
                method.upper(),
                f"{base}/api2/json{path}",
                headers=self._headers(),
                params=params or {},
                data=data or {},
            )
        except httpx.TransportError as exc:
            raise TransientProviderError(f"{method.upper()} {path}: {self._scrub(exc)}") from None

        code = resp.status_code
        if code in (401, 403):
            raise AuthenticationError(f"{method.upper()} {path}: {code} {self._scrub(resp.reason_phrase)}")
        if code in TRANSIENT_STATUS or code >= 500:
            raise TransientProviderError(f"{method.upper()} {path}: {code} {self._scrub(resp.text)}")
        if code >= 400:
            raise ProviderRejectedError(f"{method.upper()} {path}: {code} {self._scrub(resp.text)}", code)
        payload = resp.json()
        return payload.get("data")

    async def json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> Any:
        attempts = max(1, int(self.retry.max_attempts))
        for attempt in range(attempts):
            try:
                return await self._request_once(method, path, params=params, data=data)
            except TransientProviderError as exc:
                if attempt == attempts - 1:
                    raise RetryExhaustedError(f"{exc} (gave up after {attempts} attempts)", attempts) from exc
                delay = self.retry.delay_for(attempt)
                LOG.warning("Transient provider error, retrying in %.2fs (attempt %s/%s): %s", delay, attempt + 1, attempts, exc)
                await self._sleep(delay)
        raise RuntimeError("unreachable")

    async def wait_task(self, upid: str, timeout_s: int = 1800, poll_s: int = 2) -> None:
        deadline = time.time() + timeout_s
        while time.time() < deadline:
            status = await self.json("GET", f"/nodes/{self.cfg.node}/tasks/{urllib.parse.quote(upid, safe='')}/status")
            if isinstance(status, dict) and status.get("status") == "stopped":
                exitstatus = status.get("exitstatus")
                if exitstatus and exitstatus != "OK":
                    raise ProviderRejectedError(f"Task failed: {upid} exitstatus={exitstatus}")
                return
            await self._sleep(poll_s)
        raise TimeoutError(f"Timed out waiting for task: {upid}")

    async def _wait_upid(self, upid: Any) -> None:
        if isinstance(upid, str) and upid.startswith("UPID:"):
            await self.wait_task(upid)

    async def list_vms(self) -> list[dict[str, Any]]:
        out = await self.json("GET", f"/nodes/{self.cfg.node}/qemu")
        return out if isinstance(out, list) else []

    async def vm_config(self, vmid: int) -> dict[str, Any]:
        out = await self.json("GET", f"/nodes/{self.cfg.node}/qemu/{vmid}/config")
        return out if isinstance(out, dict) else {}

    async def vm_status(self, vmid: int) -> str:
        out = await self.json("GET", f"/nodes/{self.cfg.node}/qemu/{vmid}/status/current")
        return str((out or {}).get("status") or "") if isinstance(out, dict) else ""

    async def clone_vm(self, *, template_vmid: int, vmid: int, name: str, storage: str) -> None:
        upid = await self.json(
            "POST",
            f"/nodes/{self.cfg.node}/qemu/{template_vmid}/clone",
            data={
                "newid": str(vmid),
                "name": name,
                "full": "1",
                "storage": storage,
                "target": self.cfg.node,
            },
        )
        await self._wait_upid(upid)

    async def update_vm_config(self, vmid: int, params: dict[str, Any]) -> None:
        if not params:
            return
        upid = await self.json(
            "POST",
            f"/nodes/{self.cfg.node}/qemu/{vmid}/config",
            data={key: str(value) for key, value in params.items()},
        )
        await self._wait_upid(upid)

    async def resize_disk(self, vmid: int, disk: str, size: str) -> None:
        upid = await self.json(
            "PUT",
            f"/nodes/{self.cfg.node}/qemu/{vmid}/resize",
            data={"disk": disk, "size": size},
        )
        await self._wait_upid(upid)

    async def start_vm(self, vmid: int) -> None:
        upid = await self.json("POST", f"/nodes/{self.cfg.node}/qemu/{vmid}/status/start")
        await self._wait_upid(upid)

    async def stop_and_delete_vm(self, vmid: int) -> None:
        try:
            stop_upid = await self.json("POST", f"/nodes/{self.cfg.node}/qemu/{vmid}/status/stop")
            await self._wait_upid(stop_upid)
        except ProviderRejectedError as exc:
            LOG.info("Stop before delete rejected vmid=%s: %s", vmid, exc)
        delete_upid = await self.json(
            "DELETE",
            f"/nodes/{self.cfg.node}/qemu/{vmid}",
            params={"purge": "1", "destroy-unreferenced-disks": "1"},
        )
        await self._wait_upid(delete_upid)
