"""Remote blob channel backed by a Google Drive ``appDataFolder`` file."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from aiohttp import ClientError, ClientSession, ClientTimeout

from ..const import DEFAULT_DRIVE_BASE_URL, DRIVE_SPACE

_LOGGER = logging.getLogger(__name__)


class DriveError(RuntimeError):
    """Raised when the remote file cannot be listed, created, read or written."""

    def __init__(self, message: str, *, status: int | None = None, reason: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.reason = reason


class BlobChannel(Protocol):
    """Minimal remote storage contract consumed by the sync manager."""

    async def resolve_or_create_file(self, name: str) -> str: ...

    async def read_file(self, file_id: str) -> bytes | None: ...

    async def write_file(self, file_id: str, blob: bytes) -> None: ...

    async def async_close(self) -> None: ...


class DriveBlobChannel:
    """Read and overwrite a single JSON file in the Drive app data folder."""

    def __init__(
        self,
        access_token: str,
        *,
        session: ClientSession | None = None,
        base_url: str = DEFAULT_DRIVE_BASE_URL,
        timeout: float = 30.0,
    ) -> None:
        if not access_token:
            raise DriveError("Drive access token missing", reason="unauthorized")
        self._token = access_token
        self._base_url = base_url.rstrip("/")
        self._timeout = ClientTimeout(total=timeout)
        self._session = session or ClientSession()
        self._owns_session = session is None
        self._file_ids: dict[str, str] = {}

    async def async_close(self) -> None:
        if self._owns_session and not self._session.closed:
            await self._session.close()

    # ------------------------------------------------------------------
    async def resolve_or_create_file(self, name: str) -> str:
        """Return the id of the file called ``name``, creating it if needed."""

        cached = self._file_ids.get(name)
        if cached:
            return cached
        escaped = name.replace("\\", "\\\\").replace("'", "\\'")
        _status, body = await self._request(
            "GET",
            "/drive/v3/files",
            params={"spaces": DRIVE_SPACE, "fields": "files(id, name)", "q": f"name = '{escaped}'"},
        )
        files = self._json(body).get("files")
        file_id: str | None = None
        if isinstance(files, list):
            for item in files:
                if isinstance(item, Mapping) and item.get("id"):
                    file_id = str(item["id"])
                    break
        if file_id is None:
            _LOGGER.info("Creating remote snapshot file %s", name)
            _status, body = await self._request(
                "POST",
                "/drive/v3/files",
                params={"fields": "id"},
                json_body={"name": name, "parents": [DRIVE_SPACE], "mimeType": "application/json"},
            )
            created = self._json(body).get("id")
            if not created:
                raise DriveError("file create response missing id", reason="malformed")
            file_id = str(created)
        self._file_ids[name] = file_id
        return file_id

    async def read_file(self, file_id: str) -> bytes | None:
        _status, body = await self._request("GET", f"/drive/v3/files/{file_id}", params={"alt": "media"})
        if not body.strip():
            return None
        return body

    async def write_file(self, file_id: str, blob: bytes) -> None:
        await self._request(
            "PATCH",
            f"/upload/drive/v3/files/{file_id}",
            params={"uploadType": "media"},
            data=blob,
            headers={"Content-Type": "application/json"},
        )

    # ------------------------------------------------------------------
    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        json_body: Any = None,
        data: bytes | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> tuple[int, bytes]:
        request_headers = {"Authorization": f"Bearer {self._token}"}
        if headers:
            request_headers.update(headers)
        try:
            async with self._session.request(
                method,
                f"{self._base_url}{path}",
                params=params,
                json=json_body,
                data=data,
                headers=request_headers,
                timeout=self._timeout,
            ) as resp:
                body = await resp.read()
                if resp.status >= 400:
                    reason = "unauthorized" if resp.status in (401, 403) else "http_error"
                    if resp.status == 404:
                        reason = "not_found"
                    text = body.decode("utf-8", "ignore")[:200]
                    raise DriveError(
                        f"{method} {path} failed: HTTP {resp.status} {text}",
                        status=resp.status,
                        reason=reason,
                    )
                return resp.status, body
        except ClientError as err:
            raise DriveError(f"{method} {path} request failed: {err}", reason="transport") from err
        except asyncio.TimeoutError as err:
            raise DriveError(f"{method} {path} timed out", reason="timeout") from err

    def _json(self, body: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(body.decode("utf-8")) if body else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as err:
            raise DriveError(f"malformed Drive response: {err}", reason="malformed") from err
        return payload if isinstance(payload, dict) else {}


__all__ = ["BlobChannel", "DriveBlobChannel", "DriveError"]
