"""Zoho WorkDrive REST calls made on behalf of the bridge routes."""
from __future__ import annotations

import json
import logging
import mimetypes
import os

import requests

from log_helpers import debug_event, token_preview

logger = logging.getLogger("workdrive_bridge.workdrive")

# WorkDrive resource status codes for PATCH /files/{id}
STATUS_TRASHED = "51"

JSON_API = "application/vnd.api+json"


class WorkDriveError(Exception):
    def __init__(self, message, status=None, detail=None):
        super().__init__(message)
        self.status = status
        self.detail = detail


class WorkDriveNotFound(WorkDriveError):
    pass


class WorkDriveAuthError(WorkDriveError):
    pass


def _detail(resp):
    try:
        return resp.json()
    except ValueError:
        return resp.text[:500]


def _int_or_none(v):
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def describe_file(item: dict) -> dict:
    """Reshape a JSON:API file resource into the shape returned to callers."""
    attrs = item.get("attributes") or {}
    storage = attrs.get("storage_info") or {}
    return {
        "id": item.get("id") or attrs.get("resource_id"),
        "name": attrs.get("name") or attrs.get("display_attr_name"),
        "type": attrs.get("type"),
        "extension": attrs.get("extn"),
        "isFolder": bool(attrs.get("is_folder")),
        "size": _int_or_none(storage.get("size_in_bytes")),
        "createdAt": attrs.get("created_time_in_millisecond"),
        "modifiedAt": attrs.get("modified_time_in_millisecond"),
        "permalink": attrs.get("permalink"),
        "thumbnailUrl": attrs.get("thumbnail_url"),
    }


class WorkDriveClient:
    def __init__(
        self,
        tokens,
        api_base: str,
        download_base: str,
        web_base: str = "https://workdrive.zoho.com",
        http=requests,
        timeout: float = 30,
        upload_timeout: float = 600,
        max_auth_retries: int = 2,
    ) -> None:
        self.tokens = tokens
        self.api_base = api_base.rstrip("/")
        self.download_base = download_base.rstrip("/")
        self.web_base = web_base.rstrip("/")
        self.http = http
        self.timeout = timeout
        self.upload_timeout = upload_timeout
        self.max_auth_retries = max(0, int(max_auth_retries))

    def _headers(self, tok, accept=JSON_API):
        hdrs = {"Authorization": f"Zoho-oauthtoken {tok}"}
        if accept:
            hdrs["Accept"] = accept
        return hdrs

    def _call(self, op: str, send):
        """Run ``send(token)`` and retry with a fresh token while Zoho answers 401.

        ``send`` must build the whole request on each invocation, since a
        multipart body cannot be replayed once consumed.
        """
        attempts = 1 + self.max_auth_retries
        for attempt in range(1, attempts + 1):
            tok = self.tokens.get()
            resp = send(tok)
            debug_event(logger, "workdrive_call", op=op, attempt=attempt, status=resp.status_code, token=token_preview(tok))
            if resp.status_code != 401:
                return resp
            resp.close()
            self.tokens.invalidate()
            logger.warning("%s: Zoho rejected the access token (attempt %s/%s)", op, attempt, attempts)
        raise WorkDriveAuthError(f"{op}: authentication failed after {attempts} attempts", 401)

    def _check(self, op: str, resp):
        if 200 <= resp.status_code < 300:
            return resp
        detail = _detail(resp)
        resp.close()
        if resp.status_code == 404:
            raise WorkDriveNotFound(f"{op}: not found", 404, detail)
        logger.warning("%s failed: status=%s body=%s", op, resp.status_code, str(detail)[:300])
        raise WorkDriveError(f"{op} failed with status {resp.status_code}", resp.status_code, detail)

    def upload(self, path, name: str, parent_id: str, override: bool = False) -> dict:
        mime = mimetypes.guess_type(name)[0] or "application/octet-stream"
        data = {"parent_id": parent_id, "override-name-exist": "true" if override else "false"}
        debug_event(logger, "upload_start", name=name, parent=parent_id, size=os.path.getsize(path), mime=mime)

        def send(tok):
            with open(path, "rb") as f:
                return self.http.post(
                    f"{self.api_base}/upload",
                    headers=self._headers(tok, accept=None),
                    files={"content": (name, f, mime)},
                    data=data,
                    timeout=self.upload_timeout,
                )

        resp = self._check("upload", self._call("upload", send))
        body = _detail(resp)
        items = body.get("data") if isinstance(body, dict) else None
        if not items:
            raise WorkDriveError("upload: unexpected response", resp.status_code, body)
        return items[0]

    def file_info(self, file_id: str) -> dict:
        url = f"{self.api_base}/files/{file_id}"
        resp = self._check(
            "file_info",
            self._call("file_info", lambda tok: self.http.get(url, headers=self._headers(tok), timeout=self.timeout)),
        )
        body = _detail(resp)
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise WorkDriveError("file_info: unexpected response", resp.status_code, body)
        return data

    def download(self, file_id: str):
        """Open a streaming download; the caller owns and must close the response."""
        url = f"{self.download_base}/download/{file_id}"
        return self._check(
            "download",
            self._call(
                "download",
                lambda tok: self.http.get(url, headers=self._headers(tok, accept=None), stream=True, timeout=self.upload_timeout),
            ),
        )

    def trash(self, file_id: str) -> None:
        url = f"{self.api_base}/files/{file_id}"
        body = json.dumps({"data": {"attributes": {"status": STATUS_TRASHED}, "type": "files"}})

        def send(tok):
            return self.http.patch(
                url,
                headers={**self._headers(tok), "Content-Type": JSON_API},
                data=body,
                timeout=self.timeout,
            )

        self._check("trash", self._call("trash", send))
        logger.info("trashed file %s", file_id)

    def list_files(self, folder_id: str, page: int = 1, per_page: int = 20, kind: str | None = None) -> tuple[list, bool]:
        url = f"{self.api_base}/files/{folder_id}/files"
        params = {"page[limit]": str(per_page), "page[offset]": str((page - 1) * per_page)}
        if kind:
            params["filter[type]"] = kind
        resp = self._check(
            "list_files",
            self._call(
                "list_files",
                lambda tok: self.http.get(url, headers=self._headers(tok), params=params, timeout=self.timeout),
            ),
        )
        body = _detail(resp)
        items = body.get("data", []) if isinstance(body, dict) else None
        if not isinstance(items, list):
            raise WorkDriveError("list_files: unexpected response", resp.status_code, body)
        links = body.get("links") or {}
        has_more = bool(links.get("next")) if "next" in links else len(items) >= per_page
        return items, has_more

    def preview_url(self, file_id: str) -> str:
        return f"{self.web_base}/file/{file_id}"
