"""
CRM client — Salesforce REST over httpx

    ┌────────┐  token (form POST)   ┌──────────────────┐
    │ worker │ ───────────────────▶ │ OAuth2 token URL │
    │        │ ◀── access_token ─── └──────────────────┘
    │        │      instance_url
    │        │  Bearer <token>      ┌──────────────────┐
    │        │ ───────────────────▶ │ instance_url/... │  sobjects/Task, query
    └────────┘                      └──────────────────┘

The bearer token and instance URL are cached on the client. A 401 from the
instance invalidates the cache; the request is retried exactly once after a
fresh authentication.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from .errors import AuthFailure, ConnectFailure, CrmRequestFailure
from .settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CrmRecord:
    """The fields of a modified CRM record the pipeline reads."""
    id: str
    status: str
    description: str


def soql_timestamp(moment: datetime) -> str:
    """SOQL datetime literal, always UTC: 2024-05-01T10:00:00Z"""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _json_object(resp: httpx.Response) -> dict[str, Any]:
    """Decode a response body that must be a JSON object; ValueError otherwise."""
    payload = resp.json()
    if not isinstance(payload, dict):
        raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
    return payload


class CrmClient:
    def __init__(self, settings: Settings, http: httpx.AsyncClient) -> None:
        self.settings = settings
        self.http = http
        self.access_token: str | None = None
        self.instance_url: str | None = None

    # ── Authentication ───────────────────────────

    def _grants(self) -> list[tuple[str, dict[str, str]]]:
        """Grant attempts in order. Password grants only when a username is configured."""
        s = self.settings
        client = {"client_id": s.crm_client_id, "client_secret": s.crm_client_secret}
        grants = []
        if s.crm_username:
            password_grant = {"grant_type": "password", **client, "username": s.crm_username}
            if s.crm_security_token:
                grants.append(
                    (
                        "password + security token",
                        {**password_grant, "password": s.crm_password + s.crm_security_token},
                    )
                )
            grants.append(("password", {**password_grant, "password": s.crm_password}))
        grants.append(("client credentials", {"grant_type": "client_credentials", **client}))
        return grants

    async def authenticate(self) -> None:
        """Obtain and cache a bearer token, trying each configured grant in turn."""
        last_error: Exception | None = None
        for name, form in self._grants():
            try:
                await self._request_token(form)
            except AuthFailure as exc:
                logger.warning("CRM auth with %s failed: %s", name, exc)
                last_error = exc
                continue
            logger.info("Authenticated with CRM using %s. Instance: %s", name, self.instance_url)
            return
        logger.error("All CRM authentication strategies failed")
        raise AuthFailure(str(last_error))

    async def _request_token(self, form: dict[str, str]) -> None:
        try:
            resp = await self.http.post(self.settings.crm_auth_url, data=form)
        except httpx.TransportError as exc:
            raise ConnectFailure(f"CRM token endpoint unreachable: {exc}") from exc
        if resp.is_error:
            raise AuthFailure(f"CRM returned {resp.status_code}: {resp.text}")
        try:
            payload = _json_object(resp)
        except ValueError as exc:
            raise AuthFailure(f"CRM token response unusable: {exc}") from exc
        token = payload.get("access_token")
        if not token:
            raise AuthFailure("Auth succeeded but access token is empty")
        self.access_token = token
        self.instance_url = (payload.get("instance_url") or "").rstrip("/")

    def invalidate(self) -> None:
        self.access_token = None

    # ── Authenticated requests ───────────────────

    def _url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return f"{self.instance_url}{path}"

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.http.request(
                method,
                self._url(path),
                headers={"Authorization": f"Bearer {self.access_token}"},
                **kwargs,
            )
        except httpx.TransportError as exc:
            raise ConnectFailure(f"CRM unreachable: {exc}") from exc

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """
        Send an authenticated request.

        Authenticates first when no token is cached. On 401 the token is
        dropped, a new one fetched, and the request sent once more. Any
        remaining non-success status raises CrmRequestFailure.
        """
        if not self.access_token:
            await self.authenticate()
        resp = await self._send(method, path, **kwargs)
        if resp.status_code == httpx.codes.UNAUTHORIZED:
            logger.warning("CRM token expired, refreshing...")
            self.invalidate()
            await self.authenticate()
            resp = await self._send(method, path, **kwargs)
        if resp.is_error:
            raise CrmRequestFailure(resp.status_code, resp.text)
        return resp

    async def create_task(self, task: dict[str, Any]) -> str | None:
        """POST a Task object; returns the new record id when the CRM reports one."""
        path = f"/services/data/{self.settings.crm_api_version}/sobjects/Task/"
        resp = await self.request("POST", path, json=task)
        try:
            return _json_object(resp).get("id")
        except ValueError:
            return None

    async def modified_since(self, since: datetime) -> list[CrmRecord]:
        """Task records modified after ``since``, following every result page."""
        soql = (
            "SELECT Id, Status, Description FROM Task "
            f"WHERE LastModifiedDate > {soql_timestamp(since)} ORDER BY LastModifiedDate"
        )
        path = f"/services/data/{self.settings.crm_api_version}/query"
        resp = await self.request("GET", path, params={"q": soql})
        records: list[CrmRecord] = []
        while True:
            try:
                page = _json_object(resp)
                rows = page.get("records") or []
                if not isinstance(rows, list) or not all(isinstance(row, dict) for row in rows):
                    raise ValueError("records is not a list of objects")
            except ValueError as exc:
                raise CrmRequestFailure(resp.status_code, f"Unusable query response: {exc}") from exc
            for row in rows:
                records.append(
                    CrmRecord(
                        id=str(row.get("Id") or ""),
                        status=str(row.get("Status") or ""),
                        description=str(row.get("Description") or ""),
                    )
                )
            next_url = page.get("nextRecordsUrl")
            if page.get("done", True) or not next_url:
                return records
            resp = await self.request("GET", next_url)
