from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from parking_sync.config import settings
from ..errors import AuthError, ConfigurationError, RemoteError
from ..retry import retry_async, is_transient_http_error
from .base import ErpConnector, ErpSession, RemoteResult
from .registry import register

logger = logging.getLogger("parking_sync.erp.softone")

# SqlData param1 value meaning "every row"
FETCH_ALL_SINCE = "2022-01-01 00:00:00"

RESPONSE_ENCODING = "cp1253"

_ERROR_FIELDS = ("error", "errormessage", "errorMessage", "message", "errorcode")

@dataclass
class SoftOneConfig:
    username: str
    password: str
    app_id: str
    base_url: str = ""              # empty -> settings.SOFTONE_API_URL
    company: str = "1001"
    branch: str = "1000"
    module: str = "0"
    refid: str = "15"
    version: str = "1"
    registered_name: Optional[str] = None
    timeout_s: float = 120.0
    retry_attempts: int = 3
    retry_delay_s: float = 1.0

    def __post_init__(self):
        # GetTable sends appId as a number
        if not str(self.app_id or "").strip().isdigit():
            raise ConfigurationError(f"SoftOne app_id must be numeric, got {self.app_id!r}", {"app_id": self.app_id})

@register("softone")
class SoftOneConnector(ErpConnector):
    """
    SoftOne Web Services connector (s1services).

    Implementation notes:
    - Every service is a POST of a JSON body to the same URL, discriminated by "service"
    - Responses are Windows-1253 encoded JSON carrying a "success" flag
    - GetTable returns positional rows plus "keys"; SqlData returns row objects
    - Transport failures are retried with a linearly growing delay
    """

    def __init__(self, cfg: SoftOneConfig):
        self.cfg = cfg
        self.url = (cfg.base_url or settings.SOFTONE_API_URL).rstrip("/")
        self._client = httpx.AsyncClient(timeout=self.cfg.timeout_s)

    async def _post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        service = body.get("service")

        async def _call() -> httpx.Response:
            return await self._client.post(self.url, json=body)

        try:
            r = await retry_async(
                _call,
                attempts=self.cfg.retry_attempts,
                base_delay=self.cfg.retry_delay_s,
                backoff="linear",
                is_transient=is_transient_http_error,
                label=f"SoftOne {service}",
            )
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise RemoteError(f"SoftOne {service} unreachable: {e}", transient=True) from e
        except httpx.HTTPError as e:
            raise RemoteError(f"SoftOne {service} request failed: {e}") from e

        if not (200 <= r.status_code < 300):
            raise RemoteError(f"SoftOne {service} returned HTTP {r.status_code}", details={"status_code": r.status_code})

        text = r.content.decode(RESPONSE_ENCODING, errors="replace")
        try:
            data = json.loads(text)
        except ValueError as e:
            raise RemoteError(f"SoftOne {service} returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise RemoteError(f"SoftOne {service} returned unexpected payload type {type(data).__name__}")
        return data

    @staticmethod
    def _error_message(data: Dict[str, Any], default: str) -> str:
        for key in _ERROR_FIELDS:
            if data.get(key):
                return str(data[key])
        return default

    async def authenticate(self) -> ErpSession:
        body: Dict[str, Any] = {
            "service": "login",
            "username": self.cfg.username,
            "password": self.cfg.password,
            "appId": self.cfg.app_id,
            "COMPANY": self.cfg.company,
            "BRANCH": self.cfg.branch,
            "MODULE": self.cfg.module,
            "REFID": self.cfg.refid,
            "VERSION": self.cfg.version,
        }
        if self.cfg.registered_name:
            body["registeredName"] = self.cfg.registered_name

        data = await self._post(body)
        if not data.get("success"):
            raise AuthError(self._error_message(data, "SoftOne login failed"))

        client_id = data.get("clientID") or data.get("clientId")
        if not client_id:
            raise AuthError("SoftOne login returned no clientID")

        logger.info(f"Authenticated against SoftOne as {self.cfg.username}")
        return ErpSession(client_id=str(client_id))

    async def fetch_table(
        self,
        session: ErpSession,
        table: str,
        fields: List[str],
        filter_expression: str = "1=1",
        filters: Optional[str] = None,
    ) -> RemoteResult:
        body: Dict[str, Any] = {
            "service": "GetTable",
            "clientId": session.client_id,
            "appId": int(self.cfg.app_id),
            "version": "1",
            "TABLE": table,
            "FIELDS": ",".join(fields),
            "FILTER": filter_expression or "1=1",
        }
        if filters:
            body["FILTERS"] = filters

        data = await self._post(body)
        if not data.get("success"):
            raise RemoteError(self._error_message(data, f"GetTable {table} failed"))

        rows = data.get("data")
        if rows is None:
            rows = data.get("rows") or []
        count = data.get("count", data.get("totalcount"))
        logger.info(f"GetTable {table}: {len(rows)} rows (FILTER={body['FILTER']})")
        return RemoteResult(rows=rows, keys=data.get("keys") or [], count=count)

    async def fetch_named_query(
        self,
        session: ErpSession,
        query_id: str,
        since: Optional[str] = None,
    ) -> RemoteResult:
        body = {
            "service": "SqlData",
            "clientID": session.client_id,
            "appId": str(self.cfg.app_id),
            "SqlName": str(query_id),
            "param1": since or FETCH_ALL_SINCE,
        }

        data = await self._post(body)
        if not data.get("success"):
            raise RemoteError(self._error_message(data, f"SqlData {query_id} failed"))

        rows = data.get("rows")
        if rows is None:
            rows = data.get("data") or []
        logger.info(f"SqlData {query_id}: {len(rows)} rows since {body['param1']}")
        return RemoteResult(rows=rows, keys=data.get("keys") or [], count=data.get("totalcount"))

    async def aclose(self) -> None:
        await self._client.aclose()
