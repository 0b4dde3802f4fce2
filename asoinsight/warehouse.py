"""BigQuery warehouse client over the REST API.

Authenticates with a service-account JWT assertion (RS256) exchanged for an
OAuth access token, then runs parameterized ``jobs.query`` requests. Failures
are mapped onto the two warehouse error kinds; warehouse-native messages are
never propagated.
"""
import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx
from jose import jwt

from .config import settings
from .errors import AnalyticsError, WarehouseQueryRejectedError, WarehouseUnavailableError

logger = logging.getLogger(__name__)

BIGQUERY_SCOPE = "https://www.googleapis.com/auth/bigquery"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


@dataclass(frozen=True)
class QueryParameter:
    """Named query parameter. ``value`` is a list when ``array`` is set."""
    name: str
    type: str
    value: Any
    array: bool = False

    def to_bigquery(self) -> Dict[str, Any]:
        if self.array:
            return {
                "name": self.name,
                "parameterType": {"type": "ARRAY", "arrayType": {"type": self.type}},
                "parameterValue": {"arrayValues": [{"value": str(v)} for v in self.value]},
            }
        return {
            "name": self.name,
            "parameterType": {"type": self.type},
            "parameterValue": {"value": str(self.value)},
        }

    def shape(self) -> str:
        """Loggable description without literal values."""
        if self.array:
            return f"{self.name}:{self.type}[{len(self.value)}]"
        return f"{self.name}:{self.type}"


class WarehouseClient(ABC):
    """Executes read-only analytical queries."""

    project_id: Optional[str] = None

    @abstractmethod
    async def run_query(self, sql: str, params: Sequence[QueryParameter]) -> List[Dict[str, Any]]:
        """
        Run a query and return rows as dicts keyed by column name.

        Raises:
            WarehouseUnavailableError: Transport errors, timeouts, 5xx and 429
            WarehouseQueryRejectedError: The warehouse refused the query
        """

    async def aclose(self) -> None:
        pass


class ServiceAccountTokenProvider:
    """OAuth access tokens for a Google service account, reused until shortly before expiry."""

    def __init__(
        self,
        credentials: Dict[str, Any],
        http: httpx.AsyncClient,
        token_url: Optional[str] = None,
        refresh_margin: int = 60,
    ):
        self.credentials = credentials
        self.http = http
        self.token_url = token_url or settings.google_token_url
        self.refresh_margin = refresh_margin
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def _assertion(self, now: int) -> str:
        claims = {
            "iss": self.credentials.get("client_email"),
            "scope": BIGQUERY_SCOPE,
            "aud": self.token_url,
            "iat": now,
            "exp": now + 3600,
        }
        headers = {}
        if self.credentials.get("private_key_id"):
            headers["kid"] = self.credentials["private_key_id"]
        return jwt.encode(claims, self.credentials.get("private_key", ""), algorithm="RS256", headers=headers)

    async def get_token(self) -> str:
        if self._token and time.time() < self._expires_at - self.refresh_margin:
            return self._token

        async with self._lock:
            if self._token and time.time() < self._expires_at - self.refresh_margin:
                return self._token

            now = int(time.time())
            try:
                response = await self.http.post(
                    self.token_url,
                    data={"grant_type": JWT_BEARER_GRANT, "assertion": self._assertion(now)},
                )
            except httpx.HTTPError as e:
                raise WarehouseUnavailableError("Failed to reach the warehouse token endpoint") from e

            if response.status_code == 429 or response.status_code >= 500:
                raise WarehouseUnavailableError("Warehouse token endpoint unavailable", {"status": response.status_code})
            if response.status_code >= 400:
                logger.error(f"Service account token request rejected: status={response.status_code}")
                raise AnalyticsError("Failed to authenticate with the warehouse")

            token_json = response.json()
            self._token = token_json["access_token"]
            self._expires_at = now + int(token_json.get("expires_in", 3600))
            return self._token


def decode_rows(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Convert the ``{"schema": ..., "rows": [{"f": [{"v": ...}]}]}`` layout to dicts."""
    fields = [field["name"] for field in payload.get("schema", {}).get("fields", [])]
    rows = []
    for row in payload.get("rows") or []:
        cells = row.get("f", [])
        rows.append({name: (cell or {}).get("v") for name, cell in zip(fields, cells)})
    return rows


class BigQueryClient(WarehouseClient):
    """Warehouse client for BigQuery's ``jobs.query`` REST endpoint."""

    def __init__(
        self,
        credentials_json: Optional[str] = None,
        project_id: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        token_provider: Optional[ServiceAccountTokenProvider] = None,
        timeout: Optional[float] = None,
    ):
        raw = credentials_json or settings.bigquery_credentials or "{}"
        try:
            credentials = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError("Invalid BigQuery credentials format") from e

        self.project_id = project_id or settings.bigquery_project_id or credentials.get("project_id")
        self.timeout = timeout or settings.warehouse_timeout
        self.http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        self.token_provider = token_provider or ServiceAccountTokenProvider(credentials, self.http)

    async def run_query(self, sql: str, params: Sequence[QueryParameter]) -> List[Dict[str, Any]]:
        """
        Run ``sql`` and return every result row, following ``pageToken`` until
        the last page has been read.

        Raises:
            WarehouseUnavailableError: Transport failure, 5xx/429, unfinished job or short read
            WarehouseQueryRejectedError: Any other 4xx
        """
        if not self.project_id:
            raise AnalyticsError("BigQuery project ID not configured")

        token = await self.token_provider.get_token()
        headers = {"Authorization": f"Bearer {token}"}
        body: Dict[str, Any] = {
            "query": sql,
            "useLegacySql": False,
            "parameterMode": "NAMED",
            "queryParameters": [p.to_bigquery() for p in params],
            "timeoutMs": int(self.timeout * 1000),
            "maxResults": settings.warehouse_max_rows,
        }
        if settings.bigquery_location:
            body["location"] = settings.bigquery_location

        base_url = f"{settings.bigquery_api_url}/projects/{self.project_id}/queries"
        payload = await self._send("POST", base_url, headers, json=body)
        schema = payload.get("schema")
        rows = decode_rows(payload)
        total_rows = int(payload.get("totalRows") or 0)
        page_token = payload.get("pageToken")

        if page_token:
            job_id = (payload.get("jobReference") or {}).get("jobId")
            if not job_id:
                raise WarehouseUnavailableError("Warehouse returned a partial result without a job reference")
            page_params: Dict[str, Any] = {
                "maxResults": settings.warehouse_max_rows,
                "timeoutMs": int(self.timeout * 1000),
            }
            if settings.bigquery_location:
                page_params["location"] = settings.bigquery_location

            while page_token:
                page = await self._send(
                    "GET", f"{base_url}/{job_id}", headers, params={**page_params, "pageToken": page_token}
                )
                rows.extend(decode_rows({"schema": page.get("schema") or schema, "rows": page.get("rows")}))
                page_token = page.get("pageToken")
            logger.debug(f"Read {len(rows)} warehouse rows across multiple pages")

        if len(rows) < total_rows:
            raise WarehouseUnavailableError(
                "Warehouse returned fewer rows than the query produced",
                {"total_rows": total_rows, "received": len(rows)},
            )
        return rows

    async def _send(self, method: str, url: str, headers: Dict[str, str], **kwargs) -> Dict[str, Any]:
        try:
            response = await self.http.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise WarehouseUnavailableError("Warehouse query timed out") from e
        except httpx.HTTPError as e:
            raise WarehouseUnavailableError("Warehouse unreachable") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise WarehouseUnavailableError("Warehouse temporarily unavailable", {"status": response.status_code})
        if response.status_code >= 400:
            raise WarehouseQueryRejectedError("Warehouse rejected the query", {"status": response.status_code})

        payload = response.json()
        if payload.get("jobComplete") is False:
            raise WarehouseUnavailableError("Warehouse query did not complete in time")
        return payload

    async def aclose(self) -> None:
        await self.http.aclose()
