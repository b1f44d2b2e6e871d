import asyncio
import ipaddress
import json
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import urlparse

import aiohttp

from ..core.enums import ConnectionKind
from ..core.exceptions import ConfigurationError, TransientIOError
from ..core.models import DatasetDescriptor
from .base_source import Batch, SourceAdapter

BLOCKED_HOSTNAMES = {"localhost", "metadata.google.internal"}


def validate_external_url(url: str) -> None:
    """Refuse non-http(s) schemes and loopback/private/link-local literals"""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ConfigurationError(f"Unsupported API URL scheme: {parsed.scheme or '(none)'}")
    host = (parsed.hostname or "").lower()
    if not host:
        raise ConfigurationError(f"API URL has no host: {url}")
    if host in BLOCKED_HOSTNAMES:
        raise ConfigurationError(f"API host {host} is not allowed")
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return
    if address.is_private or address.is_loopback or address.is_link_local or address.is_reserved:
        raise ConfigurationError(f"API host {host} is an internal address")


def extract_response_path(payload: Any, response_path: Optional[str]) -> List[Dict[str, Any]]:
    """Walk a dotted path into the JSON payload; a single object becomes a one-row list"""
    data = payload
    if response_path:
        for part in response_path.split("."):
            if isinstance(data, dict) and part in data:
                data = data[part]
    if data is None:
        return []
    return data if isinstance(data, list) else [data]


class ApiSource(SourceAdapter):
    """
    HTTP JSON endpoint. Only whole reads are possible, so every incremental
    strategy falls back to full refresh for API datasets.

    The dataset's source_query is either a JSON object merged over the
    connection's api_config or a bare endpoint path.
    """

    kind = ConnectionKind.API

    def __init__(self, connection, decryptor=None, timeout: float = 300.0):
        super().__init__(connection, decryptor)
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def connect(self):
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))

    async def disconnect(self):
        if self._session:
            await self._session.close()
            self._session = None

    def request_config(self, dataset: DatasetDescriptor) -> Dict[str, Any]:
        config = dict(self.connection.api_config or {})
        if dataset.source_query:
            try:
                override = json.loads(dataset.source_query)
            except ValueError:
                override = {"endpoint": dataset.source_query}
            if isinstance(override, dict):
                config.update(override)
        return config

    def build_url(self, config: Dict[str, Any]) -> str:
        url = (self.connection.host or "").strip().rstrip("/")
        validate_external_url(url)
        endpoint = config.get("endpoint")
        if endpoint:
            url += "/" + endpoint.lstrip("/")
        query_params = config.get("queryParams") or config.get("query_params")
        if query_params:
            url += ("&" if "?" in url else "?") + query_params
        return url

    def build_headers(self, config: Dict[str, Any]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        headers.update(config.get("headers") or {})
        api_key = (self.connection.api_config or {}).get("apiKey") or self._password()
        if api_key:
            header_name = (self.connection.api_config or {}).get("headerName", "Authorization")
            if header_name == "Authorization":
                headers["Authorization"] = f"Bearer {api_key}"
            else:
                headers[header_name] = api_key
        return headers

    async def _request_json(self, method: str, url: str, headers: Dict[str, str], body: Any) -> Any:
        kwargs: Dict[str, Any] = {"headers": headers}
        if body is not None and method in ("POST", "PUT"):
            kwargs["data"] = body if isinstance(body, str) else json.dumps(body)
        try:
            async with self._session.request(method, url, **kwargs) as resp:
                if resp.status >= 500:
                    raise TransientIOError(f"API error {resp.status} from {url}")
                if resp.status >= 400:
                    text = await resp.text()
                    raise ConfigurationError(f"API error {resp.status} from {url}: {text[:200]}")
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientIOError(f"API request to {url} failed: {e}") from e

    async def fetch_all(self, dataset: DatasetDescriptor) -> Batch:
        config = self.request_config(dataset)
        url = self.build_url(config)
        method = str(config.get("method") or "GET").upper()
        self.logger.info(f"Fetching dataset {dataset.id} from API {url}")
        payload = await self._request_json(method, url, self.build_headers(config), config.get("requestBody"))
        rows = extract_response_path(payload, config.get("responsePath") or config.get("response_path"))
        self.logger.info(f"Fetched {len(rows)} rows from API")
        return rows

    async def stream_rows(self, dataset: DatasetDescriptor, batch_size: int,
                          row_limit: Optional[int] = None) -> AsyncIterator[Batch]:
        rows = await self.fetch_all(dataset)
        if row_limit is not None:
            rows = rows[:row_limit]
        for start in range(0, len(rows), batch_size):
            yield rows[start:start + batch_size]
