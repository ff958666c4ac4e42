"""httpx-backed HTTP collaborator used by api and http_request action nodes."""

import ipaddress
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
import structlog

from core.exceptions import NonRetryableHttpError, RetryableTransportError
from integrations.base import HttpRequest, HttpResponse

logger = structlog.get_logger(__name__)

FORBIDDEN_PORTS = (5432, 6379, 9000)


def _is_private_ip(ip_str: str) -> bool:
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_reserved


def validate_url_safety(url: str) -> None:
    """Reject URLs pointing at non-HTTP schemes or internal hosts.

    Raises:
        ValueError: If the URL is unsafe
    """
    parsed = urlparse(url)

    if parsed.scheme.lower() not in ("http", "https"):
        raise ValueError(f"Unsupported scheme: {parsed.scheme!r}. Only HTTP and HTTPS allowed.")

    hostname = parsed.hostname
    if not hostname:
        raise ValueError("URL must have a valid hostname")
    if hostname.lower() in ("localhost", "127.0.0.1", "::1"):
        raise ValueError("Connections to localhost are not allowed")
    if _is_private_ip(hostname):
        raise ValueError(f"Connections to private IP {hostname} are not allowed")

    if parsed.port and parsed.port in FORBIDDEN_PORTS:
        raise ValueError(f"Connections to internal port {parsed.port} are not allowed")


class HttpxCollaborator:
    """Sends HttpRequests with a shared ``httpx.AsyncClient``.

    Transport failures and timeouts surface as RetryableTransportError;
    HTTP status handling is left to the calling runner.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        default_timeout: float = 60.0,
        block_private_networks: bool = True,
        follow_redirects: bool = True,
    ):
        self._client = client
        self._owns_client = client is None
        self.default_timeout = default_timeout
        self.block_private_networks = block_private_networks
        self.follow_redirects = follow_redirects

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                follow_redirects=self.follow_redirects,
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send(self, request: HttpRequest) -> HttpResponse:
        if self.block_private_networks:
            try:
                validate_url_safety(request.url)
            except ValueError as e:
                raise NonRetryableHttpError(str(e)) from e

        kwargs: dict[str, Any] = {
            "method": request.method.upper(),
            "url": request.url,
            "headers": request.headers or None,
            "params": request.params or None,
            "timeout": request.timeout or self.default_timeout,
        }
        if request.json is not None:
            kwargs["json"] = request.json
        elif request.data is not None:
            kwargs["data"] = request.data
        elif request.content is not None:
            kwargs["content"] = request.content

        try:
            response = await self._get_client().request(**kwargs)
        except httpx.TimeoutException as e:
            raise RetryableTransportError(f"Request to {request.url} timed out") from e
        except httpx.TransportError as e:
            raise RetryableTransportError(f"Request to {request.url} failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = response.text

        logger.debug(
            "HTTP request sent",
            method=kwargs["method"],
            url=request.url,
            status=response.status_code,
        )
        return HttpResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=body,
        )
