"""Resilient HTTP client for webhook steps.

Wraps httpx with:
- URL validation and SSRF protection (production only)
- Outbound and inbound payload size limits
- Per-attempt timeout
- Retry with capped exponential backoff (network errors, timeouts, 5xx)
- Per-host circuit breaker

4xx responses, invalid URLs, blocked addresses, oversized payloads and
open breakers are never retried.
"""

import asyncio
import ipaddress
import json
import time
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import httpx
import structlog

from app.config import Settings, get_settings
from core.circuit_breaker import CircuitBreaker, CircuitBreakerEntry
from core.exceptions import (
    BlockedAddressError,
    HttpClientError,
    HttpStatusError,
    InvalidUrlError,
    PayloadTooLargeError,
    RequestTimeoutError,
    RetriesExhaustedError,
    TransportError,
)
from workflow.ports import HttpClient
from workflow.retry_strategies import RetryStrategy

logger = structlog.get_logger(__name__)

BODY_METHODS = ("POST", "PUT", "PATCH")
LOCALHOST_NAMES = ("localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback")


def _is_private_ip(ip_str: str) -> bool:
    """Check if an IP literal is loopback, private, link-local or otherwise internal.

    Blocks:
    - 10.0.0.0/8, 172.16.0.0/12, 192.168.0.0/16
    - 127.0.0.0/8, ::1
    - 169.254.0.0/16, fe80::/10
    - 0.0.0.0 and other reserved ranges
    """
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        ip = ip.ipv4_mapped
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_unspecified
        or ip.is_multicast
    )


def _is_local_hostname(hostname: str) -> bool:
    hostname = hostname.lower().rstrip(".")
    return hostname in LOCALHOST_NAMES or hostname.endswith(".localhost")


class ResilientHttpClient(HttpClient):
    """Outbound HTTP client used by webhook steps and webhook notifications.

    Circuit breaker state belongs to the instance; share one client per
    process to share breaker state.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        max_payload_size: int = 10 * 1024 * 1024,
        retries: int = 3,
        retry_delay: float = 1.0,
        max_retry_delay: float = 10.0,
        backoff_multiplier: float = 2.0,
        circuit_breaker_threshold: int = 5,
        circuit_breaker_reset_timeout: float = 60.0,
        block_private_addresses: bool = False,
        resolve_hostnames: bool = False,
        user_agent: str = "workflow-orchestrator",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self.max_payload_size = max_payload_size
        self.retries = retries
        self.block_private_addresses = block_private_addresses
        self.resolve_hostnames = resolve_hostnames
        self.user_agent = user_agent
        self._retry_strategy = RetryStrategy.exponential(
            max_retries=retries,
            base_delay=retry_delay,
            max_delay=max_retry_delay,
            multiplier=backoff_multiplier,
        )
        self._breaker = CircuitBreaker(
            failure_threshold=circuit_breaker_threshold,
            recovery_timeout=circuit_breaker_reset_timeout,
            clock=clock,
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ResilientHttpClient":
        """Build a client from application settings."""
        settings = settings or get_settings()
        return cls(
            timeout=settings.HTTP_TIMEOUT,
            max_payload_size=settings.HTTP_MAX_PAYLOAD_SIZE,
            retries=settings.HTTP_RETRIES,
            retry_delay=settings.HTTP_RETRY_DELAY,
            max_retry_delay=settings.HTTP_MAX_RETRY_DELAY,
            circuit_breaker_threshold=settings.HTTP_CIRCUIT_BREAKER_THRESHOLD,
            circuit_breaker_reset_timeout=settings.HTTP_CIRCUIT_BREAKER_RESET_TIMEOUT,
            block_private_addresses=settings.is_production,
            user_agent=settings.user_agent,
            transport=transport,
        )

    async def __aenter__(self) -> "ResilientHttpClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                follow_redirects=False,
                timeout=httpx.Timeout(self.timeout),
            )
        return self._client

    # ─── Public API ───────────────────────────────────────────

    async def request(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
    ) -> Any:
        """Send a request and return the parsed response body.

        JSON responses are decoded, anything else is returned as text.

        Raises:
            HttpClientError: a subclass describing why the call failed
        """
        method = method.upper()
        host = self._validate_url(url)
        if self.block_private_addresses and self.resolve_hostnames:
            await self._check_resolved_addresses(host)

        content = None
        if body is not None and method in BODY_METHODS:
            content = self._encode_body(body)

        request_headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            **(headers or {}),
        }

        attempt = 0
        while True:
            self._breaker.check(host)
            attempt += 1
            try:
                logger.debug("HTTP request", method=method, url=url, attempt=attempt)
                result = await self._send_once(method, url, request_headers, content)
            except HttpClientError as e:
                self._breaker.record_failure(host, str(e))
                if not self._retry_strategy.should_retry(attempt, e):
                    if e.retryable:
                        raise RetriesExhaustedError(attempt, e) from e
                    raise
                delay = self._retry_strategy.compute_delay(attempt)
                logger.warning(
                    "HTTP request failed, retrying",
                    url=url,
                    attempt=attempt,
                    max_attempts=self.retries + 1,
                    delay_s=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
                continue

            self._breaker.record_success(host)
            return result

    def get_circuit_breaker_state(self, host: str) -> Optional[CircuitBreakerEntry]:
        """Breaker entry for a host (None when the host never failed)."""
        return self._breaker.get_state(host)

    def get_circuit_breaker_status(self) -> dict:
        return self._breaker.get_status()

    def reset_circuit_breaker(self, host: Optional[str] = None) -> None:
        """Forget failures for one host, or all hosts."""
        self._breaker.reset(host)

    # ─── Internals ────────────────────────────────────────────

    def _validate_url(self, url: str) -> str:
        """Validate scheme/host and return the hostname used as breaker key."""
        try:
            parsed = urlparse(url)
            hostname = parsed.hostname
        except (ValueError, TypeError, AttributeError):
            raise InvalidUrlError(f"Invalid URL: {url}")

        if not parsed.scheme:
            raise InvalidUrlError(f"Invalid URL: {url}")
        if parsed.scheme.lower() not in ("http", "https"):
            raise InvalidUrlError(
                f"Invalid protocol: {parsed.scheme}. Only HTTP/HTTPS allowed."
            )
        if not hostname:
            raise InvalidUrlError(f"Invalid URL: {url}")

        if self.block_private_addresses and (
            _is_local_hostname(hostname) or _is_private_ip(hostname)
        ):
            raise BlockedAddressError(hostname)

        return hostname.lower()

    async def _check_resolved_addresses(self, host: str) -> None:
        """Resolve a hostname and reject it if any address is internal."""
        try:
            ipaddress.ip_address(host)
            return  # literal, already checked
        except ValueError:
            pass

        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(host, None)
        except OSError as e:
            raise TransportError(f"DNS resolution failed for {host}: {e}") from e

        for info in infos:
            if _is_private_ip(info[4][0]):
                raise BlockedAddressError(host)

    def _encode_body(self, body: Any) -> bytes:
        if isinstance(body, bytes):
            content = body
        elif isinstance(body, str):
            content = body.encode("utf-8")
        else:
            content = json.dumps(body, default=str).encode("utf-8")

        if len(content) > self.max_payload_size:
            raise PayloadTooLargeError(len(content), self.max_payload_size)
        return content

    async def _send_once(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        content: Optional[bytes],
    ) -> Any:
        try:
            return await asyncio.wait_for(
                self._exchange(method, url, headers, content),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise RequestTimeoutError(self.timeout) from e
        except (httpx.TransportError, OSError) as e:
            raise TransportError(f"Network error: {e}") from e

    async def _exchange(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        content: Optional[bytes],
    ) -> Any:
        client = self._get_client()
        request = client.build_request(method, url, headers=headers, content=content)
        response = await client.send(request, stream=True)
        try:
            if not response.is_success:
                raise HttpStatusError(response.status_code, response.reason_phrase)

            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > self.max_payload_size:
                raise PayloadTooLargeError(int(declared), self.max_payload_size)

            chunks = []
            received = 0
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > self.max_payload_size:
                    raise PayloadTooLargeError(received, self.max_payload_size)
                chunks.append(chunk)
            raw = b"".join(chunks)
        finally:
            await response.aclose()

        content_type = response.headers.get("content-type", "")
        text = raw.decode(response.charset_encoding or "utf-8", errors="replace")
        if "application/json" in content_type:
            try:
                return json.loads(text) if text else None
            except ValueError:
                return text
        return text
