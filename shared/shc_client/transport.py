"""HTTPS transport to the Smart Home Controller.

The controller authenticates clients by TLS client certificate and presents a
self-signed server certificate, so server verification is switched off.
"""

import asyncio
import ssl
from abc import ABC, abstractmethod

import aiohttp
import structlog

from .errors import StartupFatalError, TransportError

logger = structlog.get_logger()

DEFAULT_PORT = 8444
CONNECT_TIMEOUT_S = 10
# Added on top of the long-poll timeout so the controller answers before we give up
POLL_TIMEOUT_MARGIN_S = 5


class BaseTransport(ABC):
    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def get(self, path: str) -> bytes: ...

    @abstractmethod
    async def post(self, path: str, body: bytes) -> bytes: ...

    async def __aenter__(self) -> "BaseTransport":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


def create_ssl_context(cert_file: str, key_file: str) -> ssl.SSLContext:
    """Build a client-certificate TLS context that skips server validation.

    Raises:
        StartupFatalError: If either file is missing/unreadable or the
            certificate and key do not match.
    """
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    try:
        context.load_cert_chain(certfile=cert_file, keyfile=key_file)
    except FileNotFoundError as exc:
        raise StartupFatalError(f"Certificate file not found: {exc.filename}") from exc
    except ssl.SSLError as exc:
        raise StartupFatalError(
            f"Invalid client certificate/key pair ({cert_file}, {key_file}): {exc}"
        ) from exc
    except OSError as exc:
        raise StartupFatalError(f"Cannot read certificate material: {exc}") from exc
    return context


class HttpsTransport(BaseTransport):
    """aiohttp-backed transport with client-certificate authentication.

    Args:
        host: Controller hostname or IP address.
        cert_file: PEM client certificate registered on the controller.
        key_file: PEM private key for ``cert_file``.
        port: Controller API port.
        poll_timeout_s: Long-poll timeout; the request timeout is derived from it.
    """

    def __init__(
        self,
        host: str,
        cert_file: str,
        key_file: str,
        *,
        port: int = DEFAULT_PORT,
        poll_timeout_s: int = 30,
    ) -> None:
        self.base_url = f"https://{host}:{port}"
        self._ssl_context = create_ssl_context(cert_file, key_file)
        self._timeout = aiohttp.ClientTimeout(
            total=poll_timeout_s + POLL_TIMEOUT_MARGIN_S,
            sock_connect=CONNECT_TIMEOUT_S,
        )
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is not None:
            return
        connector = aiohttp.TCPConnector(ssl=self._ssl_context)
        self._session = aiohttp.ClientSession(connector=connector, timeout=self._timeout)
        logger.info("HTTPS transport ready", base_url=self.base_url)

    async def close(self) -> None:
        if self._session is None:
            return
        await self._session.close()
        self._session = None

    async def get(self, path: str) -> bytes:
        return await self._request("GET", path)

    async def post(self, path: str, body: bytes) -> bytes:
        return await self._request(
            "POST", path, data=body, headers={"Content-Type": "application/json"}
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(self, method: str, path: str, **kwargs) -> bytes:
        if self._session is None:
            await self.connect()
        url = self._url(path)
        try:
            async with self._session.request(method, url, **kwargs) as resp:
                body = await resp.read()
                if resp.status >= 400:
                    # The body is still handed back: JSON-RPC errors travel in it
                    logger.warning("Controller returned HTTP error", method=method, url=url, status=resp.status)
                return body
        except asyncio.TimeoutError as exc:
            raise TransportError(f"{method} {url} timed out") from exc
        except (aiohttp.ClientError, OSError) as exc:
            raise TransportError(f"{method} {url} failed: {exc}") from exc
