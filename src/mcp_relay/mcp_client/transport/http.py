"""
MCP transport over HTTP/HTTPS using httpx and httpx-sse.

Two wire styles are supported:

* streamable HTTP: every outbound message is POSTed to the server URL and the
  reply comes back either as a JSON body or as a ``text/event-stream`` body;
* legacy SSE: a long-lived GET stream first announces an ``endpoint`` event,
  outbound messages are POSTed to that endpoint and every reply is pushed
  over the stream.

Either way the session sees one `receive()` queue of decoded messages.
"""
import asyncio
import json
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx
import structlog
from httpx_sse import EventSource, ServerSentEvent, aconnect_sse

from ... import __version__
from ...config import HTTPClientConfig
from ...models.mcp import ServerDescriptor
from ..exceptions import MCPAuthError, MCPClientError, MCPTransportError

logger = structlog.get_logger(__name__)

MCP_SESSION_ID = "Mcp-Session-Id"
JSON = "application/json"
SSE = "text/event-stream"

# Closed-channel marker placed on the inbound queue.
_CLOSED = object()


class HttpTransport:
    """
    Transport for MCP servers reachable over HTTP. Never retries; a failed send
    surfaces as MCPTransportError or MCPAuthError and the caller decides.
    """

    def __init__(
        self,
        descriptor: ServerDescriptor,
        http_config: HTTPClientConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.descriptor = descriptor
        self.url = descriptor.url or ""
        self.http_config = http_config or HTTPClientConfig()
        self.use_sse_channel = descriptor.uses_sse_channel
        self._client = http_client
        self._owns_client = http_client is None
        self._inbound: asyncio.Queue = asyncio.Queue()
        self._reply_tasks: set[asyncio.Task] = set()
        self._stream_task: asyncio.Task | None = None
        self._endpoint_url: str | None = None
        self._session_id: str | None = None
        self._extra_headers: dict[str, str] = {}
        self._closing = False
        self._closed = False
        self.logger = logger.bind(
            server_name=descriptor.name,
            server_endpoint=self.url,
            transport="sse" if self.use_sse_channel else "http",
        )

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def endpoint_url(self) -> str | None:
        """POST target; the announced endpoint in SSE mode, else the server URL."""
        return self._endpoint_url if self.use_sse_channel else self.url

    @property
    def is_connected(self) -> bool:
        if self._closing:
            return False
        if self.use_sse_channel:
            return self._stream_task is not None and not self._stream_task.done()
        return self._client is not None and not self._client.is_closed

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self.logger.debug("Creating httpx client.")
            verify = self.http_config.ssl_verify
            if urlparse(self.url).scheme == "https" and not verify:
                self.logger.warning("SSL verification is DISABLED for HTTP client. This is insecure for production.")
            self._client = httpx.AsyncClient(
                verify=verify,
                follow_redirects=True,
                timeout=self._timeout(),
                limits=httpx.Limits(max_connections=self.http_config.connection_pool_total_limit),
            )
            self._owns_client = True
        return self._client

    def _timeout(self) -> httpx.Timeout:
        # Request deadlines belong to the protocol session; only bound connection setup here.
        return httpx.Timeout(None, connect=self.http_config.connect_timeout_seconds)

    def _headers(self, accept: str, extra_headers: dict[str, str] | None) -> dict[str, str]:
        headers = {
            "Accept": accept,
            "User-Agent": self.http_config.user_agent or f"mcp-relay/{__version__}",
        }
        headers.update(self.descriptor.headers)
        if extra_headers:
            headers.update(extra_headers)
        if self._session_id:
            headers[MCP_SESSION_ID] = self._session_id
        return headers

    def _capture_session_id(self, response: httpx.Response) -> None:
        session_id = response.headers.get(MCP_SESSION_ID)
        if session_id and session_id != self._session_id:
            self.logger.debug("Server assigned session id.", session_id=session_id)
            self._session_id = session_id

    async def connect(self, extra_headers: dict[str, str] | None = None) -> None:
        """Prepares the channel. In SSE mode opens the event stream and waits for the endpoint."""
        if self._closing:
            raise MCPTransportError("Transport closed", kind=MCPTransportError.CONNECTION_LOST)
        client = self._get_client()
        if not self.use_sse_channel or self.is_connected:
            return

        self.logger.debug("Opening SSE channel.")
        endpoint: asyncio.Future = asyncio.get_running_loop().create_future()
        self._stream_task = asyncio.create_task(
            self._read_sse_channel(client, self._headers(SSE, extra_headers), endpoint)
        )
        try:
            self._endpoint_url = await asyncio.wait_for(
                asyncio.shield(endpoint), timeout=self.http_config.connect_timeout_seconds
            )
        except (TimeoutError, MCPClientError) as e:
            self._stream_task.cancel()
            await asyncio.gather(self._stream_task, return_exceptions=True)
            if isinstance(e, MCPClientError):
                raise
            raise MCPTransportError(
                "SSE channel did not announce a message endpoint", kind=MCPTransportError.CONNECTION_LOST
            ) from e
        self.logger.debug("SSE channel ready.", endpoint=self._endpoint_url)

    async def _read_sse_channel(
        self, client: httpx.AsyncClient, headers: dict[str, str], endpoint: asyncio.Future
    ) -> None:
        error: MCPClientError | None = None
        try:
            async with aconnect_sse(client, "GET", self.url, headers=headers) as event_source:
                if event_source.response.status_code >= 300:
                    await self._raise_for_status(event_source.response)
                async for event in event_source.aiter_sse():
                    if event.event == "endpoint":
                        self._accept_endpoint(event, endpoint)
                    elif event.event == "message":
                        self._queue_event_data(event)
                    else:
                        self.logger.debug("Skipping SSE event.", sse_event=event.event)
        except MCPClientError as e:
            error = e
        except httpx.TransportError as e:
            error = MCPTransportError(f"SSE channel to {self.url} failed: {e}", kind=MCPTransportError.CONNECTION_LOST)
        except httpx.RequestError as e:
            error = MCPTransportError(f"SSE request to {self.url} failed: {e}")
        if not endpoint.done():
            endpoint.set_exception(error or MCPTransportError(
                "SSE channel closed before announcing an endpoint", kind=MCPTransportError.CONNECTION_LOST
            ))
            # Retrieved by connect(); avoid "exception never retrieved" if it already gave up.
            endpoint.exception()
        if not self._closing:
            self.logger.warning("SSE channel closed by server.")
            self._inbound.put_nowait(error or MCPTransportError(
                "SSE channel closed by server", kind=MCPTransportError.CONNECTION_LOST
            ))

    def _accept_endpoint(self, event: ServerSentEvent, endpoint: asyncio.Future) -> None:
        url = urljoin(self.url, event.data.strip())
        announced, origin = urlparse(url), urlparse(self.url)
        if (announced.scheme, announced.netloc) != (origin.scheme, origin.netloc):
            if not endpoint.done():
                endpoint.set_exception(MCPTransportError(
                    f"Endpoint origin does not match connection origin: {url}", kind=MCPTransportError.IO_FAILURE
                ))
            return
        if not endpoint.done():
            endpoint.set_result(url)

    def _queue_event_data(self, event: ServerSentEvent) -> None:
        if not event.data.strip():
            return
        try:
            payload = json.loads(event.data)
        except json.JSONDecodeError as e:
            self.logger.warning("Dropping SSE event with invalid JSON.", error=str(e), data=event.data[:200])
            return
        self._queue_payload(payload)

    def _queue_payload(self, payload: Any) -> None:
        if isinstance(payload, list):
            for item in payload:
                self._inbound.put_nowait(item)
        elif isinstance(payload, dict):
            self._inbound.put_nowait(payload)
        else:
            self.logger.warning("Dropping non-object JSON-RPC payload.", payload_type=type(payload).__name__)

    async def send(self, message: dict[str, Any], extra_headers: dict[str, str] | None = None) -> None:
        """POSTs one message.

        Raises:
            MCPAuthError: the server answered 401 or 403.
            MCPTransportError: connection refused, reset or timed out (connection_lost)
                or any other non-2xx reply (io_failure).
        """
        if self._closing:
            raise MCPTransportError("Transport closed", kind=MCPTransportError.CONNECTION_LOST)
        if self.use_sse_channel and self._endpoint_url is None:
            await self.connect(extra_headers)
        client = self._get_client()
        target = self.endpoint_url
        self._extra_headers = dict(extra_headers or {})

        headers = self._headers(f"{JSON}, {SSE}", extra_headers)
        self.logger.debug("Sending JSON-RPC message.", method=message.get("method"), message_id=message.get("id"))
        request = client.build_request("POST", target, json=message, headers=headers)
        try:
            response = await client.send(request, stream=True)
        except httpx.TransportError as e:
            raise MCPTransportError(
                f"Failed to connect to {target}: {e}", kind=MCPTransportError.CONNECTION_LOST
            ) from e
        except httpx.RequestError as e:
            raise MCPTransportError(f"HTTP request to {target} failed: {e}") from e

        self._capture_session_id(response)
        if response.status_code >= 300:
            try:
                await self._raise_for_status(response)
            finally:
                await response.aclose()

        content_type = response.headers.get("Content-Type", "").lower()
        if self.use_sse_channel or response.status_code in (202, 204):
            # Replies arrive on the SSE channel.
            await response.aclose()
        elif content_type.startswith(SSE):
            task = asyncio.create_task(self._read_reply_stream(response))
            self._reply_tasks.add(task)
            task.add_done_callback(self._reply_tasks.discard)
        elif content_type.startswith(JSON):
            try:
                payload = json.loads(await response.aread())
            except json.JSONDecodeError as e:
                raise MCPTransportError(f"Invalid JSON reply from {target}: {e}") from e
            except httpx.TransportError as e:
                raise MCPTransportError(
                    f"Reply from {target} interrupted: {e}", kind=MCPTransportError.CONNECTION_LOST
                ) from e
            finally:
                await response.aclose()
            self._queue_payload(payload)
        else:
            await response.aclose()
            self.logger.warning("Ignoring reply with unexpected content type.", content_type=content_type)

    async def _read_reply_stream(self, response: httpx.Response) -> None:
        try:
            async for event in EventSource(response).aiter_sse():
                if event.event == "message":
                    self._queue_event_data(event)
        except httpx.TransportError as e:
            if not self._closing:
                self._inbound.put_nowait(MCPTransportError(
                    f"Reply stream interrupted: {e}", kind=MCPTransportError.CONNECTION_LOST
                ))
        finally:
            await response.aclose()

    async def _raise_for_status(self, response: httpx.Response) -> None:
        await response.aread()
        error_text = response.text[:500]
        if response.status_code in (401, 403):
            self.logger.warning("Authentication failed.", status=response.status_code, response_text=error_text)
            raise MCPAuthError(
                f"Authentication failed: HTTP {response.status_code}",
                server_error=error_text,
                status=response.status_code,
            )
        self.logger.error("HTTP error from server.", status=response.status_code, response_text=error_text)
        raise MCPTransportError(
            f"HTTP error {response.status_code}: {error_text}", kind=MCPTransportError.IO_FAILURE
        )

    async def receive(self) -> dict[str, Any]:
        if self._closed and self._inbound.empty():
            raise MCPTransportError("Transport closed", kind=MCPTransportError.CONNECTION_LOST)
        item = await self._inbound.get()
        if item is _CLOSED:
            self._inbound.put_nowait(_CLOSED)
            raise MCPTransportError("Transport closed", kind=MCPTransportError.CONNECTION_LOST)
        if isinstance(item, MCPTransportError):
            raise item
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closing = True
        self._closed = True

        if self._session_id and not self.use_sse_channel and self._client is not None and not self._client.is_closed:
            await self._terminate_server_session()

        tasks = [t for t in (self._stream_task, *self._reply_tasks) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._inbound.put_nowait(_CLOSED)
        self.logger.debug("HTTP transport closed.")

    async def _terminate_server_session(self) -> None:
        try:
            response = await self._client.delete(
                self.url,
                headers=self._headers(JSON, self._extra_headers),
                timeout=httpx.Timeout(self.http_config.connect_timeout_seconds),
            )
            self.logger.debug("Session termination requested.", status=response.status_code)
        except httpx.HTTPError as e:
            self.logger.debug("Session termination request failed.", error=str(e))
