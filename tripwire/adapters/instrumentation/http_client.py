"""Outbound HTTP spans for httpx clients."""

import time
from typing import Any

import httpx

from tripwire.core.spans import SpanCollector

MAX_DESCRIPTION_LENGTH = 200


class InstrumentedTransport(httpx.AsyncBaseTransport):
    """Wraps another transport and records every request as an "http" span.

    Requests made outside an active request scope pass straight through.
    """

    def __init__(self, collector: SpanCollector, transport: httpx.AsyncBaseTransport):
        self.collector = collector
        self.transport = transport

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if not self.collector.active():
            return await self.transport.handle_async_request(request)

        started = time.monotonic()
        response: httpx.Response | None = None
        try:
            response = await self.transport.handle_async_request(request)
            return response
        finally:
            duration_ms = (time.monotonic() - started) * 1000.0
            url = request.url
            description = f"{request.method} {url.scheme}://{url.host}{url.path}"
            if len(description) > MAX_DESCRIPTION_LENGTH:
                description = description[: MAX_DESCRIPTION_LENGTH - 3] + "..."
            self.collector.record_span(
                "http",
                description,
                duration_ms,
                {
                    "method": request.method,
                    "host": url.host,
                    "port": url.port,
                    "path": url.path,
                    "status": response.status_code if response is not None else None,
                },
            )

    async def aclose(self) -> None:
        await self.transport.aclose()


class HttpInstrumenter:
    """Builds httpx clients whose requests show up in request traces."""

    def __init__(self, collector: SpanCollector):
        self.collector = collector

    def wrap(self, transport: httpx.AsyncBaseTransport | None = None) -> InstrumentedTransport:
        return InstrumentedTransport(self.collector, transport or httpx.AsyncHTTPTransport())

    def client(
        self, transport: httpx.AsyncBaseTransport | None = None, **kwargs: Any
    ) -> httpx.AsyncClient:
        """Create an AsyncClient; extra kwargs go to httpx.AsyncClient."""
        return httpx.AsyncClient(transport=self.wrap(transport), **kwargs)
