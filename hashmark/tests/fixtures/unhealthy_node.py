"""
Local TCP endpoint that misbehaves like an unhealthy JSON-RPC node.

Lets gateway and API tests exercise the real web3 HTTP transport, and the
exception types it actually raises, without a ledger.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional


BAD_GATEWAY = (
    b"HTTP/1.1 502 Bad Gateway\r\n"
    b"Content-Type: text/plain\r\n"
    b"Content-Length: 11\r\n"
    b"Connection: close\r\n"
    b"\r\n"
    b"Bad Gateway"
)


@asynccontextmanager
async def unhealthy_rpc_node(
    response: Optional[bytes] = None,
) -> AsyncIterator[str]:
    """
    Yield the URL of a node that reads each request and then either drops
    the connection (``response=None``) or answers with ``response``.
    """

    async def handle(
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            await reader.readuntil(b"\r\n\r\n")
            if response is not None:
                writer.write(response)
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            # Client gave up first.
            return
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]

    try:
        yield f"http://127.0.0.1:{port}"
    finally:
        server.close()
        await server.wait_closed()
