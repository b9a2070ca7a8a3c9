"""
Integration tests for the MCP gateway server (ib_gateway/server.py).

These tests exercise the full request path:
HTTP request -> AuthChallengeMiddleware -> FastMCP -> SessionAuthMiddleware
-> tool -> ResourceGateway / UploadStore.

Test approach:
    httpx.AsyncClient talks to the ASGI app in-memory (no real server
    process). Plain HTTP routes (/upload, /health, /ready) and the 401
    challenge need no lifespan. MCP tool calls need the ASGI lifespan running
    (it initializes the StreamableHTTP session manager's task group), which
    the mcp_client fixture starts manually.

    Each MCP test follows the protocol:
    1. POST to /mcp with "initialize" to start a session
    2. Use the returned Mcp-Session-Id for subsequent requests
    3. POST "tools/call" with an Authorization header
"""

import asyncio
import base64
import json
import tempfile
import time

import httpx
import pytest
from fastmcp import Client
from fastmcp.exceptions import ToolError

from ib_gateway import cursor
from ib_gateway.config import Settings
from ib_gateway.server import create_app, create_server
from ib_gateway.uploads import UploadStore
from tests.conftest import TEST_CLIENT_ID

REALM = "https://mcp.example.test"
MCP_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json, text/event-stream",
}


@pytest.fixture
def config():
    return Settings(server_url=REALM)


@pytest.fixture
def app(sessions, upload_store, gateway, config):
    return create_app(sessions, upload_store, gateway, config)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


def _rpc(method: str, params: dict | None = None, request_id: int = 1) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}}


def _parse_sse_response(text: str) -> dict:
    """
    Parse an SSE (Server-Sent Events) response body into a JSON dict.

    MCP Streamable HTTP transport returns responses as SSE events:
        event: message
        data: {"jsonrpc":"2.0","id":1,"result":{...}}
    """
    for line in text.strip().split("\n"):
        if line.startswith("data: "):
            return json.loads(line[6:])
    return {}


# ---------------------------------------------------------------------------
# HTTP 401 challenge
# ---------------------------------------------------------------------------


class TestAuthChallenge:
    """Protected MCP calls without a usable session are answered with HTTP 401."""

    async def test_missing_header_gets_401_with_challenge(self, client):
        response = await client.post(
            "/mcp",
            headers=MCP_HEADERS,
            json=_rpc("tools/call", {"name": "list_resources", "arguments": {}}),
        )

        assert response.status_code == 401
        challenge = response.headers["www-authenticate"]
        assert challenge.startswith(f'Bearer realm="{REALM}"')
        assert 'scope="read write"' in challenge
        assert 'error="invalid_token"' in challenge
        assert "error_description=" in challenge
        assert response.json()["error"] == "invalid_token"

    async def test_unknown_token_gets_401(self, client, make_session, make_auth_header):
        make_session(token="alice-token")

        response = await client.post(
            "/mcp",
            headers={**MCP_HEADERS, "Authorization": make_auth_header("mallory-token")},
            json=_rpc("tools/call", {"name": "read_resource", "arguments": {"uri": "x"}}),
        )

        assert response.status_code == 401

    async def test_expired_session_gets_401(self, client, make_session, make_auth_header):
        make_session(token="t", sid_expiry=time.time() - 10)

        response = await client.post(
            "/mcp",
            headers={**MCP_HEADERS, "Authorization": make_auth_header("t")},
            json=_rpc("tools/call", {"name": "list_resources", "arguments": {}}),
        )

        assert response.status_code == 401

    async def test_resource_methods_are_protected(self, client):
        response = await client.post("/mcp", headers=MCP_HEADERS, json=_rpc("resources/list"))

        assert response.status_code == 401

    async def test_batched_protected_call_is_challenged(self, client):
        response = await client.post(
            "/mcp",
            headers=MCP_HEADERS,
            json=[
                _rpc("tools/call", {"name": "upload_file", "arguments": {}}, 1),
                _rpc("tools/call", {"name": "list_resources", "arguments": {}}, 2),
            ],
        )

        assert response.status_code == 401


# ---------------------------------------------------------------------------
# Upload endpoint
# ---------------------------------------------------------------------------


class TestUploadEndpoint:
    async def test_pdf_upload_succeeds(self, client, upload_store):
        response = await client.post(
            "/upload",
            files={"file": ("report.pdf", b"%PDF-1.7 test", "application/pdf")},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["filename"] == "report.pdf"
        assert body["size"] == 13
        assert body["expiresAt"] > time.time() * 1000

        record = await upload_store.get(body["fileId"])
        assert record is not None
        assert record.storage_path.read_bytes() == b"%PDF-1.7 test"

    async def test_disallowed_type_is_400(self, client, upload_store):
        response = await client.post(
            "/upload",
            files={"file": ("archive.zip", b"PK\x03\x04", "application/zip")},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "File type not allowed: application/zip"}
        assert len(upload_store) == 0

    async def test_oversized_file_is_400(self, client, upload_store):
        upload_store.max_bytes = 8

        response = await client.post(
            "/upload",
            files={"file": ("big.pdf", b"0123456789", "application/pdf")},
        )

        assert response.status_code == 400
        assert "File too large" in response.json()["error"]
        assert list(upload_store.upload_dir.iterdir()) == []

    async def test_oversized_body_is_rejected_before_spooling_to_disk(
        self, client, upload_store, monkeypatch
    ):
        rollovers = []
        original_rollover = tempfile.SpooledTemporaryFile.rollover

        def recording_rollover(self):
            rollovers.append(self)
            return original_rollover(self)

        monkeypatch.setattr(tempfile.SpooledTemporaryFile, "rollover", recording_rollover)

        response = await client.post(
            "/upload",
            files={"file": ("huge.pdf", b"\0" * (60 * 1024 * 1024), "application/pdf")},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "File too large. Maximum size: 50MB"}
        assert rollovers == []
        assert list(upload_store.upload_dir.iterdir()) == []

    async def test_chunked_body_over_limit_is_400(self, client, upload_store):
        upload_store.max_bytes = 1024
        boundary = "gateway-test-boundary"
        body = (
            (
                f"--{boundary}\r\n"
                'Content-Disposition: form-data; name="file"; filename="big.pdf"\r\n'
                "Content-Type: application/pdf\r\n\r\n"
            ).encode()
            + b"x" * (200 * 1024)
            + f"\r\n--{boundary}--\r\n".encode()
        )

        async def chunks():
            for start in range(0, len(body), 4096):
                yield body[start : start + 4096]

        response = await client.post(
            "/upload",
            content=chunks(),
            headers={"Content-Type": f"multipart/form-data; boundary={boundary}"},
        )

        assert response.status_code == 400
        assert "File too large" in response.json()["error"]
        assert list(upload_store.upload_dir.iterdir()) == []
        assert len(upload_store) == 0

    async def test_missing_file_field_is_400(self, client):
        response = await client.post("/upload", data={"other": "value"})

        assert response.status_code == 400
        assert response.json() == {"error": "No file provided"}

    async def test_unexpected_failure_is_500(self, sessions, gateway, config, tmp_path):
        # Staging directory never created, so writing the file fails
        store = UploadStore(upload_dir=tmp_path / "missing")
        app = create_app(sessions, store, gateway, config)

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://testserver"
        ) as c:
            response = await c.post(
                "/upload", files={"file": ("a.pdf", b"%PDF", "application/pdf")}
            )

        assert response.status_code == 500
        assert "error" in response.json()
        assert len(store) == 0


# ---------------------------------------------------------------------------
# Health and readiness
# ---------------------------------------------------------------------------


class TestProbes:
    async def test_health_reports_upload_stats(self, client, upload_store):
        await upload_store.accept(b"x" * 100, "a.png", "image/png")

        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["uploads"]["activeFiles"] == 1
        assert body["uploads"]["totalSize"] == 100

    async def test_ready_when_upload_dir_exists(self, client):
        response = await client.get("/ready")

        assert response.status_code == 200

    async def test_not_ready_without_upload_dir(self, sessions, gateway, config, tmp_path):
        app = create_app(sessions, UploadStore(upload_dir=tmp_path / "nope"), gateway, config)

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://testserver"
        ) as c:
            response = await c.get("/ready")

        assert response.status_code == 503


# ---------------------------------------------------------------------------
# MCP tool calls over Streamable HTTP
# ---------------------------------------------------------------------------


@pytest.fixture
async def mcp_client(app, make_auth_header):
    """
    Factory for MCP sessions against the ASGI app.

    Starts the ASGI lifespan (required to initialize the StreamableHTTP
    session manager's task group), then returns a function that performs the
    initialize handshake and returns a call_tool helper bound to the session.
    """
    startup_complete = asyncio.Event()
    shutdown_triggered = asyncio.Event()

    async def receive():
        if not startup_complete.is_set():
            startup_complete.set()
            return {"type": "lifespan.startup"}
        await shutdown_triggered.wait()
        return {"type": "lifespan.shutdown"}

    async def send(message):
        pass

    scope = {"type": "lifespan", "asgi": {"version": "3.0"}}
    lifespan_task = asyncio.create_task(app(scope, receive, send))

    await startup_complete.wait()
    await asyncio.sleep(0.1)

    clients = []

    async def _create(token: str | None = None):
        headers = dict(MCP_HEADERS)
        if token is not None:
            headers["Authorization"] = make_auth_header(token)

        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app))
        clients.append(client)

        response = await client.post(
            "http://testserver/mcp",
            headers=headers,
            json=_rpc(
                "initialize",
                {
                    "protocolVersion": "2025-03-26",
                    "capabilities": {},
                    "clientInfo": {"name": "test-client", "version": "1.0"},
                },
            ),
        )
        headers["Mcp-Session-Id"] = response.headers.get("mcp-session-id")

        async def call_tool(name: str, arguments: dict | None = None) -> dict:
            response = await client.post(
                "http://testserver/mcp",
                headers=headers,
                json=_rpc("tools/call", {"name": name, "arguments": arguments or {}}, 3),
            )
            return _parse_sse_response(response.text)

        return call_tool

    yield _create

    for client in clients:
        await client.aclose()

    shutdown_triggered.set()
    await lifespan_task


def _tool_payload(data: dict) -> dict:
    result = data["result"]
    assert result.get("isError") is not True, result
    return json.loads(result["content"][0]["text"])


class TestResourceTools:
    async def test_list_resources_pages_through_catalog(
        self, mcp_client, make_session, upstream, make_catalog
    ):
        make_session(token="alice-token")
        upstream.records = make_catalog(150)
        call_tool = await mcp_client("alice-token")

        first = _tool_payload(await call_tool("list_resources"))
        assert len(first["resources"]) == 100
        assert cursor.decode(first["nextCursor"]) == (100, "")

        second = _tool_payload(await call_tool("list_resources", {"cursor": first["nextCursor"]}))
        assert len(second["resources"]) == 50
        assert "nextCursor" not in second

    async def test_upstream_receives_session_sid(self, mcp_client, make_session, upstream):
        make_session(token="alice-token", sid="alice-sid")
        call_tool = await mcp_client("alice-token")

        await call_tool("list_resources")

        assert upstream.requests[-1].headers["sid"] == "alice-sid"

    async def test_read_resource_returns_detail(
        self, mcp_client, make_session, upstream, make_catalog
    ):
        make_session(token="alice-token")
        upstream.records = make_catalog(5)
        call_tool = await mcp_client("alice-token")
        uri = f"ib://{TEST_CLIENT_ID}/resource/res-0002"

        payload = _tool_payload(await call_tool("read_resource", {"uri": uri}))

        [content] = payload["contents"]
        assert content["uri"] == uri
        assert json.loads(content["text"])["id"] == "res-0002"

    async def test_invalid_uri_is_tool_error(self, mcp_client, make_session):
        make_session(token="alice-token")
        call_tool = await mcp_client("alice-token")

        data = await call_tool("read_resource", {"uri": "not-a-uri"})

        assert data["result"]["isError"] is True
        assert "Invalid resource URI" in data["result"]["content"][0]["text"]


class TestUploadTools:
    async def test_upload_file_needs_no_session(self, mcp_client, upload_store):
        call_tool = await mcp_client()
        content = base64.b64encode(b"%PDF-1.7 hello").decode()

        payload = _tool_payload(
            await call_tool("upload_file", {"content": content, "filename": "hello.pdf"})
        )

        assert payload["success"] is True
        assert payload["size"] == 14
        record = await upload_store.get(payload["fileId"])
        assert record.mime_type == "application/pdf"


# ---------------------------------------------------------------------------
# MCP layer without HTTP (in-memory transport)
# ---------------------------------------------------------------------------


class TestInMemory:
    """Without an HTTP request there is no bearer token, so protected tools fail."""

    async def test_protected_tool_without_http_request_is_rejected(
        self, sessions, upload_store, gateway, config, make_session
    ):
        make_session()
        mcp = create_server(sessions, upload_store, gateway, config)

        async with Client(mcp) as c:
            with pytest.raises(ToolError, match="Authentication required"):
                await c.call_tool("list_resources", {})

    async def test_upload_stats_tool(self, sessions, upload_store, gateway, config):
        await upload_store.accept(b"x" * 10, "a.png", "image/png")
        mcp = create_server(sessions, upload_store, gateway, config)

        async with Client(mcp) as c:
            result = await c.call_tool("get_upload_stats", {})

        assert json.loads(result.content[0].text)["activeFiles"] == 1

    async def test_upload_file_rejects_bad_base64(self, sessions, upload_store, gateway, config):
        mcp = create_server(sessions, upload_store, gateway, config)

        async with Client(mcp) as c:
            with pytest.raises(ToolError, match="base64"):
                await c.call_tool("upload_file", {"content": "***", "filename": "a.pdf"})
