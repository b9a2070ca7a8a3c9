"""
IntelligenceBank MCP gateway built on FastMCP v2.

This module wires the gateway core into an MCP server with:
- Resource tools: list_resources and read_resource, proxied to the
  IntelligenceBank API with the caller's session credentials
- Upload tools: upload_file and get_upload_stats, backed by the UploadStore
- Bearer-token session authentication, enforced twice:
    * at the HTTP layer, where requests for protected operations without a
      usable session get a 401 with a WWW-Authenticate challenge
    * at the MCP layer, where SessionAuthMiddleware resolves the session and
      hands it to the tool
- HTTP endpoints: POST /upload (multipart), GET /health, GET /ready
- Structured JSON logging for auth decisions, upstream calls and uploads

Architecture:
    Every tools/call for a protected tool goes through:

    1. AuthChallengeMiddleware (ASGI) reads the JSON-RPC body, and if the
       method needs a session and none matches the bearer token, answers
       401 without touching the MCP layer
    2. FastMCP dispatches the call; SessionAuthMiddleware.on_call_tool looks
       the session up again, stores it in a ContextVar and calls the tool
    3. The tool reads the session via current_session() and calls the
       ResourceGateway with its IntelligenceBank credentials

    The stores (sessions, uploads) and the gateway are created by the caller
    and passed in, so each server instance owns its own state.

Running the server:
    python -m ib_gateway.server

    This starts the server on http://0.0.0.0:3000 with:
    - MCP endpoint at /mcp (Streamable HTTP)
    - Upload endpoint at /upload
    - Health check at /health
    - Readiness check at /ready
"""

import asyncio
import base64
import binascii
import json
import logging
import mimetypes
import sys
import uuid
from contextvars import ContextVar

import anyio
import httpx
import uvicorn
from fastmcp import FastMCP
from fastmcp.server.dependencies import get_http_request
from fastmcp.server.middleware import CallNext, Middleware, MiddlewareContext
from fastmcp.tools.tool import ToolResult
from mcp.types import CallToolRequestParams
from starlette.datastructures import Headers, UploadFile
from starlette.middleware import Middleware as ASGIMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ib_gateway.auth import build_www_authenticate, find_session, require_session
from ib_gateway.config import Settings, settings
from ib_gateway.errors import AuthenticationRequired, UploadRejected
from ib_gateway.resources import ResourceGateway
from ib_gateway.sessions import AuthSession, SessionStore
from ib_gateway.tools import SESSION_TOOLS, requires_session
from ib_gateway.upstream import IntelligenceBankClient
from ib_gateway.uploads import UploadStore

# ---------------------------------------------------------------------------
# Structured JSON Logging
# ---------------------------------------------------------------------------


class JSONLogFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Example output:

        {"timestamp": "2026-02-06 10:30:00,123", "level": "INFO",
         "logger": "ib-gateway.uploads", "message": "File uploaded",
         "file_id": "3f2a...", "size": 10485760}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Structured fields passed via logger.info("msg", extra={"event_data": {...}})
        if hasattr(record, "event_data"):
            log_entry.update(record.event_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def configure_logging(level: str = settings.log_level) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONLogFormatter())
    logging.basicConfig(level=getattr(logging, level.upper()), handlers=[handler], force=True)


logger = logging.getLogger("ib-gateway")


def _preview(secret: str | None) -> str | None:
    """First characters of a token or sid, safe to log."""
    if not secret:
        return None
    return secret[:8] + "..."


# ---------------------------------------------------------------------------
# Session resolution for tools
# ---------------------------------------------------------------------------

_current_session: ContextVar[AuthSession | None] = ContextVar("current_session", default=None)


def current_session() -> AuthSession:
    """
    Return the session authenticated for the tool call in progress.

    Raises:
        AuthenticationRequired: If the call was not authenticated (for example
                                a protected tool missing from SESSION_TOOLS)
    """
    session = _current_session.get()
    if session is None:
        raise AuthenticationRequired(
            "Authentication required",
            www_authenticate=build_www_authenticate(settings.server_url),
        )
    return session


class SessionAuthMiddleware(Middleware):
    """
    Resolves the caller's session for tools that proxy the upstream API.

    Tools listed in SESSION_TOOLS only run when the request's bearer token
    matches a completed session with a live sid. Other tools (uploads) run
    without a session.
    """

    def __init__(self, sessions: SessionStore, realm: str):
        self.sessions = sessions
        self.realm = realm

    def _get_auth_header(self) -> str | None:
        """
        Extract the Authorization header from the current HTTP request.

        Returns None if no HTTP request is available (e.g., stdio transport).
        """
        try:
            request = get_http_request()
            return request.headers.get("authorization")
        except RuntimeError:
            return None

    def _authenticate(self, request_id: str, tool_name: str) -> AuthSession:
        auth_header = self._get_auth_header()
        try:
            session = require_session(self.sessions.values(), auth_header, self.realm)
        except AuthenticationRequired:
            logger.warning(
                "Authentication failed",
                extra={
                    "event_data": {
                        "request_id": request_id,
                        "tool": tool_name,
                        "has_auth_header": auth_header is not None,
                        "decision": "rejected",
                    }
                },
            )
            raise

        logger.info(
            "Authentication successful",
            extra={
                "event_data": {
                    "request_id": request_id,
                    "tool": tool_name,
                    "session_id": session.session_id,
                    "client_id": session.ib_session.client_id,
                    "sid": _preview(session.ib_session.sid),
                    "decision": "authenticated",
                }
            },
        )
        return session

    async def on_call_tool(
        self,
        context: MiddlewareContext[CallToolRequestParams],
        call_next: CallNext[CallToolRequestParams, ToolResult],
    ) -> ToolResult:
        tool_name = context.message.name
        if tool_name not in SESSION_TOOLS:
            return await call_next(context)

        request_id = str(uuid.uuid4())[:8]
        session = self._authenticate(request_id, tool_name)

        token = _current_session.set(session)
        try:
            return await call_next(context)
        finally:
            _current_session.reset(token)


# ---------------------------------------------------------------------------
# HTTP 401 challenge
# ---------------------------------------------------------------------------


class AuthChallengeMiddleware:
    """
    ASGI middleware that answers 401 for unauthenticated protected MCP calls.

    MCP errors travel inside a 200 JSON-RPC response, which clients cannot
    use to start an OAuth flow. This middleware inspects POSTs to the MCP
    endpoint, and when the JSON-RPC method needs a session (see
    ib_gateway.tools) but the bearer token matches none, replies with an HTTP
    401 carrying the WWW-Authenticate challenge. Everything else passes
    through with its body replayed unchanged.
    """

    def __init__(self, app: ASGIApp, sessions: SessionStore, realm: str, mcp_path: str = "/mcp"):
        self.app = app
        self.sessions = sessions
        self.realm = realm
        self.mcp_path = mcp_path.rstrip("/")

    def _is_mcp_post(self, scope: Scope) -> bool:
        return (
            scope["type"] == "http"
            and scope["method"] == "POST"
            and scope["path"].rstrip("/") == self.mcp_path
        )

    @staticmethod
    def _protected_call(body: bytes) -> bool:
        try:
            payload = json.loads(body)
        except ValueError:
            return False

        messages = payload if isinstance(payload, list) else [payload]
        for message in messages:
            if not isinstance(message, dict):
                continue
            params = message.get("params")
            tool_name = params.get("name") if isinstance(params, dict) else None
            if requires_session(message.get("method"), tool_name):
                return True
        return False

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if not self._is_mcp_post(scope):
            await self.app(scope, receive, send)
            return

        buffered: list[Message] = []
        body = b""
        while True:
            message = await receive()
            buffered.append(message)
            if message["type"] != "http.request":
                break
            body += message.get("body", b"")
            if not message.get("more_body", False):
                break

        if self._protected_call(body):
            auth_header = Headers(scope=scope).get("authorization")
            if find_session(self.sessions.values(), auth_header) is None:
                logger.warning(
                    "Rejected unauthenticated MCP request",
                    extra={
                        "event_data": {
                            "path": scope["path"],
                            "has_auth_header": auth_header is not None,
                            "decision": "challenged",
                        }
                    },
                )
                response = JSONResponse(
                    {
                        "error": "invalid_token",
                        "error_description": "Authentication required to access IntelligenceBank resources",
                    },
                    status_code=401,
                    headers={"WWW-Authenticate": build_www_authenticate(self.realm)},
                )
                await response(scope, receive, send)
                return

        async def replay() -> Message:
            if buffered:
                return buffered.pop(0)
            return await receive()

        await self.app(scope, replay, send)


# ---------------------------------------------------------------------------
# Upload body limit
# ---------------------------------------------------------------------------

# Room for multipart boundaries and part headers on top of the file itself
MULTIPART_OVERHEAD_BYTES = 64 * 1024


def _limit_body(receive: Receive, limit: int, uploads: UploadStore) -> Receive:
    """
    Wrap an ASGI receive callable so the request body cannot exceed `limit`.

    Covers bodies without a Content-Length (chunked transfer encoding);
    raises UploadRejected as soon as the running total passes the limit.
    """
    received = 0

    async def limited_receive() -> Message:
        nonlocal received
        message = await receive()
        if message["type"] == "http.request":
            received += len(message.get("body", b""))
            if received > limit:
                raise uploads.reject(uploads.too_large_message, received=received)
        return message

    return limited_receive


# ---------------------------------------------------------------------------
# Server factory
# ---------------------------------------------------------------------------


def create_server(
    sessions: SessionStore,
    uploads: UploadStore,
    gateway: ResourceGateway,
    config: Settings = settings,
) -> FastMCP:
    """Build the FastMCP server around the given stores and gateway."""
    mcp = FastMCP(
        name="intelligencebank-mcp",
        instructions=(
            "Gateway to an IntelligenceBank content library. Use list_resources to "
            "browse assets page by page and read_resource to fetch one asset's "
            "details. Remote clients upload files with upload_file first and "
            "refer to them by the returned fileId."
        ),
        middleware=[SessionAuthMiddleware(sessions, realm=config.server_url)],
    )

    # -----------------------------------------------------------------------
    # Resource tools (session required, see ib_gateway.tools.SESSION_TOOLS)
    # -----------------------------------------------------------------------

    @mcp.tool(
        description=(
            "List IntelligenceBank resources, newest first, 100 per page. "
            "Pass the nextCursor of the previous page to continue."
        )
    )
    async def list_resources(cursor: str | None = None) -> dict:
        session = current_session()
        return await gateway.list_resources(session.ib_session, cursor)

    @mcp.tool(
        description="Read the details of one resource by its ib://{clientId}/resource/{resourceId} URI."
    )
    async def read_resource(uri: str) -> dict:
        session = current_session()
        return await gateway.read_resource(session.ib_session, uri)

    # -----------------------------------------------------------------------
    # Upload tools
    # -----------------------------------------------------------------------

    @mcp.tool(
        description=(
            "Upload a file to the server's temporary storage. Pass the file content "
            "base64 encoded together with its original filename. Returns a fileId "
            "that stays valid for 5 minutes or until the file is used."
        )
    )
    async def upload_file(content: str, filename: str, mime_type: str | None = None) -> dict:
        try:
            data = base64.b64decode(content, validate=True)
        except binascii.Error:
            raise UploadRejected("File content must be base64 encoded") from None

        mime_type = mime_type or mimetypes.guess_type(filename)[0]
        record = await uploads.accept(data, filename, mime_type)
        return {
            "success": True,
            **record.to_response(),
            "message": f"File uploaded successfully. Use fileId {record.id} before it expires.",
        }

    @mcp.tool(description="Report how many uploaded files are staged and their total size.")
    def get_upload_stats() -> dict:
        return uploads.stats()

    # -----------------------------------------------------------------------
    # HTTP endpoints
    # -----------------------------------------------------------------------

    @mcp.custom_route("/upload", methods=["POST"])
    async def upload(request: Request) -> Response:
        """
        Accept a single multipart field named "file" into temporary storage.

        Oversized bodies are refused before multipart parsing, which would
        otherwise spool the file to a temporary file on disk.
        """
        body_limit = uploads.max_bytes + MULTIPART_OVERHEAD_BYTES
        content_length = request.headers.get("content-length", "")
        if content_length.isdigit() and int(content_length) > body_limit:
            error = uploads.reject(uploads.too_large_message, content_length=int(content_length))
            return JSONResponse({"error": error.message}, status_code=error.status_code)

        limited = Request(request.scope, _limit_body(request.receive, body_limit, uploads))
        try:
            form = await limited.form()
        except UploadRejected as e:
            return JSONResponse({"error": e.message}, status_code=e.status_code)

        try:
            uploaded = form.get("file")
            if not isinstance(uploaded, UploadFile):
                return JSONResponse({"error": "No file provided"}, status_code=400)

            record = await uploads.accept(
                uploaded,
                filename=uploaded.filename or "upload",
                mime_type=uploaded.content_type,
                declared_size=uploaded.size,
            )
        except UploadRejected as e:
            return JSONResponse({"error": e.message}, status_code=e.status_code)
        except Exception as e:
            logger.exception("Upload failed")
            return JSONResponse({"error": str(e) or "Upload failed"}, status_code=500)
        finally:
            await form.close()

        return JSONResponse(record.to_response())

    @mcp.custom_route("/health", methods=["GET"])
    async def health_check(request: Request) -> Response:
        """Liveness probe, with staging statistics."""
        return JSONResponse({"status": "healthy", "uploads": uploads.stats()})

    @mcp.custom_route("/ready", methods=["GET"])
    async def readiness_check(request: Request) -> Response:
        """Readiness probe: uploads need the staging directory."""
        if not await anyio.Path(uploads.upload_dir).is_dir():
            return JSONResponse(
                {"status": "not_ready", "reason": "upload directory missing"},
                status_code=503,
            )
        return JSONResponse({"status": "ready"})

    return mcp


def create_app(
    sessions: SessionStore,
    uploads: UploadStore,
    gateway: ResourceGateway,
    config: Settings = settings,
):
    """Build the Streamable HTTP ASGI app, with the 401 challenge in front of /mcp."""
    mcp = create_server(sessions, uploads, gateway, config)
    return mcp.http_app(
        transport="streamable-http",
        middleware=[
            ASGIMiddleware(AuthChallengeMiddleware, sessions=sessions, realm=config.server_url)
        ],
    )


def build_upload_store(config: Settings = settings) -> UploadStore:
    return UploadStore(
        upload_dir=config.upload_dir,
        max_bytes=config.upload_max_bytes,
        ttl_seconds=config.upload_ttl_seconds,
        allowed_mime_types=config.allowed_upload_mime_types,
    )


async def serve(sessions: SessionStore | None = None, config: Settings = settings) -> None:
    """
    Run the gateway until uvicorn exits.

    The session manager that populates `sessions` lives outside this package;
    pass its store in to share it.
    """
    sessions = sessions if sessions is not None else SessionStore()
    uploads = build_upload_store(config)
    await uploads.initialize()

    async with httpx.AsyncClient(timeout=config.upstream_timeout) as http:
        gateway = ResourceGateway(
            IntelligenceBankClient(http, product_key=config.product_key),
            read_scan_limit=config.read_scan_limit,
            download_url_template=config.download_url_template,
        )
        app = create_app(sessions, uploads, gateway, config)
        server = uvicorn.Server(
            uvicorn.Config(app, host=config.host, port=config.port, log_level=config.log_level)
        )
        try:
            await server.serve()
        finally:
            await uploads.cleanup_all()


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    configure_logging()
    logger.info(
        "Starting MCP gateway on %s:%d (transport=streamable-http)",
        settings.host,
        settings.port,
    )
    asyncio.run(serve())
