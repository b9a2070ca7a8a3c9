"""
IntelligenceBank API client.

Only the resource listing endpoint is used:

    GET {apiV3url}/api/3.0.0/{clientId}/resource.limit({offset},{limit}).order(lastUpdateTime:-1)

authorized by the session's `sid` header. Responses are validated into typed
pydantic models here, at the boundary, so the rest of the gateway never sees
raw JSON. Any non-success status, transport error, or malformed payload is
raised as UpstreamFailure; nothing is retried.
"""

import logging
from datetime import datetime

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ib_gateway.errors import UpstreamFailure
from ib_gateway.sessions import IBSession

logger = logging.getLogger("ib-gateway.upstream")

API_VERSION = "3.0.0"
RESOURCE_ID_PATTERN = r"^[!-.0-~]+$"


class _UpstreamModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class FileDescriptor(_UpstreamModel):
    type: str = ""
    name: str = ""
    size: int = 0
    hash: str = ""


class FolderRef(_UpstreamModel):
    id: str = Field(alias="_id")
    name: str


class ResourceRecord(_UpstreamModel):
    # Must fit in an ib:// URI segment: printable ASCII, no space or slash
    id: str = Field(alias="_id", pattern=RESOURCE_ID_PATTERN)
    name: str
    fancy_file_type: str = Field(default="", alias="fancyFileType")
    fancy_file_size: str = Field(default="", alias="fancyFileSize")
    last_update_time: datetime = Field(alias="lastUpdateTime")
    create_time: datetime | None = Field(default=None, alias="createTime")
    file: FileDescriptor = Field(default_factory=FileDescriptor)
    thumbnail: str | None = None
    tags: list[str] = Field(default_factory=list)
    folder: str | None = None
    folder_path: list[FolderRef] = Field(default_factory=list, alias="folderPath")
    creator_name: str | None = Field(default=None, alias="creatorName")
    image_width: int | None = Field(default=None, alias="imageWidth")
    image_height: int | None = Field(default=None, alias="imageHeight")
    allowed_actions: list[str] = Field(default_factory=list, alias="allowedActions")


class ResourceRows(_UpstreamModel):
    count: int
    rows: list[ResourceRecord] = Field(default_factory=list)
    offset: int | None = None


class ResourcePage(_UpstreamModel):
    response: ResourceRows


class IntelligenceBankClient:
    """
    Thin async wrapper around the upstream listing endpoint.

    The httpx.AsyncClient is injected so tests can swap in a MockTransport
    and the server can share one connection pool across requests.
    """

    def __init__(self, http: httpx.AsyncClient, product_key: str):
        self._http = http
        self._product_key = product_key

    def _listing_url(self, credentials: IBSession, offset: int, limit: int) -> str:
        base = credentials.api_v3_url.rstrip("/")
        return (
            f"{base}/api/{API_VERSION}/{credentials.client_id}"
            f"/resource.limit({offset},{limit}).order(lastUpdateTime:-1)"
        )

    async def fetch_resources(
        self,
        credentials: IBSession,
        keywords: str = "",
        limit: int = 100,
        offset: int = 0,
    ) -> ResourcePage:
        """
        Fetch one window of resources, newest first.

        Raises:
            UpstreamFailure: On transport errors, non-2xx responses, or a
                             payload that does not match ResourcePage
        """
        url = self._listing_url(credentials, offset, limit)
        params = {
            "searchParams[isSearching]": "true",
            "searchParams[keywords]": keywords,
            "productkey": self._product_key,
            "verbose": "true",
        }
        headers = {"sid": credentials.sid, "Content-Type": "application/json"}

        try:
            response = await self._http.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            logger.error(
                "Upstream request failed",
                extra={"event_data": {"client_id": credentials.client_id, "error": str(e)}},
            )
            raise UpstreamFailure(f"Failed to reach IntelligenceBank API: {e}") from e

        if not response.is_success:
            logger.warning(
                "Upstream returned an error status",
                extra={
                    "event_data": {
                        "client_id": credentials.client_id,
                        "status": response.status_code,
                        "offset": offset,
                        "limit": limit,
                    }
                },
            )
            raise UpstreamFailure(
                f"Failed to fetch resources list: {response.status_code} {response.reason_phrase}",
                upstream_status=response.status_code,
            )

        try:
            page = ResourcePage.model_validate_json(response.content)
        except ValidationError as e:
            logger.error(
                "Malformed upstream payload",
                extra={
                    "event_data": {
                        "client_id": credentials.client_id,
                        "errors": e.error_count(),
                    }
                },
            )
            raise UpstreamFailure(
                f"Malformed resources list payload: {e.error_count()} validation error(s)",
                upstream_status=response.status_code,
            ) from e

        logger.debug(
            "Upstream page received",
            extra={
                "event_data": {
                    "client_id": credentials.client_id,
                    "offset": offset,
                    "rows": len(page.response.rows),
                    "count": page.response.count,
                }
            },
        )
        return page
