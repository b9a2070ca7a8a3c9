"""
Resource listing and reading against the IntelligenceBank API.

Listing walks the upstream catalog in pages of 100, newest first, carrying the
position and search keywords in an opaque cursor. Reading has no direct
upstream lookup, so it scans a bounded window of the newest records for the
requested id.

Neither operation caches anything: every call goes to the upstream API with
the caller's own session credentials.
"""

import json
import logging
from datetime import datetime

from ib_gateway import cursor as cursor_codec
from ib_gateway.errors import GatewayError, NotFound, UpstreamFailure
from ib_gateway.sessions import IBSession
from ib_gateway.upstream import IntelligenceBankClient, ResourceRecord
from ib_gateway.uris import build_resource_uri, parse_resource_uri

logger = logging.getLogger("ib-gateway.resources")

PAGE_SIZE = 100
DEFAULT_READ_SCAN_LIMIT = 1000
DEFAULT_MIME_TYPE = "application/octet-stream"
DEFAULT_DOWNLOAD_URL_TEMPLATE = "https://{client_id}.intelligencebank.com/download/{resource_id}"

MIME_TYPES: dict[str, str] = {
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "ppt": "application/vnd.ms-powerpoint",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "svg": "image/svg+xml",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "zip": "application/zip",
    "txt": "text/plain",
}


def mime_type_for(file_type: str) -> str:
    """Map a file extension (without the dot) to a MIME type."""
    return MIME_TYPES.get(file_type.lower().lstrip("."), DEFAULT_MIME_TYPE)


def _format_date(value: datetime) -> str:
    return value.date().isoformat()


def _timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class ResourceGateway:
    """
    Proxies resource listing and reading to the upstream API.

    Callers are expected to have authorized the request already and pass the
    session's IntelligenceBank credentials in.
    """

    def __init__(
        self,
        client: IntelligenceBankClient,
        read_scan_limit: int = DEFAULT_READ_SCAN_LIMIT,
        download_url_template: str = DEFAULT_DOWNLOAD_URL_TEMPLATE,
    ):
        self._client = client
        self.read_scan_limit = read_scan_limit
        self._download_url_template = download_url_template

    def _to_resource(self, client_id: str, record: ResourceRecord) -> dict:
        return {
            "uri": build_resource_uri(client_id, record.id),
            "name": record.name,
            "description": (
                f"{record.fancy_file_type} - {record.fancy_file_size} - "
                f"Updated: {_format_date(record.last_update_time)}"
            ),
            "mimeType": mime_type_for(record.file.type),
            "annotations": {
                "audience": ["user", "assistant"],
                "priority": 0.5,
                "lastModified": _timestamp(record.last_update_time),
            },
        }

    def _to_detail(self, client_id: str, record: ResourceRecord) -> dict:
        metadata = {
            "created": _timestamp(record.create_time),
            "updated": _timestamp(record.last_update_time),
            "creator": record.creator_name,
            "hash": record.file.hash,
        }
        if record.image_width and record.image_height:
            metadata["dimensions"] = f"{record.image_width}x{record.image_height}"

        return {
            "type": "resource",
            "id": record.id,
            "name": record.name,
            "fileType": record.file.type,
            "fileSize": record.fancy_file_size,
            "fileSizeBytes": record.file.size,
            "thumbnail": record.thumbnail,
            "tags": record.tags,
            "folderPath": [{"_id": f.id, "name": f.name} for f in record.folder_path],
            "downloadUrl": self._download_url_template.format(
                client_id=client_id, resource_id=record.id
            ),
            "metadata": metadata,
            "allowedActions": record.allowed_actions,
        }

    async def list_resources(self, credentials: IBSession, cursor: str | None = None) -> dict:
        """
        Return one page of resources.

        Args:
            credentials: IntelligenceBank credentials of the authorized session
            cursor: Continuation token from a previous page, or None to start

        Returns:
            {"resources": [...], "nextCursor": "..."}; nextCursor is omitted
            on the last page

        Raises:
            UpstreamFailure: If the upstream API call fails
        """
        offset, keywords = cursor_codec.decode(cursor)

        try:
            page = await self._client.fetch_resources(
                credentials, keywords=keywords, limit=PAGE_SIZE, offset=offset
            )
        except UpstreamFailure as e:
            raise UpstreamFailure(
                f"Failed to list resources: {e.message}", upstream_status=e.upstream_status
            ) from e

        rows = page.response.rows[:PAGE_SIZE]
        resources = [self._to_resource(credentials.client_id, record) for record in rows]
        has_more = offset + len(rows) < page.response.count

        logger.info(
            "Resources listed",
            extra={
                "event_data": {
                    "client_id": credentials.client_id,
                    "offset": offset,
                    "returned": len(resources),
                    "total": page.response.count,
                    "has_more": has_more,
                }
            },
        )

        result: dict = {"resources": resources}
        if has_more:
            result["nextCursor"] = cursor_codec.encode(offset + PAGE_SIZE, keywords)
        return result

    async def read_resource(self, credentials: IBSession, uri: str) -> dict:
        """
        Return the detail record of one resource as a JSON text content entry.

        Only the newest `read_scan_limit` records are searched; older
        resources are reported as not found.

        Raises:
            InvalidURI: If the URI is not ib://{clientId}/resource/{resourceId}
            NotFound: If the resource is not in the scanned window
            UpstreamFailure: If the upstream API call fails
        """
        parsed = parse_resource_uri(uri)

        try:
            page = await self._client.fetch_resources(
                credentials, limit=self.read_scan_limit, offset=0
            )
        except GatewayError as e:
            raise UpstreamFailure(
                f"Failed to read resource: {e.message}",
                upstream_status=getattr(e, "upstream_status", None),
            ) from e

        record = next((r for r in page.response.rows if r.id == parsed.resource_id), None)
        if record is None:
            logger.info(
                "Resource not found in scan window",
                extra={
                    "event_data": {
                        "resource_id": parsed.resource_id,
                        "scanned": len(page.response.rows),
                        "total": page.response.count,
                    }
                },
            )
            raise NotFound(f"Resource not found: {uri}")

        content = self._to_detail(credentials.client_id, record)
        return {
            "contents": [
                {
                    "uri": str(parsed),
                    "mimeType": "application/json",
                    "text": json.dumps(content, indent=2),
                }
            ]
        }
