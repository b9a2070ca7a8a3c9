"""Resource URIs of the form ib://{clientId}/resource/{resourceId}."""

import re
from dataclasses import dataclass

from ib_gateway.errors import InvalidURI

SCHEME = "ib"
RESOURCE_TYPE = "resource"

_URI_PATTERN = re.compile(r"ib://([^/\s]+)/resource/([^/\s]+)")


@dataclass(frozen=True)
class ResourceURI:
    client_id: str
    resource_id: str
    type: str = RESOURCE_TYPE

    def __str__(self) -> str:
        return f"{SCHEME}://{self.client_id}/{self.type}/{self.resource_id}"


def _valid_segment(value: str) -> bool:
    if not value or not value.isascii() or "/" in value:
        return False
    return not any(c.isspace() for c in value)


def build_resource_uri(client_id: str, resource_id: str) -> str:
    """
    Serialize a resource URI.

    Raises:
        InvalidURI: If either segment is empty, non-ASCII, or contains a slash or whitespace
    """
    if not _valid_segment(client_id) or not _valid_segment(resource_id):
        raise InvalidURI(
            f"Cannot build resource URI from client_id={client_id!r}, resource_id={resource_id!r}"
        )
    return str(ResourceURI(client_id=client_id, resource_id=resource_id))


def parse_resource_uri(uri: str) -> ResourceURI:
    """
    Parse ib://{clientId}/resource/{resourceId}.

    Raises:
        InvalidURI: If the URI does not have exactly that shape
    """
    match = _URI_PATTERN.fullmatch(uri) if uri.isascii() else None
    if match is None:
        raise InvalidURI(
            f"Invalid resource URI format: {uri}. Expected: ib://{{clientId}}/resource/{{resourceId}}"
        )
    return ResourceURI(client_id=match.group(1), resource_id=match.group(2))
