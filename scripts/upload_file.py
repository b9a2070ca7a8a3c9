"""
CLI utility to stage a local file on a running gateway.

Posts the file to the gateway's /upload endpoint as a single multipart field
and prints the returned fileId, which stays valid for the upload TTL
(5 minutes by default) or until the file is consumed.

Usage examples:

    # Upload a PDF to a local server
    python -m scripts.upload_file report.pdf

    # Upload to a remote server, overriding the detected MIME type
    python -m scripts.upload_file logo.png --url https://mcp.example.com --mime-type image/png
"""

import argparse
import datetime
import mimetypes
import sys
from pathlib import Path

import httpx


def upload_file(
    path: Path,
    base_url: str = "http://localhost:3000",
    mime_type: str | None = None,
    client: httpx.Client | None = None,
) -> dict:
    """
    Upload a file and return the server's JSON response.

    Args:
        path: Local file to upload
        base_url: Gateway base URL (the /upload path is appended)
        mime_type: MIME type to declare (guessed from the filename if omitted)
        client: Optional httpx.Client to reuse

    Raises:
        httpx.HTTPStatusError: If the server rejects the upload
    """
    mime_type = mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    url = base_url.rstrip("/") + "/upload"

    owns_client = client is None
    client = client or httpx.Client(timeout=60.0)
    try:
        with path.open("rb") as fh:
            response = client.post(url, files={"file": (path.name, fh, mime_type)})
        response.raise_for_status()
        return response.json()
    finally:
        if owns_client:
            client.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Upload a file to the IntelligenceBank MCP gateway's temporary storage.",
    )
    parser.add_argument("path", type=Path, help="File to upload")
    parser.add_argument(
        "--url",
        default="http://localhost:3000",
        help="Gateway base URL (default: http://localhost:3000)",
    )
    parser.add_argument(
        "--mime-type",
        default=None,
        help="MIME type to declare (default: guessed from the file extension)",
    )

    args = parser.parse_args()

    if not args.path.is_file():
        parser.error(f"not a file: {args.path}")

    try:
        result = upload_file(args.path, base_url=args.url, mime_type=args.mime_type)
    except httpx.HTTPStatusError as e:
        try:
            detail = e.response.json().get("error", e.response.text)
        except ValueError:
            detail = e.response.text
        print(f"Upload failed ({e.response.status_code}): {detail}", file=sys.stderr)
        sys.exit(1)

    expires = datetime.datetime.fromtimestamp(
        result["expiresAt"] / 1000, tz=datetime.timezone.utc
    )

    print(f"File ID:    {result['fileId']}")
    print(f"Filename:   {result['filename']}")
    print(f"Size:       {result['size']} bytes")
    print(f"Expires:    {expires.isoformat()}")


if __name__ == "__main__":
    main()
