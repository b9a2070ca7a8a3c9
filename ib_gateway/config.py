"""
Application configuration loaded from environment variables.

Uses pydantic-settings to define typed configuration that automatically reads
from environment variables. All values can be overridden with MCP_-prefixed
variables or a local .env file, for example:

- MCP_SERVER_URL=https://mcp.example.com (used as the 401 challenge realm)
- MCP_UPLOAD_DIR=/var/tmp/ib-mcp-uploads
- MCP_READ_SCAN_LIMIT=2000
"""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Gateway configuration with environment variable bindings.

    Each field maps to an environment variable with the MCP_ prefix.
    For example, `port` reads from MCP_PORT, `upload_ttl_seconds` reads
    from MCP_UPLOAD_TTL_SECONDS.
    """

    # --- Server settings ---

    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "info"

    # Public base URL of this server. Sent as the realm of the
    # WWW-Authenticate challenge on 401 responses.
    server_url: str = "http://localhost:3000"

    # --- Upstream (IntelligenceBank) settings ---

    # Seconds before an upstream request is abandoned.
    upstream_timeout: float = 30.0

    # Product identifier sent with every listing request.
    product_key: str = "0D1DBC845CB94841B71E7E1E64D347A2"

    # There is no single-record lookup upstream, so reading a resource scans
    # the newest N records. Resources beyond this window cannot be read.
    read_scan_limit: int = 1000

    download_url_template: str = "https://{client_id}.intelligencebank.com/download/{resource_id}"

    # --- Upload staging settings ---

    upload_dir: Path = Path("/tmp/ib-mcp-uploads")

    # 50 MiB
    upload_max_bytes: int = 50 * 1024 * 1024

    # Staged files are deleted this many seconds after upload.
    upload_ttl_seconds: float = 5 * 60

    allowed_upload_mime_types: list[str] = [
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "image/png",
        "image/jpeg",
        "image/jpg",
    ]

    model_config = {
        "env_prefix": "MCP_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


# Singleton instance: import this from other modules.
settings = Settings()
