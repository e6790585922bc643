"""API Key authentication for the ingestion API."""

import secrets
from dataclasses import dataclass

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from plate_pipeline.config import get_settings
from plate_pipeline.observability import get_logger

logger = get_logger("auth")

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


@dataclass
class AuthInfo:
    """Authentication information returned after successful validation."""

    api_key: str
    client_name: str | None = None
    api_key_prefix: str | None = None  # First 8 chars for audit logging

    @classmethod
    def from_key(cls, api_key: str, client_name: str | None = None) -> "AuthInfo":
        """Create AuthInfo from API key, extracting prefix for logging."""
        prefix = api_key[:8] if len(api_key) >= 8 else api_key
        return cls(
            api_key=api_key,
            client_name=client_name,
            api_key_prefix=f"{prefix}_",
        )


def _matches(api_key: str, keys: list[str]) -> bool:
    return any(secrets.compare_digest(api_key, key) for key in keys)


async def require_api_key(api_key: str | None = Security(api_key_header)) -> AuthInfo:
    """Validate API key from header.

    Keys come from PLATE_PIPELINE_API_KEY / PLATE_PIPELINE_API_KEYS. With no
    key configured the API runs open (dev mode).
    Raises 401 if key is missing or invalid.
    """
    settings = get_settings()
    keys = settings.api_keys_list

    if not keys:
        logger.debug("auth_dev_mode", reason="no_keys_configured")
        return AuthInfo.from_key("no-auth", client_name="dev-mode")

    if not api_key:
        logger.warning("auth_missing_key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key. Include 'X-API-Key' header.",
        )

    if _matches(api_key, keys):
        logger.debug("auth_success", key_prefix=api_key[:8])
        return AuthInfo.from_key(api_key, client_name=f"key-{api_key[:4]}")

    logger.warning(
        "auth_invalid_key",
        key_prefix=api_key[:8] if len(api_key) >= 8 else api_key,
        key_length=len(api_key),
    )
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid API key.",
    )
