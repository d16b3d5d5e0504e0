"""Shared API token.

Every API call must present one pre-shared bearer token. The token is
either supplied by the operator (``KUBECSR_API_TOKEN`` or ``--custom-token``)
or generated at startup, in which case it is written to the server log so
the operator can hand it out.
"""

import base64
import hmac
import uuid

from kubecsr.logging_config import get_logger

logger = get_logger(__name__)

# Module-level token, set in lifespan
_api_token: str | None = None


def generate_api_token() -> str:
    """Generate a token: base64 of a random UUID4."""
    return base64.b64encode(str(uuid.uuid4()).encode()).decode()


def init_api_token(custom_token: str | None = None) -> str:
    """Set the API token, generating one when no custom token is configured."""
    global _api_token  # noqa: PLW0603

    if custom_token:
        _api_token = custom_token
        logger.info("Using configured API token")
    else:
        _api_token = generate_api_token()
        logger.warning("Generated API bearer token", token=_api_token)
    return _api_token


def verify_api_token(token: str) -> bool:
    """Constant-time comparison against the configured token."""
    if _api_token is None:
        raise RuntimeError("API token not initialized; call init_api_token() first")
    return hmac.compare_digest(token.encode(), _api_token.encode())
