"""FastAPI dependencies for authentication and service access.

Clients authenticate with the shared API token in the Authorization header
(``Authorization: Bearer <token>``).
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from kubecsr.auth.tokens import verify_api_token
from kubecsr.logging_config import get_logger
from kubecsr.services.issuance import IssuanceOrchestrator, get_orchestrator

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)


async def require_api_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> None:
    """Dependency rejecting requests without the shared API token."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API token required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not verify_api_token(credentials.credentials):
        logger.warning("Rejected request with invalid API token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_issuance_orchestrator() -> IssuanceOrchestrator:
    """Dependency returning the process-wide orchestrator."""
    return get_orchestrator()
