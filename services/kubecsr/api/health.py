"""
Health check endpoint for the kubecsr API server.
"""

from fastapi import APIRouter, status

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
async def health() -> dict[str, str]:
    """
    Liveness probe endpoint.

    Returns 200 if the API server is running. No authentication required.
    """
    return {"status": "healthy"}
