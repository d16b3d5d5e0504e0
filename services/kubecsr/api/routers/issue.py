"""Issue router: request a client certificate and kubeconfig, list past issuances."""

from fastapi import APIRouter, Depends, Request, status

from kubecsr.api.dependencies import get_issuance_orchestrator, require_api_token
from kubecsr.api.models.common import ErrorResponse
from kubecsr.api.models.issue import IssueRequest, RequestRecord
from kubecsr.logging_config import get_logger
from kubecsr.services.issuance import IssuanceOrchestrator

router = APIRouter(
    prefix="/issue",
    tags=["issue"],
    dependencies=[Depends(require_api_token)],
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse},
    },
)
logger = get_logger(__name__)


@router.post("", response_model=RequestRecord, status_code=status.HTTP_201_CREATED)
async def issue_kubeconfig(
    body: IssueRequest,
    request: Request,
    orchestrator: IssuanceOrchestrator = Depends(get_issuance_orchestrator),
) -> RequestRecord:
    """Issue a client certificate for ``certificateRequest.user``.

    Generates a key and CSR, submits and approves it with the cluster named in
    the admin kubeconfig, waits for the signed certificate and returns a
    base64-encoded kubeconfig for the new user.
    """
    requester_ip = request.client.host if request.client else None
    return await orchestrator.issue(body, requester_ip=requester_ip)


@router.get("", response_model=list[RequestRecord])
async def list_issued(
    orchestrator: IssuanceOrchestrator = Depends(get_issuance_orchestrator),
) -> list[RequestRecord]:
    """Return every issuance recorded since the server started."""
    return await orchestrator.records()
