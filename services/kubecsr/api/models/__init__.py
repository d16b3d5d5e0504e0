"""kubecsr API Pydantic models."""

from .common import ErrorResponse, KubeCSRBaseModel
from .issue import CertificateRequestSpec, IssueRequest, RequestRecord

__all__ = [
    # Common
    "ErrorResponse",
    "KubeCSRBaseModel",
    # Issue
    "CertificateRequestSpec",
    "IssueRequest",
    "RequestRecord",
]
