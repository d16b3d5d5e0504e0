"""Certificate issuance request/response models."""

from datetime import datetime

from pydantic import ConfigDict, Field

from .common import KubeCSRBaseModel


class CertificateRequestSpec(KubeCSRBaseModel):
    """Subject of the certificate signing request.

    Each populated list becomes one or more attributes of the CSR subject.
    ``organization`` doubles as the Kubernetes group list and ``user`` as the
    common name and Kubernetes username.
    """

    model_config = ConfigDict(frozen=True)

    country: list[str] = Field(default_factory=list)
    locality: list[str] = Field(default_factory=list)
    organization: list[str] = Field(
        default_factory=list, description="Kubernetes groups for the issued user"
    )
    organization_unit: list[str] = Field(default_factory=list)
    postal_code: list[str] = Field(default_factory=list)
    province: list[str] = Field(default_factory=list)
    street_address: list[str] = Field(default_factory=list)
    user: str = Field(description="Common name and Kubernetes username")


class IssueRequest(KubeCSRBaseModel):
    """Body of ``POST /issue``."""

    certificate_request: CertificateRequestSpec
    expiration_seconds: int | None = Field(
        default=None,
        ge=600,
        description="Requested certificate lifetime; the signer may shorten it",
    )
    kubeconfig: str = Field(
        ...,
        min_length=1,
        description="Base64-encoded administrative kubeconfig used to reach the cluster",
    )


class RequestRecord(KubeCSRBaseModel):
    """A completed issuance, as returned by ``POST /issue`` and listed by ``GET /issue``."""

    certificate_request: CertificateRequestSpec
    expiration_seconds: int | None = None
    csr_name: str = Field(description="Name of the CertificateSigningRequest at the authority")
    kubeconfig: str = Field(description="Base64-encoded kubeconfig for the issued user")
    timestamp: datetime
    requester_ip: str | None = Field(default=None, alias="requesterIP")
