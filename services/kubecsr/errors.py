"""Issuance error taxonomy.

Every failure of the issuance workflow is raised as an ``IssuanceError``
subclass. The API layer renders them as ``{"error": message}`` with the
class's ``status_code``; the message never contains a traceback.
"""


class IssuanceError(Exception):
    """Base class for caller-facing issuance failures."""

    status_code: int = 400

    def __init__(self, message: str, *, stage: str | None = None):
        super().__init__(message)
        self.message = message
        # Workflow stage the failure happened in, set by the orchestrator
        self.stage = stage


class ValidationError(IssuanceError):
    """Required request fields are missing or invalid."""


class KeyGenerationError(IssuanceError):
    """The private key could not be generated."""


class RequestEncodingError(IssuanceError):
    """The certificate signing request could not be built or signed."""


class CredentialIOError(IssuanceError):
    """The administrative kubeconfig could not be decoded, staged or read."""


class AuthorityError(IssuanceError):
    """The certificate authority rejected or failed a call."""


class ApprovalError(AuthorityError):
    """The authority refused the approval, or the request was denied."""


class CertificateTimeoutError(IssuanceError, TimeoutError):
    """No certificate was issued within the polling budget.

    The request may still be signed later; it is not retried.
    """


class CredentialAssemblyError(IssuanceError):
    """The administrative kubeconfig lacks the cluster or context entries needed."""
