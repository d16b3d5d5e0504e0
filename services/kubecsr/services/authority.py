"""Certificate authority client.

The issuance workflow talks to the authority only through ``AuthorityClient``.
``KubernetesAuthorityClient`` is the production binding: it drives the
``certificates.k8s.io/v1`` CertificateSigningRequest API of the cluster named
in the admin kubeconfig, authenticating with that kubeconfig's credentials.

Authority objects are keyed by name (the "identity"). A submitted request
moves through Submitted -> Approved/Denied -> Issued; the issued certificate
appears in ``status.certificate`` once the signer has processed it.
"""

from __future__ import annotations

import base64
import copy
import ssl
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx

from kubecsr.config import settings
from kubecsr.errors import ApprovalError, AuthorityError, CredentialAssemblyError
from kubecsr.logging_config import get_logger
from kubecsr.services.kubeconfig import (
    KubeConfig,
    NamedUser,
    decode_data_field,
    validate_admin_credential,
)

logger = get_logger(__name__)

API_VERSION = "certificates.k8s.io/v1"
KIND = "CertificateSigningRequest"
CSR_PATH = "/apis/certificates.k8s.io/v1/certificatesigningrequests"

CONDITION_APPROVED = "Approved"
CONDITION_DENIED = "Denied"
CONDITION_FAILED = "Failed"


@dataclass
class AuthorityRecord:
    """The authority's view of one submitted signing request."""

    name: str
    signer_name: str | None = None
    usages: list[str] = field(default_factory=list)
    expiration_seconds: int | None = None
    conditions: list[dict[str, Any]] = field(default_factory=list)
    certificate: bytes | None = None
    # Full object as returned by the authority; approval updates send it back
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def _has_condition(self, condition_type: str) -> bool:
        return any(
            c.get("type") == condition_type and c.get("status", "True") == "True"
            for c in self.conditions
        )

    @property
    def approved(self) -> bool:
        return self._has_condition(CONDITION_APPROVED)

    @property
    def denied(self) -> bool:
        """True once the request was denied or the signer failed it."""
        return self._has_condition(CONDITION_DENIED) or self._has_condition(CONDITION_FAILED)

    @property
    def issued(self) -> bool:
        return bool(self.certificate)

    @classmethod
    def from_k8s(cls, obj: dict[str, Any]) -> AuthorityRecord:
        """Build a record from a CertificateSigningRequest API object.

        Raises ValueError when the object or its certificate cannot be decoded.
        """
        if not isinstance(obj, dict):
            raise ValueError(f"expected a JSON object, got {type(obj).__name__}")
        spec = obj.get("spec") or {}
        status = obj.get("status") or {}
        certificate = status.get("certificate")
        return cls(
            name=(obj.get("metadata") or {}).get("name", ""),
            signer_name=spec.get("signerName"),
            usages=list(spec.get("usages") or []),
            expiration_seconds=spec.get("expirationSeconds"),
            conditions=list(status.get("conditions") or []),
            certificate=base64.b64decode(certificate, validate=True) if certificate else None,
            raw=obj,
        )


class AuthorityClient(ABC):
    """Capability the issuance workflow needs from a certificate authority."""

    @abstractmethod
    async def submit(
        self,
        signing_request: bytes,
        identity: str,
        usages: list[str],
        expiration_seconds: int | None = None,
    ) -> AuthorityRecord:
        """Register a PEM CSR under ``identity``. Raises AuthorityError on rejection."""

    @abstractmethod
    async def approve(self, record: AuthorityRecord) -> None:
        """Attach an approval condition. Raises ApprovalError on rejection."""

    @abstractmethod
    async def get(self, identity: str) -> AuthorityRecord | None:
        """Best-effort read of the record; None when it cannot be read."""

    async def aclose(self) -> None:
        """Release transport resources."""

    async def __aenter__(self) -> AuthorityClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


# Builds a client for the cluster described by an admin kubeconfig
AuthorityFactory = Callable[[KubeConfig], AuthorityClient]


class KubernetesAuthorityClient(AuthorityClient):
    """AuthorityClient backed by the Kubernetes CSR API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        signer_name: str,
        approval_reason: str = "KubeCSRApprove",
        approval_message: str = "Automatically approved by kubecsr",
    ):
        self._client = http_client
        self._signer_name = signer_name
        self._approval_reason = approval_reason
        self._approval_message = approval_message

    @classmethod
    def from_kubeconfig(
        cls,
        admin: KubeConfig,
        *,
        signer_name: str,
        timeout: float,
        approval_reason: str = "KubeCSRApprove",
        approval_message: str = "Automatically approved by kubecsr",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> KubernetesAuthorityClient:
        """Create a client for cluster 0 using the credentials of context 0's user."""
        named_cluster, named_context = validate_admin_credential(admin)
        cluster = named_cluster.cluster
        admin_user = _find_user(admin, named_context.context.user)

        headers: dict[str, str] = {}
        if admin_user is not None and admin_user.user.token:
            headers["Authorization"] = f"Bearer {admin_user.user.token}"

        verify = _build_ssl_context(
            ca_pem=decode_data_field(cluster.certificate_authority_data),
            insecure=bool(cluster.insecure_skip_tls_verify),
            cert_pem=decode_data_field(admin_user.user.client_certificate_data)
            if admin_user
            else None,
            key_pem=decode_data_field(admin_user.user.client_key_data) if admin_user else None,
        )

        http_client = httpx.AsyncClient(
            base_url=cluster.server,
            headers=headers,
            verify=verify,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        return cls(
            http_client,
            signer_name=signer_name,
            approval_reason=approval_reason,
            approval_message=approval_message,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def submit(
        self,
        signing_request: bytes,
        identity: str,
        usages: list[str],
        expiration_seconds: int | None = None,
    ) -> AuthorityRecord:
        spec: dict[str, Any] = {
            "request": base64.b64encode(signing_request).decode(),
            "signerName": self._signer_name,
            "usages": usages,
        }
        if expiration_seconds is not None:
            spec["expirationSeconds"] = expiration_seconds

        body = {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "metadata": {"name": identity},
            "spec": spec,
        }

        try:
            resp = await self._client.post(CSR_PATH, json=body)
        except httpx.HTTPError as e:
            logger.warning("CSR submission failed", identity=identity, error=str(e))
            raise AuthorityError(f"Failed to reach certificate authority: {e}") from e

        if resp.status_code >= 400:
            message = _status_message(resp)
            logger.warning(
                "CSR submission rejected",
                identity=identity,
                status_code=resp.status_code,
                reason=message,
            )
            raise AuthorityError(f"Certificate signing request rejected: {message}")

        try:
            record = AuthorityRecord.from_k8s(resp.json())
        except ValueError as e:
            logger.warning(
                "CSR submission returned an unreadable object", identity=identity, error=str(e)
            )
            raise AuthorityError(f"Certificate authority returned an invalid response: {e}") from e

        logger.info("Submitted CSR", identity=identity, signer=self._signer_name)
        return record

    async def approve(self, record: AuthorityRecord) -> None:
        obj = copy.deepcopy(record.raw) or {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "metadata": {"name": record.name},
        }
        status = obj.setdefault("status", {})
        conditions = status.get("conditions") or []
        conditions.append(
            {
                "type": CONDITION_APPROVED,
                "status": "True",
                "reason": self._approval_reason,
                "message": self._approval_message,
                "lastUpdateTime": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
            }
        )
        status["conditions"] = conditions

        try:
            resp = await self._client.put(f"{CSR_PATH}/{record.name}/approval", json=obj)
        except httpx.HTTPError as e:
            logger.warning("CSR approval failed", identity=record.name, error=str(e))
            raise ApprovalError(f"Failed to reach certificate authority: {e}") from e

        if resp.status_code >= 400:
            message = _status_message(resp)
            logger.warning(
                "CSR approval rejected",
                identity=record.name,
                status_code=resp.status_code,
                reason=message,
            )
            raise ApprovalError(f"Certificate signing request approval rejected: {message}")

        logger.info("Approved CSR", identity=record.name)

    async def get(self, identity: str) -> AuthorityRecord | None:
        try:
            resp = await self._client.get(f"{CSR_PATH}/{identity}")
        except httpx.HTTPError as e:
            logger.warning("CSR status read failed", identity=identity, error=str(e))
            return None

        if resp.status_code >= 400:
            logger.warning(
                "CSR status read rejected",
                identity=identity,
                status_code=resp.status_code,
            )
            return None

        try:
            return AuthorityRecord.from_k8s(resp.json())
        except ValueError as e:
            logger.warning(
                "CSR status read returned an unreadable object", identity=identity, error=str(e)
            )
            return None


def kubernetes_authority_factory(admin: KubeConfig) -> AuthorityClient:
    """Default AuthorityFactory: the Kubernetes CSR API with configured settings."""
    return KubernetesAuthorityClient.from_kubeconfig(
        admin,
        signer_name=settings.authority.signer_name,
        timeout=settings.authority.request_timeout_seconds,
        approval_reason=settings.authority.approval_reason,
        approval_message=settings.authority.approval_message,
    )


# ── Helpers ──────────────────────────────────────────────────────────────


def _find_user(admin: KubeConfig, name: str) -> NamedUser | None:
    for user in admin.users:
        if user.name == name:
            return user
    return admin.users[0] if admin.users else None


def _build_ssl_context(
    ca_pem: bytes | None,
    insecure: bool,
    cert_pem: bytes | None,
    key_pem: bytes | None,
) -> ssl.SSLContext:
    """SSL context trusting the cluster CA and presenting the admin client cert."""
    try:
        if ca_pem:
            context = ssl.create_default_context(cadata=ca_pem.decode())
        else:
            context = ssl.create_default_context()

        if insecure:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        if cert_pem and key_pem:
            # load_cert_chain only accepts paths; the files live only until loaded
            with tempfile.TemporaryDirectory(prefix="kubecsr-") as tmp:
                cert_path = Path(tmp) / "client.crt"
                key_path = Path(tmp) / "client.key"
                cert_path.write_bytes(cert_pem)
                key_path.write_bytes(key_pem)
                key_path.chmod(0o600)
                context.load_cert_chain(cert_path, key_path)
    except (ssl.SSLError, ValueError) as e:
        raise CredentialAssemblyError(f"Admin kubeconfig TLS material is invalid: {e}") from e

    return context


def _status_message(resp: httpx.Response) -> str:
    """Extract the message of a Kubernetes Status error body."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return resp.reason_phrase
