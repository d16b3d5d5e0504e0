"""Certificate issuance workflow.

One call to ``IssuanceOrchestrator.issue`` runs the whole pipeline for one
request, strictly in sequence:

    received -> key_generated -> request_built -> submitted
      -> approval_requested -> polling -> certificate_obtained
      -> credential_assembled -> recorded

Any failure before ``recorded`` raises an ``IssuanceError`` tagged with the
stage that was reached, and nothing is added to the request log. Only the
certificate poll is retried; everything else fails the request.
"""

import asyncio
import re
import secrets
from collections.abc import Awaitable
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TypeVar

from kubecsr.api.models.issue import IssueRequest, RequestRecord
from kubecsr.auth.csr import build_signing_request, encode_key_pem, generate_key
from kubecsr.config import settings
from kubecsr.errors import AuthorityError, IssuanceError, ValidationError
from kubecsr.logging_config import get_logger
from kubecsr.services.approval import ApprovalWaiter
from kubecsr.services.authority import AuthorityFactory, kubernetes_authority_factory
from kubecsr.services.kubeconfig import (
    assemble,
    encode_kubeconfig,
    load_admin_kubeconfig,
    validate_admin_credential,
)
from kubecsr.services.request_log import RequestLog

logger = get_logger(__name__)

T = TypeVar("T")

# Kubernetes object names (DNS subdomains): alphanumeric runs joined by single hyphens
_NAME_INVALID_CHARS = re.compile(r"[^a-z0-9]+")
_NAME_MAX_LENGTH = 253
_IDENTITY_SUFFIX_BYTES = 4

# Module-level orchestrator singleton, initialized in lifespan
_orchestrator: "IssuanceOrchestrator | None" = None


class IssuanceStage(StrEnum):
    RECEIVED = "received"
    KEY_GENERATED = "key_generated"
    REQUEST_BUILT = "request_built"
    SUBMITTED = "submitted"
    APPROVAL_REQUESTED = "approval_requested"
    POLLING = "polling"
    CERTIFICATE_OBTAINED = "certificate_obtained"
    CREDENTIAL_ASSEMBLED = "credential_assembled"
    RECORDED = "recorded"


def make_identity(user: str) -> str:
    """Authority-side name for one request: the sanitized user plus a random suffix.

    Every request gets its own name, so repeated or concurrent requests for
    the same user never touch each other's authority objects.
    """
    suffix = secrets.token_hex(_IDENTITY_SUFFIX_BYTES)
    base = _NAME_INVALID_CHARS.sub("-", user.lower()).strip("-")
    base = base[: _NAME_MAX_LENGTH - len(suffix) - 1].rstrip("-")
    return f"{base or 'user'}-{suffix}"


class IssuanceOrchestrator:
    """Runs the issuance pipeline and records successful results."""

    def __init__(
        self,
        authority_factory: AuthorityFactory,
        waiter: ApprovalWaiter,
        request_log: RequestLog,
        *,
        kubeconfig_dir: Path,
        usages: list[str],
        call_timeout_seconds: float,
        default_expiration_seconds: int | None = None,
    ):
        self._authority_factory = authority_factory
        self._waiter = waiter
        self._request_log = request_log
        self._kubeconfig_dir = kubeconfig_dir
        self._usages = list(usages)
        self._call_timeout_seconds = call_timeout_seconds
        self._default_expiration_seconds = default_expiration_seconds

    @property
    def request_log(self) -> RequestLog:
        return self._request_log

    async def records(self) -> list[RequestRecord]:
        """All successful issuances so far, oldest first."""
        return await self._request_log.snapshot()

    async def issue(self, request: IssueRequest, requester_ip: str | None = None) -> RequestRecord:
        """Issue a certificate and kubeconfig for ``request.certificate_request.user``."""
        received_at = datetime.now(UTC)
        spec = request.certificate_request
        log = logger.bind(user=spec.user, requester_ip=requester_ip)
        stage = IssuanceStage.RECEIVED

        try:
            if not spec.user:
                raise ValidationError("certificateRequest.user is required")

            identity = make_identity(spec.user)
            log = log.bind(csr_name=identity)
            expiration = request.expiration_seconds or self._default_expiration_seconds

            admin = await asyncio.to_thread(
                load_admin_kubeconfig, request.kubeconfig, self._kubeconfig_dir, identity
            )
            validate_admin_credential(admin)

            key = await asyncio.to_thread(generate_key)
            stage = IssuanceStage.KEY_GENERATED

            signing_request = build_signing_request(spec, key)
            key_pem = encode_key_pem(key)
            stage = IssuanceStage.REQUEST_BUILT

            client = await asyncio.to_thread(self._authority_factory, admin)
            async with client:
                authority_record = await self._call(
                    client.submit(signing_request, identity, self._usages, expiration),
                    "submit",
                )
                stage = IssuanceStage.SUBMITTED

                await self._call(client.approve(authority_record), "approve")
                stage = IssuanceStage.APPROVAL_REQUESTED

                stage = IssuanceStage.POLLING
                certificate = await self._waiter.wait_for_certificate(identity, client)
                stage = IssuanceStage.CERTIFICATE_OBTAINED

            kubeconfig = encode_kubeconfig(assemble(admin, certificate, key_pem, spec.user))
            stage = IssuanceStage.CREDENTIAL_ASSEMBLED

            record = RequestRecord(
                certificate_request=spec,
                expiration_seconds=expiration,
                csr_name=identity,
                kubeconfig=kubeconfig,
                timestamp=received_at,
                requester_ip=requester_ip,
            )
            await self._request_log.append(record)
            stage = IssuanceStage.RECORDED
        except IssuanceError as e:
            if e.stage is None:
                e.stage = stage.value
            log.warning(
                "Issuance failed",
                stage=e.stage,
                error_type=type(e).__name__,
                error=e.message,
            )
            raise

        log.info("Issued kubeconfig", stage=stage.value, expiration_seconds=expiration)
        return record

    async def _call(self, awaitable: Awaitable[T], operation: str) -> T:
        """Await one authority call, bounded by the per-call timeout."""
        try:
            return await asyncio.wait_for(awaitable, self._call_timeout_seconds)
        except TimeoutError as e:
            raise AuthorityError(
                f"Certificate authority did not respond to {operation} "
                f"within {self._call_timeout_seconds:g}s"
            ) from e


# ── Lifecycle ────────────────────────────────────────────────────────────


def init_orchestrator(authority_factory: AuthorityFactory | None = None) -> IssuanceOrchestrator:
    """Initialize the orchestrator singleton from settings."""
    global _orchestrator  # noqa: PLW0603

    waiter = ApprovalWaiter(
        interval_seconds=settings.polling.interval_seconds,
        max_attempts=settings.polling.max_attempts,
        call_timeout_seconds=settings.authority.request_timeout_seconds,
    )
    _orchestrator = IssuanceOrchestrator(
        authority_factory or kubernetes_authority_factory,
        waiter,
        RequestLog(),
        kubeconfig_dir=settings.kubeconfig_dir,
        usages=settings.authority.usages,
        call_timeout_seconds=settings.authority.request_timeout_seconds,
        default_expiration_seconds=settings.authority.default_expiration_seconds,
    )
    logger.info(
        "Issuance orchestrator initialized",
        signer=settings.authority.signer_name,
        poll_interval=settings.polling.interval_seconds,
        poll_attempts=settings.polling.max_attempts,
    )
    return _orchestrator


def get_orchestrator() -> IssuanceOrchestrator:
    """Return the orchestrator singleton. Raises if not initialized."""
    if _orchestrator is None:
        raise RuntimeError("Orchestrator not initialized; call init_orchestrator() first")
    return _orchestrator
