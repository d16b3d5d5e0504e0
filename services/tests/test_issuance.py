"""Tests for the issuance workflow."""

import base64
import re
import threading
from unittest.mock import patch

import httpx
import pytest
from conftest import CLUSTER_CA_DATA, CLUSTER_SERVER, admin_kubeconfig_document, encode_document
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID
from fakes import InMemoryAuthority

from kubecsr.api.models.issue import CertificateRequestSpec, IssueRequest
from kubecsr.errors import (
    ApprovalError,
    AuthorityError,
    CertificateTimeoutError,
    CredentialAssemblyError,
    CredentialIOError,
    ValidationError,
)
from kubecsr.services.approval import ApprovalWaiter
from kubecsr.services.authority import KubernetesAuthorityClient
from kubecsr.services.issuance import (
    IssuanceOrchestrator,
    IssuanceStage,
    get_orchestrator,
    init_orchestrator,
    make_identity,
)
from kubecsr.services.kubeconfig import decode_kubeconfig, load_admin_kubeconfig
from kubecsr.services.request_log import RequestLog

DNS_SUBDOMAIN = re.compile(r"[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*")


def _request(admin_kubeconfig: str, user: str = "alice", **spec) -> IssueRequest:
    return IssueRequest(
        certificate_request=CertificateRequestSpec(user=user, **spec),
        kubeconfig=admin_kubeconfig,
    )


class TestMakeIdentity:
    """Test authority-side request names."""

    def test_unique_per_call(self):
        """Two requests for the same user never share an authority name."""
        assert make_identity("alice") != make_identity("alice")

    def test_derived_from_user(self):
        assert re.fullmatch(r"alice-[0-9a-f]{8}", make_identity("alice"))

    def test_sanitized_to_object_name(self):
        """Characters Kubernetes does not allow in names are replaced."""
        identity = make_identity("Alice Smith@Example.com")
        assert re.fullmatch(r"alice-smith-example-com-[0-9a-f]{8}", identity)

    @pytest.mark.parametrize(
        "user",
        ["x_.y", "jo..e", "a.-b", "-lead", "trail.", "a--b", "...", "Ünïcödé", "system:node:n1"],
    )
    def test_valid_dns_subdomain(self, user):
        """Every user name maps to a name the Kubernetes API server accepts."""
        identity = make_identity(user)
        assert DNS_SUBDOMAIN.fullmatch(identity)
        assert len(identity) <= 253

    def test_length_bounded(self):
        assert len(make_identity("a" * 400)) <= 253

    def test_fallback_when_nothing_usable(self):
        assert re.fullmatch(r"user-[0-9a-f]{8}", make_identity("@@@"))


class TestIssue:
    """Test the end-to-end pipeline against the in-memory authority."""

    @pytest.mark.asyncio
    async def test_issues_kubeconfig(self, orchestrator, authority, request_log, admin_kubeconfig):
        """A valid request yields a kubeconfig for the user and one record."""
        record = await orchestrator.issue(
            _request(admin_kubeconfig, organization=["team-x"]), requester_ip="10.0.0.7"
        )

        assert record.certificate_request.user == "alice"
        assert record.requester_ip == "10.0.0.7"
        assert record.csr_name.startswith("alice-")
        assert authority.call_names() == ["submit", "approve", "get"]
        assert authority.closed
        assert len(request_log) == 1

        issued = decode_kubeconfig(record.kubeconfig)
        assert issued.current_context == "alice"
        assert issued.clusters[0].name == "c1"
        assert issued.clusters[0].cluster.server == CLUSTER_SERVER
        assert issued.clusters[0].cluster.certificate_authority_data == CLUSTER_CA_DATA
        assert issued.users[0].name == "alice"

        cert = x509.load_pem_x509_certificate(
            base64.b64decode(issued.users[0].user.client_certificate_data)
        )
        key = serialization.load_pem_private_key(
            base64.b64decode(issued.users[0].user.client_key_data), password=None
        )
        assert cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "alice"
        assert cert.subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)[0].value == "team-x"
        assert cert.public_key().public_numbers() == key.public_key().public_numbers()

    @pytest.mark.asyncio
    async def test_submits_under_request_identity(self, orchestrator, authority, admin_kubeconfig):
        """The CSR is submitted under csr_name, with the configured usages."""
        record = await orchestrator.issue(_request(admin_kubeconfig))

        submitted = authority.records[record.csr_name]
        assert submitted.usages == ["client auth"]
        assert submitted.approved

    @pytest.mark.asyncio
    async def test_repeat_requests_for_same_user(self, orchestrator, authority, admin_kubeconfig):
        """Resubmitting for a user creates a second, independent authority object."""
        first = await orchestrator.issue(_request(admin_kubeconfig))
        second = await orchestrator.issue(_request(admin_kubeconfig))

        assert first.csr_name != second.csr_name
        assert len(authority.records) == 2
        assert len(await orchestrator.records()) == 2

    @pytest.mark.asyncio
    async def test_expiration_forwarded(self, orchestrator, authority, admin_kubeconfig):
        request = IssueRequest(
            certificate_request=CertificateRequestSpec(user="alice"),
            expiration_seconds=3600,
            kubeconfig=admin_kubeconfig,
        )
        record = await orchestrator.issue(request)

        assert record.expiration_seconds == 3600
        assert authority.records[record.csr_name].expiration_seconds == 3600

    @pytest.mark.asyncio
    async def test_default_expiration(self, authority, waiter, tmp_path, admin_kubeconfig):
        """The configured default applies when the request sets no expiration."""
        orchestrator = IssuanceOrchestrator(
            lambda admin: authority,
            waiter,
            RequestLog(),
            kubeconfig_dir=tmp_path,
            usages=["client auth"],
            call_timeout_seconds=1.0,
            default_expiration_seconds=86400,
        )
        record = await orchestrator.issue(_request(admin_kubeconfig))
        assert authority.records[record.csr_name].expiration_seconds == 86400

    @pytest.mark.asyncio
    async def test_admin_kubeconfig_not_left_on_disk(
        self, orchestrator, tmp_path, admin_kubeconfig
    ):
        await orchestrator.issue(_request(admin_kubeconfig))
        assert list((tmp_path / "kube").iterdir()) == []

    @pytest.mark.asyncio
    async def test_factory_receives_admin_kubeconfig(self, waiter, tmp_path, admin_kubeconfig):
        """The authority client is built from the parsed admin kubeconfig."""
        seen = []
        authority = InMemoryAuthority()

        def factory(admin):
            seen.append(admin)
            return authority

        orchestrator = IssuanceOrchestrator(
            factory,
            waiter,
            RequestLog(),
            kubeconfig_dir=tmp_path,
            usages=["client auth"],
            call_timeout_seconds=1.0,
        )
        await orchestrator.issue(_request(admin_kubeconfig))

        [admin] = seen
        assert admin.clusters[0].cluster.server == CLUSTER_SERVER
        assert admin.users[0].user.token == "admin-token"

    @pytest.mark.asyncio
    async def test_blocking_steps_run_off_the_event_loop(self, waiter, tmp_path, admin_kubeconfig):
        """Kubeconfig staging and client construction run in worker threads."""
        loop_thread = threading.get_ident()
        threads = {}
        authority = InMemoryAuthority()

        def factory(admin):
            threads["factory"] = threading.get_ident()
            return authority

        def staging(*args):
            threads["staging"] = threading.get_ident()
            return load_admin_kubeconfig(*args)

        orchestrator = IssuanceOrchestrator(
            factory,
            waiter,
            RequestLog(),
            kubeconfig_dir=tmp_path,
            usages=["client auth"],
            call_timeout_seconds=1.0,
        )
        with patch("kubecsr.services.issuance.load_admin_kubeconfig", side_effect=staging):
            await orchestrator.issue(_request(admin_kubeconfig))

        assert threads["factory"] != loop_thread
        assert threads["staging"] != loop_thread


class TestIssueFailures:
    """Every failure raises a stage-tagged error and records nothing."""

    @pytest.mark.asyncio
    async def test_empty_user(self, orchestrator, authority, request_log, admin_kubeconfig):
        """A missing user is rejected before any authority call."""
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.issue(_request(admin_kubeconfig, user=""))

        assert exc_info.value.stage == IssuanceStage.RECEIVED
        assert authority.calls == []
        assert len(request_log) == 0

    @pytest.mark.asyncio
    async def test_invalid_kubeconfig_encoding(self, orchestrator, authority, request_log):
        with pytest.raises(CredentialIOError):
            await orchestrator.issue(_request("***not-base64***"))

        assert authority.calls == []
        assert len(request_log) == 0

    @pytest.mark.asyncio
    async def test_zero_clusters(self, orchestrator, authority, request_log):
        """A malformed admin kubeconfig fails before contacting the authority."""
        admin = encode_document(admin_kubeconfig_document(clusters=[]))

        with pytest.raises(CredentialAssemblyError, match="no cluster"):
            await orchestrator.issue(_request(admin))

        assert authority.calls == []
        assert len(request_log) == 0

    @pytest.mark.asyncio
    async def test_zero_contexts(self, orchestrator, authority, request_log):
        admin = encode_document(admin_kubeconfig_document(contexts=[]))

        with pytest.raises(CredentialAssemblyError, match="no context"):
            await orchestrator.issue(_request(admin))

        assert authority.calls == []
        assert len(request_log) == 0

    @pytest.mark.asyncio
    async def test_submit_rejected(self, orchestrator, authority, request_log, admin_kubeconfig):
        authority.reject_submit = True

        with pytest.raises(AuthorityError) as exc_info:
            await orchestrator.issue(_request(admin_kubeconfig))

        assert exc_info.value.stage == IssuanceStage.REQUEST_BUILT
        assert authority.call_names() == ["submit"]
        assert authority.closed
        assert len(request_log) == 0

    @pytest.mark.asyncio
    async def test_approve_rejected(self, orchestrator, authority, request_log, admin_kubeconfig):
        authority.reject_approve = True

        with pytest.raises(ApprovalError) as exc_info:
            await orchestrator.issue(_request(admin_kubeconfig))

        assert exc_info.value.stage == IssuanceStage.SUBMITTED
        assert authority.call_names() == ["submit", "approve"]
        assert len(request_log) == 0

    @pytest.mark.asyncio
    async def test_certificate_never_issued(
        self, orchestrator, authority, request_log, admin_kubeconfig
    ):
        authority.ready_on_attempt = None

        with pytest.raises(CertificateTimeoutError) as exc_info:
            await orchestrator.issue(_request(admin_kubeconfig))

        assert exc_info.value.stage == IssuanceStage.POLLING
        assert authority.call_names().count("get") == 5
        assert len(request_log) == 0

    @pytest.mark.asyncio
    async def test_hung_authority_call_times_out(self, fake_sleep, tmp_path, admin_kubeconfig):
        """Each authority call is bounded by the per-call timeout."""
        authority = InMemoryAuthority(submit_delay=1.0)
        request_log = RequestLog()
        orchestrator = IssuanceOrchestrator(
            lambda admin: authority,
            ApprovalWaiter(sleep=fake_sleep),
            request_log,
            kubeconfig_dir=tmp_path,
            usages=["client auth"],
            call_timeout_seconds=0.01,
        )

        with pytest.raises(AuthorityError, match="did not respond to submit"):
            await orchestrator.issue(_request(admin_kubeconfig))
        assert len(request_log) == 0

    @pytest.mark.asyncio
    async def test_unreadable_status_reply_times_out(
        self, waiter, request_log, tmp_path, admin_kubeconfig
    ):
        """Non-JSON status replies count as not ready instead of escaping as crashes."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(201, json={"metadata": {"name": "alice"}})
            if request.method == "PUT":
                return httpx.Response(200, json={})
            return httpx.Response(200, text="<html>proxy</html>")

        def factory(admin):
            http_client = httpx.AsyncClient(
                base_url=CLUSTER_SERVER, transport=httpx.MockTransport(handler)
            )
            return KubernetesAuthorityClient(
                http_client, signer_name="kubernetes.io/kube-apiserver-client"
            )

        orchestrator = IssuanceOrchestrator(
            factory,
            waiter,
            request_log,
            kubeconfig_dir=tmp_path,
            usages=["client auth"],
            call_timeout_seconds=1.0,
        )

        with pytest.raises(CertificateTimeoutError):
            await orchestrator.issue(_request(admin_kubeconfig))
        assert len(request_log) == 0

class TestInitOrchestrator:
    """Test singleton construction from settings."""

    def test_sets_singleton(self, authority):
        orchestrator = init_orchestrator(lambda admin: authority)
        assert get_orchestrator() is orchestrator
