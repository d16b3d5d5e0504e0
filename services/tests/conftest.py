"""Pytest configuration and fixtures."""

import base64
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
import yaml
from fakes import InMemoryAuthority
from fastapi import FastAPI
from fastapi.testclient import TestClient

from kubecsr.api.app import create_application
from kubecsr.api.dependencies import get_issuance_orchestrator, require_api_token
from kubecsr.services.approval import ApprovalWaiter
from kubecsr.services.issuance import IssuanceOrchestrator
from kubecsr.services.request_log import RequestLog

CLUSTER_SERVER = "https://cluster:6443"
# Opaque to the service: copied verbatim into issued kubeconfigs
CLUSTER_CA_DATA = base64.b64encode(
    b"-----BEGIN CERTIFICATE-----\nY2x1c3Rlci1jYQ==\n-----END CERTIFICATE-----\n"
).decode()


def admin_kubeconfig_document(**overrides: Any) -> dict[str, Any]:
    """An admin kubeconfig for cluster ``c1`` authenticating with a token."""
    document: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "Config",
        "current-context": "c1-admin",
        "clusters": [
            {
                "name": "c1",
                "cluster": {
                    "server": CLUSTER_SERVER,
                    "certificate-authority-data": CLUSTER_CA_DATA,
                },
            }
        ],
        "contexts": [
            {"name": "c1-admin", "context": {"cluster": "c1", "user": "admin", "namespace": "default"}}
        ],
        "users": [{"name": "admin", "user": {"token": "admin-token"}}],
        "preferences": {},
    }
    document.update(overrides)
    return document


def encode_document(document: dict[str, Any]) -> str:
    return base64.b64encode(yaml.safe_dump(document).encode()).decode()


@pytest.fixture
def admin_kubeconfig() -> str:
    """Base64-encoded admin kubeconfig, as sent in request bodies."""
    return encode_document(admin_kubeconfig_document())


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the waiter under test."""
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]) -> Callable[[float], Awaitable[None]]:
    """Sleep replacement that records the delay and returns immediately."""

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def authority() -> InMemoryAuthority:
    return InMemoryAuthority()


@pytest.fixture
def waiter(fake_sleep) -> ApprovalWaiter:
    return ApprovalWaiter(
        interval_seconds=0.1, max_attempts=5, call_timeout_seconds=1.0, sleep=fake_sleep
    )


@pytest.fixture
def request_log() -> RequestLog:
    return RequestLog()


@pytest.fixture
def orchestrator(
    authority: InMemoryAuthority,
    waiter: ApprovalWaiter,
    request_log: RequestLog,
    tmp_path: Path,
) -> IssuanceOrchestrator:
    """Orchestrator wired to the in-memory authority."""
    return IssuanceOrchestrator(
        lambda admin: authority,
        waiter,
        request_log,
        kubeconfig_dir=tmp_path / "kube",
        usages=["client auth"],
        call_timeout_seconds=1.0,
    )


@pytest.fixture
def app(orchestrator: IssuanceOrchestrator) -> FastAPI:
    """Create FastAPI application for testing, authentication disabled."""
    application = create_application()

    async def no_auth() -> None:
        return None

    application.dependency_overrides[get_issuance_orchestrator] = lambda: orchestrator
    application.dependency_overrides[require_api_token] = no_auth

    return application


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    """Create sync test client."""
    return TestClient(app)
