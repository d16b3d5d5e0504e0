"""Kubeconfig parsing and assembly.

The administrative kubeconfig arrives base64-encoded in the request body.
It is staged on disk for the duration of one request, parsed, and used as
the reference for the kubeconfig handed back to the caller: the first
cluster entry (server and CA data) is copied verbatim, and a single
context and user are created for the newly issued certificate.

Only cluster and context index 0 of the admin kubeconfig are ever read.
"""

import base64
import binascii
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from kubecsr.errors import CredentialAssemblyError, CredentialIOError
from kubecsr.logging_config import get_logger

logger = get_logger(__name__)


# ── Kubeconfig Schema ────────────────────────────────────────────────────


class KubeconfigModel(BaseModel):
    """Base for kubeconfig entries; unknown keys (extensions etc.) are dropped."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Cluster(KubeconfigModel):
    server: str
    certificate_authority_data: str | None = Field(
        default=None, alias="certificate-authority-data"
    )
    insecure_skip_tls_verify: bool | None = Field(
        default=None, alias="insecure-skip-tls-verify"
    )


class NamedCluster(KubeconfigModel):
    name: str
    cluster: Cluster


class Context(KubeconfigModel):
    cluster: str
    user: str
    namespace: str | None = None


class NamedContext(KubeconfigModel):
    name: str
    context: Context


class User(KubeconfigModel):
    client_certificate_data: str | None = Field(default=None, alias="client-certificate-data")
    client_key_data: str | None = Field(default=None, alias="client-key-data")
    token: str | None = None


class NamedUser(KubeconfigModel):
    name: str
    user: User


class KubeConfig(KubeconfigModel):
    api_version: str = Field(default="v1", alias="apiVersion")
    kind: str = "Config"
    current_context: str = Field(default="", alias="current-context")
    clusters: list[NamedCluster] = Field(default_factory=list)
    contexts: list[NamedContext] = Field(default_factory=list)
    users: list[NamedUser] = Field(default_factory=list)


# ── Transport Encoding ───────────────────────────────────────────────────


def encode_transport(data: bytes) -> str:
    """Encode bytes as standard base64 text for embedding in JSON."""
    return base64.b64encode(data).decode()


def decode_transport(encoded: str) -> bytes:
    """Decode standard base64 text produced by ``encode_transport``."""
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CredentialIOError(f"Kubeconfig is not valid base64: {e}") from e


def decode_data_field(value: str | None) -> bytes | None:
    """Decode a kubeconfig ``*-data`` field (base64 PEM) to raw bytes."""
    if not value:
        return None
    try:
        return base64.b64decode(value)
    except (binascii.Error, ValueError) as e:
        raise CredentialAssemblyError(f"Kubeconfig data field is not valid base64: {e}") from e


# ── Parsing and Staging ──────────────────────────────────────────────────


def parse_kubeconfig(data: bytes) -> KubeConfig:
    """Parse kubeconfig YAML."""
    try:
        document = yaml.safe_load(data)
    except yaml.YAMLError as e:
        raise CredentialIOError(f"Kubeconfig is not valid YAML: {e}") from e

    if not isinstance(document, dict):
        raise CredentialAssemblyError("Kubeconfig must be a YAML mapping")

    try:
        return KubeConfig.model_validate(document)
    except PydanticValidationError as e:
        raise CredentialAssemblyError(
            f"Kubeconfig is malformed: {e.error_count()} invalid field(s)"
        ) from e


def write_kubeconfig_file(encoded: str, path: Path) -> Path:
    """Decode a base64 kubeconfig and write it to ``path``, creating the directory."""
    content = decode_transport(encoded)
    try:
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        path.write_bytes(content)
        path.chmod(0o600)
    except OSError as e:
        logger.error("Failed to write kubeconfig", path=str(path), error=str(e))
        raise CredentialIOError(f"Failed to write kubeconfig: {e.strerror or e}") from e
    return path


def read_kubeconfig_file(path: Path) -> KubeConfig:
    """Read and parse the kubeconfig at ``path``."""
    try:
        data = path.read_bytes()
    except OSError as e:
        logger.error("Failed to read kubeconfig", path=str(path), error=str(e))
        raise CredentialIOError(f"Failed to read kubeconfig: {e.strerror or e}") from e
    return parse_kubeconfig(data)


def load_admin_kubeconfig(encoded: str, directory: Path, name: str) -> KubeConfig:
    """Stage the request's admin kubeconfig under ``directory``, parse it, then remove it."""
    path = directory / f"{name}.kubeconfig"
    write_kubeconfig_file(encoded, path)
    try:
        return read_kubeconfig_file(path)
    finally:
        path.unlink(missing_ok=True)


# ── Assembly ─────────────────────────────────────────────────────────────


def validate_admin_credential(admin: KubeConfig) -> tuple[NamedCluster, NamedContext]:
    """Return the cluster and context entries used for assembly.

    Raises CredentialAssemblyError when either list is empty.
    """
    if not admin.clusters:
        raise CredentialAssemblyError("Admin kubeconfig has no cluster entries")
    if not admin.contexts:
        raise CredentialAssemblyError("Admin kubeconfig has no context entries")
    return admin.clusters[0], admin.contexts[0]


def assemble(admin: KubeConfig, certificate: bytes, key: bytes, user: str) -> KubeConfig:
    """Build a single-user kubeconfig for ``user`` from the admin kubeconfig.

    Args:
        admin: Parsed admin kubeconfig; never modified.
        certificate: PEM certificate issued by the authority.
        key: PEM private key the certificate was requested for.
        user: Name used for the context, the user entry and current-context.
    """
    admin_cluster, _ = validate_admin_credential(admin)

    cluster = NamedCluster(
        name=admin_cluster.name,
        cluster=Cluster(
            server=admin_cluster.cluster.server,
            certificate_authority_data=admin_cluster.cluster.certificate_authority_data,
            insecure_skip_tls_verify=admin_cluster.cluster.insecure_skip_tls_verify,
        ),
    )
    context = NamedContext(
        name=user,
        context=Context(cluster=cluster.name, user=user),
    )
    user_entry = NamedUser(
        name=user,
        user=User(
            client_certificate_data=encode_transport(certificate),
            client_key_data=encode_transport(key),
        ),
    )

    return KubeConfig(
        current_context=user,
        clusters=[cluster],
        contexts=[context],
        users=[user_entry],
    )


def serialize_kubeconfig(kubeconfig: KubeConfig) -> str:
    """Serialize to kubeconfig YAML, field order as kubectl writes it."""
    document = kubeconfig.model_dump(by_alias=True, exclude_none=True, mode="json")
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def encode_kubeconfig(kubeconfig: KubeConfig) -> str:
    """Serialize and base64-encode a kubeconfig for the JSON response."""
    return encode_transport(serialize_kubeconfig(kubeconfig).encode())


def decode_kubeconfig(encoded: str) -> KubeConfig:
    """Inverse of ``encode_kubeconfig``."""
    return parse_kubeconfig(decode_transport(encoded))
