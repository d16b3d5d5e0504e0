"""
Configuration management for the kubecsr API server.

Non-secret configuration loaded from YAML file, secrets from environment variables.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_FILE = "/etc/kubecsr/config.yaml"


def yaml_config_settings_source() -> dict[str, Any]:
    """Load configuration from YAML file."""
    config_path = Path(os.environ.get("KUBECSR_CONFIG_FILE", DEFAULT_CONFIG_FILE))
    if config_path.exists():
        with open(config_path) as f:
            return yaml.safe_load(f) or {}
    return {}


class PollingConfig(BaseModel):
    """How long to wait for the authority to sign an approved request."""

    interval_seconds: float = Field(
        default=0.1, gt=0, description="Fixed delay between certificate status reads"
    )
    max_attempts: int = Field(
        default=5, ge=1, description="Number of status reads before giving up"
    )


class AuthorityConfig(BaseModel):
    """Certificate authority (Kubernetes CSR API) configuration."""

    signer_name: str = Field(
        default="kubernetes.io/kube-apiserver-client",
        description="signerName set on every CertificateSigningRequest",
    )
    usages: list[str] = Field(
        default=["client auth"],
        description="Key usages requested for issued certificates",
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Upper bound for a single call to the authority",
    )
    approval_reason: str = Field(default="KubeCSRApprove")
    approval_message: str = Field(default="Automatically approved by kubecsr")
    default_expiration_seconds: int | None = Field(
        default=None,
        ge=600,
        description="Certificate lifetime when the request does not set one (None = signer default)",
    )


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="KUBECSR_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="kubecsr")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True, description="JSON logging in production")

    # Server
    host: str = Field(default="localhost")
    port: int = Field(default=443)
    tls_cert_file: Path | None = Field(
        default=Path("localhost.crt"),
        description="Serving certificate. TLS is disabled when unset.",
    )
    tls_key_file: Path | None = Field(default=Path("localhost.key"))

    # Shared API token. Generated at startup and logged when not set.
    api_token: str | None = Field(
        default=None,
        description="Bearer token required on API requests. Set via KUBECSR_API_TOKEN env var.",
    )

    # Admin kubeconfigs are staged here for the lifetime of one request
    kubeconfig_dir: Path = Field(
        default=Path.home() / ".kube",
        description="Directory for per-request admin kubeconfig files",
    )

    # Authority
    authority: AuthorityConfig = Field(default_factory=AuthorityConfig)

    # Certificate polling
    polling: PollingConfig = Field(default_factory=PollingConfig)

    # API
    api_prefix: str = Field(default="")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Customize settings sources: env vars override YAML config."""
        return (
            init_settings,
            env_settings,
            yaml_config_settings_source,
            dotenv_settings,
            file_secret_settings,
        )


# Global settings instance
settings = Settings()
