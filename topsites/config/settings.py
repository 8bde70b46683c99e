"""Configuration management for topsites-proxy."""

from pathlib import Path
from typing import List, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration settings for the proxy service."""

    model_config = SettingsConfigDict(
        env_prefix="TOPSITES_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Server settings
    host: str = Field(
        default="127.0.0.1",
        description="Interface to bind to"
    )
    port: int = Field(
        default=8000,
        description="Port to listen on",
        validation_alias=AliasChoices("TOPSITES_PORT", "PORT"),
    )
    env: str = Field(
        default="production",
        description="Deployment environment; values starting with 'dev' enable /test",
        validation_alias=AliasChoices("TOPSITES_ENV", "NODE_ENV"),
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)"
    )

    # Campaign settings
    campaigns_file: Optional[str] = Field(
        default=None,
        description="Path to campaign YAML file (None = use bundled campaigns.yaml)"
    )
    version_file: str = Field(
        default="version.json",
        description="Path to the Dockerflow version.json file"
    )

    # Forwarding settings
    proxy_timeout: Optional[float] = Field(
        default=None,
        description="Seconds before an outbound request is aborted (None = no timeout)"
    )
    forward_headers: List[str] = Field(
        default_factory=lambda: ["accept", "content-type", "content-length", "cookie"],
        description="Inbound headers relayed to the upstream target"
    )

    # Client TLS material for https targets
    tls_cert: Optional[str] = Field(default=None, description="Client certificate (PEM file)")
    tls_key: Optional[str] = Field(default=None, description="Client private key (PEM file)")
    tls_passphrase: Optional[str] = Field(default=None, description="Passphrase for the private key")
    tls_ca: Optional[str] = Field(default=None, description="CA bundle used to verify targets")
    tls_ciphers: Optional[str] = Field(default=None, description="OpenSSL cipher list")
    tls_secure_protocol: Optional[str] = Field(
        default=None,
        description="Pin the TLS version, e.g. 'TLSv1_2' or 'TLSv1_3'"
    )

    @classmethod
    def load_from_file(cls, config_file: str) -> "Settings":
        """Load settings from a YAML config file.

        Args:
            config_file: Path to YAML config file

        Returns:
            Settings instance
        """
        import yaml

        with open(config_file, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    def is_dev(self) -> bool:
        return self.env.lower().startswith("dev")

    def get_version_path(self) -> Path:
        return Path(self.version_file).expanduser()
