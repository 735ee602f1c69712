"""Operator configuration, loaded from the environment."""

from typing import Optional

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DirectoryConfig(BaseModel):
    """Where and how to query the LDAP directory."""

    host: str
    port: int = 389
    use_ssl: bool = False
    bind_dn: str
    bind_password: SecretStr
    search_base: str
    object_class: str = "inetOrgPerson"
    key_attribute: str = "uid"
    page_size: int = Field(default=500, ge=1)
    connect_timeout_seconds: int = 10
    receive_timeout_seconds: int = 30

    @property
    def object_class_filter(self) -> str:
        return f"(objectClass={self.object_class})"


class RegistryConfig(BaseModel):
    """Where identity records live in the cluster."""

    namespace: str = "ldap-space"
    group: str = "ldap.gopkg.blog"
    version: str = "v1alpha1"
    plural: str = "ldapusers"
    in_cluster: bool = True
    kubeconfig: Optional[str] = None
    request_timeout_seconds: int = 30
    workload_image: str = "busybox"


class ControllerConfig(BaseModel):
    """Work queue and resync behaviour."""

    workers: int = Field(default=4, ge=1)
    resync_interval_seconds: float = 300
    base_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 300.0


class OperatorSettings(BaseSettings):
    """
    Top-level settings.

    Read from LDAP_OPERATOR_* environment variables, nested with "__", e.g.
    LDAP_OPERATOR_DIRECTORY__HOST or LDAP_OPERATOR_REGISTRY__NAMESPACE.
    """

    model_config = SettingsConfigDict(
        env_prefix="LDAP_OPERATOR_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    directory: DirectoryConfig
    registry: RegistryConfig = RegistryConfig()
    controller: ControllerConfig = ControllerConfig()
    history_db_path: str = ":memory:"
    log_level: str = "INFO"
    http_host: str = "0.0.0.0"
    http_port: int = 8080
