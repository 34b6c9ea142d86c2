"""
Configuration module for the Port Forwarding Operator.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_ANNOTATION_PREFIX = "port-forwarding.lylefranklin.com"

SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"


@dataclass
class RouterConfig:
    """UniFi controller connection configuration."""

    url: str = "https://unifi:8443"
    username: str = "admin"
    password: str = field(default="", repr=False)  # Never log password
    default_site: str = "default"
    site_option: str = "site"
    verify_ssl: bool = True
    timeout: int = 30

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("UNIFI_PASSWORD", "")
        if not password:
            raise ValueError(
                "UNIFI_PASSWORD environment variable must be set. "
                "Router password cannot be empty."
            )

        return cls(
            url=os.getenv("UNIFI_URL", "https://unifi:8443"),
            username=os.getenv("UNIFI_USERNAME", "admin"),
            password=password,
            default_site=os.getenv("UNIFI_DEFAULT_SITE", "default"),
            site_option=os.getenv("UNIFI_SITE_OPTION", "site"),
            verify_ssl=os.getenv("UNIFI_VERIFY_SSL", "true").lower() == "true",
            timeout=int(os.getenv("UNIFI_TIMEOUT", "30")),
        )


@dataclass
class ForwardingConfig:
    """Rule naming configuration."""

    # Marks rules owned by this installation
    rule_prefix: str = "k8s-"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(rule_prefix=os.getenv("RULE_PREFIX", "k8s-"))


@dataclass
class AnnotationConfig:
    """Service annotation keys recognised by the controller."""

    prefix: str = DEFAULT_ANNOTATION_PREFIX

    @property
    def enable_key(self) -> str:
        return f"{self.prefix}/enable"

    @property
    def finalizer(self) -> str:
        return f"finalizer.{self.prefix}/v1"

    @property
    def applied_key(self) -> str:
        # Outside "<prefix>/" so it is never read back as an option
        return f"applied.{self.prefix}/addresses"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(prefix=os.getenv("ANNOTATION_PREFIX", DEFAULT_ANNOTATION_PREFIX))


@dataclass
class ControllerConfig:
    """Controller reconciliation loop configuration."""

    reconcile_interval: int = 60  # seconds
    max_concurrent_reconciles: int = 5
    log_level: str = "INFO"

    # Exponential backoff configuration for failed services
    backoff_base_delay: int = 10  # base delay in seconds
    backoff_max_delay: int = 600  # max delay in seconds (10 minutes)
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            reconcile_interval=int(os.getenv("RECONCILE_INTERVAL", "60")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            backoff_base_delay=int(os.getenv("BACKOFF_BASE_DELAY", "10")),
            backoff_max_delay=int(os.getenv("BACKOFF_MAX_DELAY", "600")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class KubernetesConfig:
    """Kubernetes API access configuration (in-cluster by default)."""

    api_url: str = "https://kubernetes.default.svc"
    token_path: str = f"{SERVICE_ACCOUNT_DIR}/token"
    ca_path: str = f"{SERVICE_ACCOUNT_DIR}/ca.crt"
    # Empty = watch services in all namespaces
    namespace: str = ""

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        host = os.getenv("KUBERNETES_SERVICE_HOST")
        port = os.getenv("KUBERNETES_SERVICE_PORT", "443")
        default_url = (
            f"https://{host}:{port}" if host else "https://kubernetes.default.svc"
        )
        return cls(
            api_url=os.getenv("KUBERNETES_API_URL", default_url),
            token_path=os.getenv("KUBERNETES_TOKEN_PATH", f"{SERVICE_ACCOUNT_DIR}/token"),
            ca_path=os.getenv("KUBERNETES_CA_PATH", f"{SERVICE_ACCOUNT_DIR}/ca.crt"),
            namespace=os.getenv("KUBERNETES_NAMESPACE", ""),
        )


@dataclass
class Config:
    """Main configuration object."""

    router: RouterConfig
    forwarding: ForwardingConfig
    annotations: AnnotationConfig
    controller: ControllerConfig
    kubernetes: KubernetesConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            router=RouterConfig.from_env(),
            forwarding=ForwardingConfig.from_env(),
            annotations=AnnotationConfig.from_env(),
            controller=ControllerConfig.from_env(),
            kubernetes=KubernetesConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            router=RouterConfig(),
            forwarding=ForwardingConfig(),
            annotations=AnnotationConfig(),
            controller=ControllerConfig(),
            kubernetes=KubernetesConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
