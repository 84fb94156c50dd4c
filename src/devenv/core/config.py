from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
import os

from devenv.core.errors import ConfigurationError


class Settings(BaseSettings):
    # App/Env
    ENV: str = "dev"
    APP_NAME: str = "devenv"
    TOPOLOGY_NAME: str = "devenv"

    # Manifests
    TOPOLOGY_MANIFEST: str = "config/topology.yaml"
    ALLOWLIST_MANIFEST: str = "config/allowlist.yaml"
    RESOURCES_MANIFEST: str = "config/resources.yaml"
    CHECKS_MANIFEST: str = "config/checks.yaml"

    # Launcher
    DEVENV_NETWORK: str = "devenv"
    DEVENV_STARTUP_DEADLINE_SEC: float = 300.0

    # Validator
    DEVENV_CHECK_TIMEOUT_SEC: float = 5.0

    # Firewall
    FIREWALL_CHAIN: str = "DEVENV-EGRESS"
    FIREWALL_REFRESH_SEC: float = 300.0
    # comma list of resolver IPs that stay reachable on 53/udp+tcp ("" = read /etc/resolv.conf)
    FIREWALL_DNS_SERVERS: str = ""
    # container whose network namespace is filtered ("" = the namespace devenv itself runs in)
    FIREWALL_TARGET: str = "workspace"

    # Cloud emulator
    DEVENV_EMULATOR_URL: Optional[str] = None
    AWS_REGION: str = "us-east-1"
    AWS_ACCESS_KEY_ID: str = "test"
    AWS_SECRET_ACCESS_KEY: str = "test"
    EMULATOR_READY_RETRIES: int = 30
    EMULATOR_READY_INTERVAL_SEC: float = 2.0

    # DB / Redis
    # checks run where devenv runs, i.e. through the published ports
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: Optional[str] = None
    POSTGRES_PASSWORD: Optional[str] = None
    POSTGRES_DB: str = "devdb"
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )


settings = Settings()


def require(name: str) -> str:
    """
    Return a required setting or environment variable.
    Settings win over raw env so `.env` values are honoured.
    """
    value = getattr(settings, name, None)
    if value in (None, ""):
        value = os.getenv(name)
    if value in (None, ""):
        raise ConfigurationError(
            f"required environment variable {name} is not set",
            code="E_MISSING_ENV",
            meta={"variable": name},
        )
    return str(value)
