"""
Deployment Configuration
========================
All external inputs are read exactly once, at workflow start, into an immutable
AppConfig. Components receive the struct; nothing below this module touches
os.environ.

Validation order matters: every required variable is checked before a single
backend call is issued, so a missing key never leaves a half-built stack.
"""
from __future__ import annotations

from pathlib import Path
from typing import Mapping

from pydantic import BaseModel, ConfigDict

from automall.errors import ConfigurationError

DEFAULT_ENVIRONMENT = "dev"
DEFAULT_REGION = "us-east-1"
DEFAULT_DOMAIN = "everysinglecar.com"
DEFAULT_REPOSITORY_NAME = "automall-web"

# env var → AppConfig field
REQUIRED_VARIABLES = {
    "RL_API_KEY": "rl_api_key",
    "RL_USERNAME": "rl_username",
    "RL_BASE_API_URL": "rl_base_api_url",
    "POSTGRES_DB": "postgres_db",
    "GOOGLE_MAPS_API_KEY": "google_maps_api_key",
    "OPENAI_API_KEY": "openai_api_key",
    "SESSION_SECRET": "session_secret",
    "ADMIN_CIDR": "admin_cidr",
    "HOSTED_ZONE_ID": "hosted_zone_id",
    "CERTIFICATE_ARN": "certificate_arn",
}

OPTIONAL_VARIABLES = {
    "ECR_REPO": "ecr_repo",
    "AWS_ACCOUNT_ID": "account_id",
}


class AppConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    environment: str = DEFAULT_ENVIRONMENT
    region: str = DEFAULT_REGION
    account_id: str | None = None
    domain_name: str = DEFAULT_DOMAIN

    rl_api_key: str
    rl_username: str
    rl_base_api_url: str
    postgres_db: str
    google_maps_api_key: str
    openai_api_key: str
    session_secret: str

    admin_cidr: str
    hosted_zone_id: str
    certificate_arn: str

    ecr_repo: str | None = None

    @property
    def prefix(self) -> str:
        return f"automall-{self.environment}"

    @property
    def image_locator(self) -> str:
        """ECR_REPO when supplied, otherwise the account/region default repository."""
        if self.ecr_repo:
            return self.ecr_repo
        if not self.account_id:
            raise ConfigurationError(
                "AWS_ACCOUNT_ID is required when ECR_REPO is not set"
            )
        return (
            f"{self.account_id}.dkr.ecr.{self.region}.amazonaws.com/"
            f"{DEFAULT_REPOSITORY_NAME}"
        )

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str],
        environment: str | None = None,
    ) -> "AppConfig":
        """
        Build the config from an environment mapping.

        `environment` (e.g. a CLI flag) wins over the ENVIRONMENT variable.
        Raises ConfigurationError naming the first missing required variable.
        """
        values: dict[str, str] = {}
        for var, field in REQUIRED_VARIABLES.items():
            value = (environ.get(var) or "").strip()
            if not value:
                raise ConfigurationError(f"{var} is required")
            values[field] = value

        for var, field in OPTIONAL_VARIABLES.items():
            value = (environ.get(var) or "").strip()
            if value:
                values[field] = value

        values["environment"] = (
            environment or environ.get("ENVIRONMENT") or DEFAULT_ENVIRONMENT
        )
        values["region"] = (
            environ.get("AWS_REGION") or environ.get("AWS_DEFAULT_REGION") or DEFAULT_REGION
        )
        values["domain_name"] = environ.get("DOMAIN_NAME") or DEFAULT_DOMAIN
        return cls(**values)


def read_version(path: str | Path = "version.txt") -> str:
    """Image tag to deploy, from the local version file."""
    try:
        token = Path(path).read_text(encoding="utf-8").strip()
    except FileNotFoundError as e:
        raise ConfigurationError(f"Version file {str(path)!r} not found") from e
    if not token:
        raise ConfigurationError(f"Version file {str(path)!r} is empty")
    return token
