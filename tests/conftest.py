"""
Pytest configuration and shared fixtures.
Unit tests run against the in-memory backend.
Integration tests run the boto3 backend against moto (AWS mocks in-process).
"""
import pytest

from automall.backend import InMemoryBackend
from automall.graph import ResourceKind

HOSTED_ZONE_ID = "Z0123456789ABCDEFGHIJ"
CERTIFICATE_ARN = "arn:aws:acm:us-east-1:123456789012:certificate/0b5c6a1e-7d1f-4c5e-9a53-2f0c8d6e4b11"
ECR_REPO = "123456789012.dkr.ecr.us-east-1.amazonaws.com/automall-web"


@pytest.fixture(autouse=True)
def aws_env(monkeypatch):
    """Set fake AWS credentials so boto3 doesn't error in tests."""
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "test")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "test")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "test")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "test")


@pytest.fixture
def app_environ():
    """A complete deployment environment for the prod stack."""
    return {
        "ENVIRONMENT": "prod",
        "AWS_REGION": "us-east-1",
        "RL_API_KEY": "rl-key-123",
        "RL_USERNAME": "automall-bot",
        "RL_BASE_API_URL": "https://api.example.com",
        "POSTGRES_DB": "automall",
        "GOOGLE_MAPS_API_KEY": "maps-key-456",
        "OPENAI_API_KEY": "sk-test-789",
        "SESSION_SECRET": "session-secret-abc",
        "ADMIN_CIDR": "203.0.113.10/32",
        "HOSTED_ZONE_ID": HOSTED_ZONE_ID,
        "CERTIFICATE_ARN": CERTIFICATE_ARN,
        "ECR_REPO": ECR_REPO,
    }


@pytest.fixture
def version_file(tmp_path):
    path = tmp_path / "version.txt"
    path.write_text("1.4.2\n")
    return path


@pytest.fixture
def backend():
    """In-memory backend that already knows the zone, certificate and repository."""
    b = InMemoryBackend()
    b.register(
        ResourceKind.HOSTED_ZONE, HOSTED_ZONE_ID,
        zone_id=HOSTED_ZONE_ID, zone_name="everysinglecar.com",
    )
    b.register(ResourceKind.CERTIFICATE, CERTIFICATE_ARN, arn=CERTIFICATE_ARN)
    b.register(ResourceKind.CONTAINER_REPOSITORY, "automall-web", name="automall-web")
    return b
