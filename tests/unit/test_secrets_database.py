"""
Unit tests for database credentials and the database instance.
"""
import pytest

from automall.backend import InMemoryBackend, LiveState, Provisioner
from automall.database_stack import DatabaseProvisioner
from automall.errors import DependencyNotReadyError, SecretNotReadyError
from automall.graph import ResourceGraph
from automall.network_stack import NetworkTopologyBuilder
from automall.secrets_stack import EXCLUDED_CHARACTERS, SecretCredentialProvider


@pytest.fixture
def credentials():
    graph = ResourceGraph()
    state = LiveState()
    provider = SecretCredentialProvider(graph, state, "automall-test")
    secret = provider.create("automall")
    return graph, state, provider, secret


def test_secret_read_before_creation_is_not_ready(credentials):
    _, _, provider, secret = credentials
    with pytest.raises(SecretNotReadyError):
        provider.read_password(secret)


def test_generated_password_avoids_excluded_characters(credentials):
    graph, state, provider, secret = credentials
    Provisioner(InMemoryBackend(), state, secret_reader=provider.resolve).apply(graph)

    password = provider.read_password(secret)
    assert len(password) == 32
    assert not set(password) & set(EXCLUDED_CHARACTERS)
    assert provider.read_username(secret) == "automall"


def test_unknown_secret_field_is_not_ready(credentials):
    graph, state, provider, secret = credentials
    Provisioner(InMemoryBackend(), state, secret_reader=provider.resolve).apply(graph)

    with pytest.raises(SecretNotReadyError, match="no field"):
        provider.read_secret_field(secret, "port")


def test_secret_name_follows_prefix(credentials):
    _, _, _, secret = credentials
    assert secret.name == "automall-test-RdsDbCredentials"
    assert "password" not in secret.properties["secret_string_template"]


def _database_graph():
    graph = ResourceGraph()
    state = LiveState()
    topology = NetworkTopologyBuilder(graph, "automall-test").build(admin_cidr="203.0.113.10")
    provider = SecretCredentialProvider(graph, state, "automall-test")
    secret = provider.create("automall")
    databases = DatabaseProvisioner(graph, state, "automall-test")
    database = databases.create(topology.network, topology.data_group, secret)
    return graph, state, provider, databases, database


def test_database_waits_for_secret_and_data_tier():
    graph, *_ = _database_graph()
    assert set(graph.dependencies("database")) == {"network", "data-sg", "db-credentials"}


def test_database_policy():
    *_, database = _database_graph()
    props = database.properties

    assert database.name == "automall-test-rds"
    assert props["engine"] == "postgres"
    assert props["engine_version"] == "16"
    assert props["instance_class"] == "db.t3.medium"
    assert props["allocated_storage"] == 20
    assert props["storage_type"] == "gp2"
    assert props["publicly_accessible"] is True
    assert props["deletion_protection"] is False
    assert props["multi_az"] is False


def test_endpoint_unavailable_until_applied():
    graph, state, provider, databases, database = _database_graph()

    with pytest.raises(DependencyNotReadyError):
        databases.endpoint_address(database)

    Provisioner(InMemoryBackend(), state, secret_reader=provider.resolve).apply(graph)
    assert databases.endpoint_address(database).endswith(".rds.amazonaws.com")
