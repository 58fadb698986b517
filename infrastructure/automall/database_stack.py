"""
Managed PostgreSQL
==================
Single RDS instance for the application. Fixed policy for this topology:

  - Postgres 16 on db.t3.medium, single-AZ
  - 20 GiB gp2 storage
  - publicly addressable, reachable only through the data-tier security group
  - no deletion protection, destroyed with the stack (no final snapshot)

The endpoint is a runtime attribute. Consumers take endpoint_ref() and let
the Provisioner resolve it; endpoint_address() is only valid after apply.
"""
from __future__ import annotations

from automall.backend import LiveState
from automall.errors import DependencyNotReadyError
from automall.graph import Ref, Resource, ResourceGraph, ResourceKind
from automall.network_stack import POSTGRES_PORT

INITIAL_DATABASE_NAME = "automall"


class DatabaseProvisioner:
    def __init__(self, graph: ResourceGraph, state: LiveState, prefix: str):
        self._graph = graph
        self._state = state
        self._prefix = prefix

    def create(self, network: Resource, data_group: Resource, credentials: Resource) -> Resource:
        return self._graph.add_node(Resource(
            id="database",
            kind=ResourceKind.DATABASE,
            name=f"{self._prefix}-rds",
            properties={
                "engine": "postgres",
                "engine_version": "16",
                "instance_class": "db.t3.medium",
                "database_name": INITIAL_DATABASE_NAME,
                "subnet_ids": network.ref("public_subnet_ids"),
                "security_group_ids": [data_group.ref("group_id")],
                "credentials_secret_arn": credentials.ref("arn"),
                "allocated_storage": 20,
                "storage_type": "gp2",
                "multi_az": False,
                "publicly_accessible": True,
                "deletion_protection": False,
                "removal_policy": "destroy",
                "port": POSTGRES_PORT,
            },
        ))

    def endpoint_ref(self, database: Resource) -> Ref:
        return database.ref("endpoint_address")

    def endpoint_address(self, database: Resource) -> str:
        if not self._state.is_ready(database.id):
            raise DependencyNotReadyError(
                f"Database {database.name!r} is not available yet"
            )
        return self._state.require(database.id, "endpoint_address")
