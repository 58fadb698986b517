"""
Network Topology
================
VPC across two AZs with a single NAT gateway, plus the two security-group
policies that carve it into tiers:

  compute tier  ← 80, 443 from anywhere
  data tier     ← 5432 from the compute tier's group, and from one admin /32

The database instance is publicly addressable (kept for operator access and
disaster recovery), so the data-tier group is the only thing keeping 5432
off the public internet. Do not widen it.
"""
from __future__ import annotations

import ipaddress
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, model_validator

from automall.errors import ConfigurationError
from automall.graph import Ref, Resource, ResourceGraph, ResourceKind

ANY_IPV4 = "0.0.0.0/0"
POSTGRES_PORT = 5432


class IngressRule(BaseModel):
    """Exactly one of `cidr` / `source_group` names the peer."""
    model_config = ConfigDict(frozen=True)

    port: int = Field(gt=0, le=65535)
    protocol: str = "tcp"
    cidr: str | None = None
    source_group: Ref | None = None
    description: str = ""

    @model_validator(mode="after")
    def _one_peer(self) -> "IngressRule":
        if (self.cidr is None) == (self.source_group is None):
            raise ValueError("ingress rule needs exactly one of cidr or source_group")
        return self

    def as_properties(self) -> dict:
        # Not model_dump(): the source_group Ref must survive as a reference
        return {
            "port": self.port,
            "protocol": self.protocol,
            "cidr": self.cidr,
            "source_group_id": self.source_group,
            "description": self.description,
        }


class NetworkSpec(BaseModel):
    cidr_block: str = "10.0.0.0/16"
    max_azs: int = Field(default=2, ge=1, le=2)
    nat_gateways: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _nat_within_azs(self) -> "NetworkSpec":
        if self.nat_gateways > self.max_azs:
            raise ValueError("cannot place more NAT gateways than availability zones")
        return self


@dataclass(frozen=True)
class NetworkTopology:
    network: Resource
    compute_group: Resource
    data_group: Resource


def normalize_admin_cidr(value: str) -> str:
    """Accept '1.2.3.4' or '1.2.3.4/32'; anything wider than one host is refused."""
    try:
        net = ipaddress.ip_network(value.strip(), strict=True)
    except ValueError as e:
        raise ConfigurationError(f"ADMIN_CIDR {value!r} is not a valid address") from e
    if net.version != 4 or net.prefixlen != 32:
        raise ConfigurationError(f"ADMIN_CIDR {value!r} must be a single IPv4 host (/32)")
    return str(net)


def compute_tier_ingress() -> list[IngressRule]:
    return [
        IngressRule(port=80, cidr=ANY_IPV4, description="Allow inbound HTTP traffic"),
        IngressRule(port=443, cidr=ANY_IPV4, description="Allow inbound HTTPS traffic"),
    ]


def data_tier_ingress(compute_group_id: Ref, admin_cidr: str) -> list[IngressRule]:
    return [
        IngressRule(
            port=POSTGRES_PORT,
            source_group=compute_group_id,
            description="Allow PostgreSQL access from ECS",
        ),
        IngressRule(
            port=POSTGRES_PORT,
            cidr=normalize_admin_cidr(admin_cidr),
            description="Allow PostgreSQL access from administrative address",
        ),
    ]


class NetworkTopologyBuilder:
    def __init__(self, graph: ResourceGraph, prefix: str):
        self._graph = graph
        self._prefix = prefix

    def build(self, admin_cidr: str, spec: NetworkSpec | None = None) -> NetworkTopology:
        spec = spec or NetworkSpec()

        network = self._graph.add_node(Resource(
            id="network",
            kind=ResourceKind.NETWORK,
            name=f"{self._prefix}-vpc",
            properties=spec.model_dump(),
        ))

        compute_group = self._security_group(
            "compute-sg",
            f"{self._prefix}-ecs-sg",
            network,
            "Security group for ECS Fargate service",
            compute_tier_ingress(),
        )
        data_group = self._security_group(
            "data-sg",
            f"{self._prefix}-db-sg",
            network,
            "Security group for RDS instance",
            data_tier_ingress(compute_group.ref("group_id"), admin_cidr),
        )
        return NetworkTopology(network, compute_group, data_group)

    def _security_group(
        self,
        resource_id: str,
        name: str,
        network: Resource,
        description: str,
        rules: list[IngressRule],
    ) -> Resource:
        return self._graph.add_node(Resource(
            id=resource_id,
            kind=ResourceKind.SECURITY_GROUP,
            name=name,
            properties={
                "vpc_id": network.ref("vpc_id"),
                "description": description,
                "allow_all_outbound": True,
                "ingress": [rule.as_properties() for rule in rules],
            },
        ))
