"""
DNS Bindings
============
Public hostnames live in a pre-existing Route 53 zone. The apex is an alias
record straight to the load balancer (no TTL to manage, it follows the ALB's
addresses); "www" is a CNAME to the apex.
"""
from __future__ import annotations

from automall.errors import ConfigurationError
from automall.graph import Resource, ResourceGraph, ResourceKind

CNAME_TTL_SECONDS = 1800


class DnsBinder:
    def __init__(self, graph: ResourceGraph, prefix: str):
        self._graph = graph
        self._prefix = prefix

    def import_zone(self, zone_id: str, zone_name: str) -> Resource:
        return self._graph.add_node(Resource(
            id="hosted-zone",
            kind=ResourceKind.HOSTED_ZONE,
            name=zone_id,
            properties={"zone_name": zone_name.rstrip(".")},
            imported=True,
        ))

    def bind_alias(self, zone: Resource, record_name: str, load_balancer: Resource) -> Resource:
        record_name = self._in_zone(zone, record_name)
        return self._graph.add_node(Resource(
            id="alias-record",
            kind=ResourceKind.DNS_RECORD,
            name=f"{self._prefix}-alias-record",
            properties={
                "zone_id": zone.ref("zone_id"),
                "record_name": record_name,
                "type": "A",
                "alias": {
                    "dns_name": load_balancer.ref("dns_name"),
                    "hosted_zone_id": load_balancer.ref("canonical_hosted_zone_id"),
                    "evaluate_target_health": False,
                },
            },
        ))

    def bind_cname(self, zone: Resource, record_name: str, target: str) -> Resource:
        record_name = self._in_zone(zone, record_name)
        return self._graph.add_node(Resource(
            id="www-record",
            kind=ResourceKind.DNS_RECORD,
            name=f"{self._prefix}-www-record",
            properties={
                "zone_id": zone.ref("zone_id"),
                "record_name": record_name,
                "type": "CNAME",
                "ttl": CNAME_TTL_SECONDS,
                "values": [target],
            },
        ))

    @staticmethod
    def _in_zone(zone: Resource, record_name: str) -> str:
        zone_name = zone.properties["zone_name"]
        name = record_name.rstrip(".")
        if name != zone_name and not name.endswith(f".{zone_name}"):
            raise ConfigurationError(f"Record {name!r} is outside hosted zone {zone_name!r}")
        return name
