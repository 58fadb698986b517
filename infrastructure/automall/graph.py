"""
Resource Graph
==============
Typed node/edge model of the stack. A node is a Resource; an edge means
"must exist before". Edges come from two places:

  1. explicit depends_on ids passed to add_node()
  2. every Ref / SecretFieldRef found anywhere in the node's properties

The second rule is what makes value flow safe: a consumer that embeds the
database endpoint cannot be ordered before the database, because the
reference itself is the edge.

Ordering is Kahn's algorithm with a heap keyed on declaration index, so ties
are broken by declaration order and the plan is identical on every run.
"""
from __future__ import annotations

import hashlib
import heapq
import json
from enum import Enum
from typing import Any, Iterable, Iterator

from pydantic import BaseModel, ConfigDict, Field

from automall.errors import CycleError, UnknownDependencyError


class ResourceKind(str, Enum):
    NETWORK = "network"
    SECURITY_GROUP = "security_group"
    SECRET = "secret"
    DATABASE = "database"
    CLUSTER = "cluster"
    ROLE = "role"
    LOG_GROUP = "log_group"
    CONTAINER_REPOSITORY = "container_repository"
    TASK_DEFINITION = "task_definition"
    SERVICE = "service"
    SCALABLE_TARGET = "scalable_target"
    SCALING_POLICY = "scaling_policy"
    LOAD_BALANCER = "load_balancer"
    TARGET_GROUP = "target_group"
    LISTENER = "listener"
    SERVICE_ATTACHMENT = "service_attachment"
    CERTIFICATE = "certificate"
    HOSTED_ZONE = "hosted_zone"
    DNS_RECORD = "dns_record"


class Ref(BaseModel):
    """A runtime attribute (endpoint, ARN, id) of another resource."""
    model_config = ConfigDict(frozen=True)

    resource_id: str
    attribute: str

    def __str__(self) -> str:
        return f"${{{self.resource_id}.{self.attribute}}}"


class SecretFieldRef(BaseModel):
    """One field of a stored secret document, read only at apply time."""
    model_config = ConfigDict(frozen=True)

    secret_id: str
    field: str

    @property
    def resource_id(self) -> str:
        return self.secret_id

    def __str__(self) -> str:
        return f"${{secret:{self.secret_id}.{self.field}}}"


class Resource(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    kind: ResourceKind
    name: str
    properties: dict[str, Any] = Field(default_factory=dict)
    imported: bool = False

    def ref(self, attribute: str) -> Ref:
        return Ref(resource_id=self.id, attribute=attribute)


def iter_references(value: Any) -> Iterator[Ref | SecretFieldRef]:
    """Yield every reference nested in a properties value."""
    if isinstance(value, (Ref, SecretFieldRef)):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def render_references(value: Any) -> Any:
    """Replace references with their ${...} placeholder text (for plans and diffs)."""
    if isinstance(value, (Ref, SecretFieldRef)):
        return str(value)
    if isinstance(value, dict):
        return {k: render_references(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_references(v) for v in value]
    return value


class ResourceGraph:
    def __init__(self):
        self._nodes: dict[str, Resource] = {}
        self._deps: dict[str, tuple[str, ...]] = {}

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, resource_id: str) -> Resource:
        return self._nodes[resource_id]

    def dependencies(self, resource_id: str) -> tuple[str, ...]:
        return self._deps[resource_id]

    def add_node(self, resource: Resource, depends_on: Iterable[str] = ()) -> Resource:
        """
        Declare a resource. Dependencies may name resources declared later;
        they are checked when the order is computed.
        """
        if resource.id in self._nodes:
            raise ValueError(f"Resource {resource.id!r} is already declared")

        deps: list[str] = []
        for dep in list(depends_on) + [r.resource_id for r in iter_references(resource.properties)]:
            if dep == resource.id:
                raise CycleError([resource.id])
            if dep not in deps:
                deps.append(dep)

        self._nodes[resource.id] = resource
        self._deps[resource.id] = tuple(deps)
        return resource

    def topological_order(self) -> list[str]:
        """
        Every id appears after all ids it depends on. Among ready nodes the
        earliest-declared goes first.
        """
        position = {rid: i for i, rid in enumerate(self._nodes)}
        dependents: dict[str, list[str]] = {rid: [] for rid in self._nodes}
        in_degree: dict[str, int] = {}

        for rid, deps in self._deps.items():
            for dep in deps:
                if dep not in self._nodes:
                    raise UnknownDependencyError(
                        f"Resource {rid!r} depends on undeclared resource {dep!r}"
                    )
                dependents[dep].append(rid)
            in_degree[rid] = len(deps)

        ready = [(position[rid], rid) for rid, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            _, rid = heapq.heappop(ready)
            order.append(rid)
            for child in dependents[rid]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    heapq.heappush(ready, (position[child], child))

        if len(order) != len(self._nodes):
            stuck = [rid for rid in self._nodes if in_degree[rid] > 0]
            raise CycleError(stuck)
        return order

    def plan(self) -> list[dict[str, Any]]:
        """JSON-serializable plan in provisioning order."""
        return [
            {
                "id": rid,
                "kind": self._nodes[rid].kind.value,
                "name": self._nodes[rid].name,
                "imported": self._nodes[rid].imported,
                "depends_on": list(self._deps[rid]),
                "properties": render_references(self._nodes[rid].properties),
            }
            for rid in self.topological_order()
        ]

    def fingerprint(self) -> str:
        payload = json.dumps(self.plan(), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()
