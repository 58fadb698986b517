"""
Resource Backend + Provisioner
==============================
The backend is the control plane: given a kind, a physical name and fully
resolved properties it creates, updates in place, or leaves a resource alone,
and returns the live attributes. The Provisioner is the only caller.

Contract every backend honours:
  - identity is (kind, name), so re-running after an interruption finds what
    already exists instead of creating a duplicate
  - ensure() returns only once the resource is ready for its consumers
  - failures surface as BackendError with the backend's own diagnostic

The Provisioner walks the graph in topological order and resolves references
at the last possible moment, right before the consuming resource is sent to
the backend. A value resolved earlier could be stale or missing.
"""
from __future__ import annotations

import abc
import secrets
import string
from dataclasses import dataclass, field
from typing import Any, Callable

from automall.errors import BackendError, DependencyNotReadyError, ZoneNotFoundError
from automall.graph import (
    Ref,
    ResourceGraph,
    ResourceKind,
    SecretFieldRef,
    iter_references,
)
from automall.logger import get_logger

logger = get_logger(__name__)


@dataclass
class Applied:
    action: str  # created | updated | unchanged
    attributes: dict[str, Any]


class ResourceBackend(abc.ABC):
    @abc.abstractmethod
    def find(self, kind: ResourceKind, name: str, properties: dict) -> dict | None:
        """Live attributes of an existing resource, or None."""

    @abc.abstractmethod
    def ensure(self, kind: ResourceKind, name: str, properties: dict) -> Applied:
        """Converge one resource to `properties` and wait until it is ready."""

    @abc.abstractmethod
    def read_secret(self, secret_arn: str) -> dict[str, str]:
        """The stored JSON document of a secret."""

    @abc.abstractmethod
    def delete(self, kind: ResourceKind, name: str, attributes: dict, properties: dict) -> None:
        """Remove a resource. Already-deleted resources are not an error."""


# ---------------------------------------------------------------------------
# Run-local state
# ---------------------------------------------------------------------------

class LiveState:
    """
    Attributes reported by the backend during one run. Never persisted: a
    re-run rebuilds it from what the backend finds.
    """

    def __init__(self):
        self.backend: ResourceBackend | None = None
        self._attributes: dict[str, dict[str, Any]] = {}

    def is_ready(self, resource_id: str) -> bool:
        return resource_id in self._attributes

    def record(self, resource_id: str, attributes: dict[str, Any]) -> None:
        self._attributes[resource_id] = dict(attributes)

    def attributes(self, resource_id: str) -> dict[str, Any]:
        if resource_id not in self._attributes:
            raise DependencyNotReadyError(f"Resource {resource_id!r} has not been created yet")
        return dict(self._attributes[resource_id])

    def require(self, resource_id: str, attribute: str) -> Any:
        attrs = self.attributes(resource_id)
        if attribute not in attrs:
            raise DependencyNotReadyError(
                f"Resource {resource_id!r} did not report attribute {attribute!r}"
            )
        return attrs[attribute]


# ---------------------------------------------------------------------------
# Provisioner
# ---------------------------------------------------------------------------

SecretReader = Callable[[SecretFieldRef], str]


class Provisioner:
    def __init__(
        self,
        backend: ResourceBackend,
        state: LiveState | None = None,
        secret_reader: SecretReader | None = None,
    ):
        self.backend = backend
        self.state = state or LiveState()
        self.state.backend = backend
        self._secret_reader = secret_reader

    def apply(self, graph: ResourceGraph) -> LiveState:
        """Create or converge every resource; the first failure aborts the run."""
        order = graph.topological_order()
        logger.info("Applying plan", extra={"resource_count": len(order)})

        for rid in order:
            resource = graph.get(rid)

            if resource.imported:
                attrs = self.backend.find(resource.kind, resource.name, self.resolve(resource.properties))
                if attrs is None:
                    if resource.kind == ResourceKind.HOSTED_ZONE:
                        raise ZoneNotFoundError(
                            f"Hosted zone {resource.name!r} does not exist", code="NoSuchHostedZone"
                        )
                    raise BackendError(
                        f"Imported {resource.kind.value} {resource.name!r} does not exist",
                        code="NotFound",
                    )
                applied = Applied("imported", attrs)
            else:
                properties = self.resolve(resource.properties)
                applied = self.backend.ensure(resource.kind, resource.name, properties)

            self.state.record(rid, applied.attributes)
            logger.info(
                "Resource ready",
                extra={
                    "resource_id": rid,
                    "kind": resource.kind.value,
                    "physical_name": resource.name,
                    "action": applied.action,
                },
            )
        return self.state

    def destroy(self, graph: ResourceGraph) -> list[str]:
        """
        Delete every non-imported resource in reverse dependency order.
        Returns the ids that were found and deleted.
        """
        order = graph.topological_order()
        found: dict[str, tuple[dict, dict]] = {}

        # Discovery pass in forward order so consumers can resolve producer attributes
        for rid in order:
            resource = graph.get(rid)
            try:
                properties = self.resolve(resource.properties)
            except DependencyNotReadyError:
                continue  # producer is gone, so this consumer cannot exist either
            attrs = self.backend.find(resource.kind, resource.name, properties)
            if attrs is None:
                continue
            self.state.record(rid, attrs)
            found[rid] = (attrs, properties)

        deleted: list[str] = []
        for rid in reversed(order):
            resource = graph.get(rid)
            if resource.imported or rid not in found:
                continue
            attrs, properties = found[rid]
            self.backend.delete(resource.kind, resource.name, attrs, properties)
            deleted.append(rid)
            logger.info(
                "Resource deleted",
                extra={"resource_id": rid, "kind": resource.kind.value, "physical_name": resource.name},
            )
        return deleted

    def resolve(self, value: Any) -> Any:
        """Substitute live values for every reference. Nothing unresolved survives."""
        resolved = self._resolve(value)
        leftover = list(iter_references(resolved))
        if leftover:
            raise DependencyNotReadyError(f"Unresolved references: {[str(r) for r in leftover]}")
        return resolved

    def _resolve(self, value: Any) -> Any:
        if isinstance(value, Ref):
            return self.state.require(value.resource_id, value.attribute)
        if isinstance(value, SecretFieldRef):
            if self._secret_reader is None:
                raise DependencyNotReadyError(f"No secret reader bound for {value}")
            return self._secret_reader(value)
        if isinstance(value, dict):
            return {k: self._resolve(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._resolve(v) for v in value]
        return value


# ---------------------------------------------------------------------------
# In-memory backend (dry runs and tests)
# ---------------------------------------------------------------------------

_PASSWORD_ALPHABET = string.ascii_letters + string.digits + string.punctuation


@dataclass
class _Stored:
    properties: dict
    attributes: dict


@dataclass
class InMemoryBackend(ResourceBackend):
    """
    Deterministic fake control plane. Every request is appended to `calls`,
    so tests can assert on ordering and on "no call was made".
    """
    account_id: str = "123456789012"
    region: str = "us-east-1"
    fail_on: set[str] = field(default_factory=set)
    calls: list[tuple[str, str, str]] = field(default_factory=list)
    _resources: dict[tuple[ResourceKind, str], _Stored] = field(default_factory=dict)
    _imports: dict[tuple[ResourceKind, str], dict] = field(default_factory=dict)
    _secret_values: dict[str, dict[str, str]] = field(default_factory=dict)

    def register(self, kind: ResourceKind, identifier: str, **attributes: Any) -> None:
        """Make a pre-existing resource (zone, certificate, repository) resolvable."""
        self._imports[(kind, identifier)] = attributes

    def resource(self, kind: ResourceKind, name: str) -> dict | None:
        stored = self._resources.get((kind, name))
        return stored.properties if stored else None

    def find(self, kind, name, properties):
        self.calls.append(("find", kind.value, name))
        if (kind, name) in self._imports:
            return dict(self._imports[(kind, name)])
        stored = self._resources.get((kind, name))
        return dict(stored.attributes) if stored else None

    def ensure(self, kind, name, properties):
        self.calls.append(("ensure", kind.value, name))
        if name in self.fail_on:
            raise BackendError(f"Simulated failure creating {name}", code="InternalFailure")

        stored = self._resources.get((kind, name))
        if stored is None:
            attributes = self._make_attributes(kind, name, properties)
            self._resources[(kind, name)] = _Stored(dict(properties), attributes)
            return Applied("created", dict(attributes))
        if stored.properties != properties:
            stored.properties = dict(properties)
            return Applied("updated", dict(stored.attributes))
        return Applied("unchanged", dict(stored.attributes))

    def read_secret(self, secret_arn):
        self.calls.append(("read_secret", "secret", secret_arn))
        if secret_arn not in self._secret_values:
            raise BackendError(f"Secret {secret_arn} not found", code="ResourceNotFoundException")
        return dict(self._secret_values[secret_arn])

    def delete(self, kind, name, attributes, properties):
        self.calls.append(("delete", kind.value, name))
        stored = self._resources.pop((kind, name), None)
        if stored and kind == ResourceKind.SECRET:
            self._secret_values.pop(stored.attributes["arn"], None)

    def count(self, action: str | None = None) -> int:
        return len([c for c in self.calls if action is None or c[0] == action])

    def _arn(self, service: str, path: str) -> str:
        return f"arn:aws:{service}:{self.region}:{self.account_id}:{path}"

    def _make_attributes(self, kind: ResourceKind, name: str, properties: dict) -> dict:
        if kind == ResourceKind.NETWORK:
            azs = [f"{self.region}{c}" for c in "abcdef"[: properties.get("max_azs", 2)]]
            return {
                "vpc_id": f"vpc-{name}",
                "availability_zones": azs,
                "public_subnet_ids": [f"subnet-{name}-public-{i}" for i in range(len(azs))],
                "private_subnet_ids": [f"subnet-{name}-private-{i}" for i in range(len(azs))],
            }
        if kind == ResourceKind.SECURITY_GROUP:
            return {"group_id": f"sg-{name}"}
        if kind == ResourceKind.SECRET:
            arn = self._arn("secretsmanager", f"secret:{name}")
            self._secret_values[arn] = _generate_secret_document(properties)
            return {"arn": arn, "name": name}
        if kind == ResourceKind.DATABASE:
            return {
                "identifier": name,
                "arn": self._arn("rds", f"db:{name}"),
                "endpoint_address": f"{name}.abcdefghijkl.{self.region}.rds.amazonaws.com",
                "endpoint_port": 5432,
            }
        if kind == ResourceKind.CLUSTER:
            return {"name": name, "arn": self._arn("ecs", f"cluster/{name}")}
        if kind == ResourceKind.ROLE:
            return {"name": name, "arn": f"arn:aws:iam::{self.account_id}:role/{name}"}
        if kind == ResourceKind.LOG_GROUP:
            return {"name": name, "arn": self._arn("logs", f"log-group:{name}")}
        if kind == ResourceKind.TASK_DEFINITION:
            return {"family": name, "arn": self._arn("ecs", f"task-definition/{name}:1")}
        if kind == ResourceKind.SERVICE:
            cluster = properties.get("cluster", "")
            return {
                "name": name,
                "cluster_name": cluster,
                "arn": self._arn("ecs", f"service/{cluster}/{name}"),
            }
        if kind == ResourceKind.SCALABLE_TARGET:
            return {"resource_id": f"service/{properties['cluster']}/{properties['service']}"}
        if kind == ResourceKind.SCALING_POLICY:
            return {"arn": self._arn("autoscaling", f"scalingPolicy:{name}")}
        if kind == ResourceKind.LOAD_BALANCER:
            return {
                "arn": self._arn("elasticloadbalancing", f"loadbalancer/app/{name}/0123456789abcdef"),
                "dns_name": f"{name}-1234567890.{self.region}.elb.amazonaws.com",
                "canonical_hosted_zone_id": "Z35SXDOTRQ7X7K",
            }
        if kind == ResourceKind.TARGET_GROUP:
            return {"arn": self._arn("elasticloadbalancing", f"targetgroup/{name}/0123456789abcdef")}
        if kind == ResourceKind.LISTENER:
            return {"arn": self._arn("elasticloadbalancing", f"listener/app/{name}")}
        if kind == ResourceKind.SERVICE_ATTACHMENT:
            return {"service_arn": properties.get("service_arn", "")}
        if kind == ResourceKind.DNS_RECORD:
            return {"fqdn": properties["record_name"]}
        raise BackendError(f"Unsupported resource kind {kind.value}", code="UnsupportedKind")


def _generate_secret_document(properties: dict) -> dict[str, str]:
    excluded = set(properties.get("exclude_characters", ""))
    alphabet = [c for c in _PASSWORD_ALPHABET if c not in excluded]
    length = properties.get("password_length", 32)
    document = dict(properties.get("secret_string_template", {}))
    document[properties.get("generate_string_key", "password")] = "".join(
        secrets.choice(alphabet) for _ in range(length)
    )
    return document
