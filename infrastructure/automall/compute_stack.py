"""
Compute Cluster
===============
ECS cluster + Fargate service running the application container.

Value flow into the container is the delicate part. The environment mapping
mixes three sources:

  - plain configuration (API keys, base URLs) known before anything runs
  - the database endpoint, known only after RDS reports the instance available
  - the database username/password, known only after the secret exists

The last two enter as references and are resolved by the Provisioner when the
task definition is registered, never before. Missing configuration values are
rejected here, at declaration time, so the run fails before any backend call.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from automall.errors import ConfigurationError, InvalidImageLocatorError
from automall.graph import Ref, Resource, ResourceGraph, ResourceKind, SecretFieldRef

REGISTRY_SEPARATOR = ".amazonaws.com/"
ECS_TASKS_PRINCIPAL = "ecs-tasks.amazonaws.com"
TASK_EXECUTION_POLICY_ARN = (
    "arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy"
)
FARGATE_CPU_UNITS = {256, 512, 1024, 2048, 4096, 8192, 16384}


# ---------------------------------------------------------------------------
# Image locators
# ---------------------------------------------------------------------------

class ImageRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    region: str
    repository: str
    tag: str | None = None

    @property
    def registry(self) -> str:
        return f"{self.account_id}.dkr.ecr.{self.region}.amazonaws.com"

    @property
    def repository_arn(self) -> str:
        return f"arn:aws:ecr:{self.region}:{self.account_id}:repository/{self.repository}"

    @property
    def uri(self) -> str:
        base = f"{self.registry}/{self.repository}"
        return f"{base}:{self.tag}" if self.tag else base


def parse_image_locator(locator: str) -> ImageRef:
    """
    '<account>.dkr.ecr.<region>.amazonaws.com/<repository>[:<tag>]' → ImageRef.
    The registry/repository separator must appear exactly once.
    """
    parts = locator.strip().split(REGISTRY_SEPARATOR)
    if len(parts) != 2:
        raise InvalidImageLocatorError(
            f"Image locator {locator!r} must contain exactly one {REGISTRY_SEPARATOR!r}"
        )
    registry, path = parts

    host = registry.split(".")
    if len(host) != 4 or host[1:3] != ["dkr", "ecr"] or not host[0] or not host[3]:
        raise InvalidImageLocatorError(
            f"Registry host {registry!r} is not '<account>.dkr.ecr.<region>'"
        )

    repository, _, tag = path.partition(":")
    if not repository:
        raise InvalidImageLocatorError(f"Image locator {locator!r} has no repository name")
    return ImageRef(account_id=host[0], region=host[3], repository=repository, tag=tag or None)


# ---------------------------------------------------------------------------
# Task / service specs
# ---------------------------------------------------------------------------

class PortMapping(BaseModel):
    container_port: int = Field(gt=0, le=65535)
    host_port: int | None = None
    protocol: str = "tcp"

    def as_properties(self) -> dict:
        return {
            "container_port": self.container_port,
            "host_port": self.host_port or self.container_port,
            "protocol": self.protocol,
        }


class TaskSpec(BaseModel):
    """Pending task definition; becomes a graph node once its container is added."""
    family: str
    cpu: int
    memory: int
    cpu_architecture: str = "ARM64"
    operating_system_family: str = "LINUX"
    role: Any  # Resource; Any keeps pydantic from re-validating the frozen node

    @field_validator("cpu")
    @classmethod
    def _fargate_cpu(cls, v: int) -> int:
        if v not in FARGATE_CPU_UNITS:
            raise ValueError(f"cpu must be one of {sorted(FARGATE_CPU_UNITS)}")
        return v

    @model_validator(mode="after")
    def _memory_matches_cpu(self) -> "TaskSpec":
        if not 2 * self.cpu <= self.memory <= 8 * self.cpu:
            raise ValueError(f"memory {self.memory} MiB is outside the Fargate range for cpu {self.cpu}")
        return self


class ServiceSpec(BaseModel):
    desired_count: int = Field(ge=0)
    min_count: int = Field(ge=0)
    max_count: int = Field(ge=1)

    @model_validator(mode="after")
    def _counts_ordered(self) -> "ServiceSpec":
        if not self.min_count <= self.desired_count <= self.max_count:
            raise ValueError("expected min_count <= desired_count <= max_count")
        return self


@dataclass
class LogSink:
    log_group: Resource
    stream_prefix: str
    region: str


@dataclass
class TaskHandle:
    spec: TaskSpec
    resource: Resource | None = None
    container_port: int | None = None


# ---------------------------------------------------------------------------
# Provisioner
# ---------------------------------------------------------------------------

class ComputeClusterProvisioner:
    def __init__(self, graph: ResourceGraph, prefix: str):
        self._graph = graph
        self._prefix = prefix

    def create_cluster(self, network: Resource) -> Resource:
        return self._graph.add_node(
            Resource(id="cluster", kind=ResourceKind.CLUSTER, name=f"{self._prefix}-cluster"),
            depends_on=[network.id],
        )

    def create_log_sink(self, region: str) -> LogSink:
        log_group = self._graph.add_node(Resource(
            id="log-group",
            kind=ResourceKind.LOG_GROUP,
            name=f"{self._prefix}-logs",
            # No retention limit: application output is kept until teardown
            properties={"retention_in_days": None, "removal_policy": "destroy"},
        ))
        return LogSink(log_group=log_group, stream_prefix=f"{self._prefix}-logs", region=region)

    def create_identity(self, log_sink: LogSink) -> Resource:
        """Single role used as both task role and execution role."""
        return self._graph.add_node(Resource(
            id="task-role",
            kind=ResourceKind.ROLE,
            name=f"{self._prefix}-iam-role",
            properties={
                "assumed_by": ECS_TASKS_PRINCIPAL,
                "managed_policy_arns": [TASK_EXECUTION_POLICY_ARN],
                "inline_policies": {
                    "log-write": {
                        "Version": "2012-10-17",
                        "Statement": [{
                            "Effect": "Allow",
                            "Action": ["logs:CreateLogStream", "logs:PutLogEvents"],
                            "Resource": [log_sink.log_group.ref("arn")],
                        }],
                    },
                },
            },
        ))

    def create_task_spec(
        self,
        cpu: int,
        memory: int,
        identity: Resource,
        arch: str = "ARM64",
    ) -> TaskHandle:
        spec = TaskSpec(
            family=f"{self._prefix}-ecs-fargate-definition",
            cpu=cpu,
            memory=memory,
            cpu_architecture=arch,
            role=identity,
        )
        return TaskHandle(spec=spec)

    def resolve_image(self, locator: str, tag: str | None = None) -> ImageRef:
        """
        Parse the locator and register the repository as a pre-existing
        resource, so a missing repository fails the run before the task is
        registered. An explicit tag wins over one embedded in the locator.
        """
        image = parse_image_locator(locator)
        if tag:
            image = image.model_copy(update={"tag": tag})
        if not image.tag:
            raise InvalidImageLocatorError(f"Image locator {locator!r} has no tag to deploy")
        if "container-repo" not in self._graph:
            self._graph.add_node(Resource(
                id="container-repo",
                kind=ResourceKind.CONTAINER_REPOSITORY,
                name=image.repository,
                imported=True,
            ))
        return image

    def add_container(
        self,
        task: TaskHandle,
        image: ImageRef,
        environment: dict[str, str | Ref | SecretFieldRef | None],
        log_sink: LogSink,
        command: list[str],
        port_mapping: PortMapping,
    ) -> Resource:
        if task.resource is not None:
            raise ValueError(f"Task {task.spec.family!r} already has its container")

        missing = [k for k, v in environment.items() if v is None or v == ""]
        if missing:
            raise ConfigurationError(f"{missing[0]} is required")

        spec = task.spec
        container = {
            "name": f"{self._prefix}-container",
            "image": image.uri,
            "essential": True,
            "environment": dict(environment),
            "command": list(command),
            "port_mappings": [port_mapping.as_properties()],
            "log_configuration": {
                "log_group": log_sink.log_group.ref("name"),
                "stream_prefix": log_sink.stream_prefix,
                "region": log_sink.region,
            },
        }
        depends_on = ["container-repo"] if "container-repo" in self._graph else []

        task.resource = self._graph.add_node(
            Resource(
                id="task-definition",
                kind=ResourceKind.TASK_DEFINITION,
                name=spec.family,
                properties={
                    "cpu": str(spec.cpu),
                    "memory": str(spec.memory),
                    "network_mode": "awsvpc",
                    "requires_compatibilities": ["FARGATE"],
                    "runtime_platform": {
                        "cpu_architecture": spec.cpu_architecture,
                        "operating_system_family": spec.operating_system_family,
                    },
                    "task_role_arn": spec.role.ref("arn"),
                    "execution_role_arn": spec.role.ref("arn"),
                    "container": container,
                },
            ),
            depends_on=depends_on,
        )
        task.container_port = port_mapping.container_port
        return task.resource

    def create_service(
        self,
        cluster: Resource,
        task: TaskHandle,
        network: Resource,
        security_group: Resource,
        spec: ServiceSpec,
        public_ip: bool = True,
    ) -> Resource:
        if task.resource is None:
            raise ValueError(f"Task {task.spec.family!r} has no container yet")
        return self._graph.add_node(Resource(
            id="service",
            kind=ResourceKind.SERVICE,
            name=f"{self._prefix}-ecs-service",
            properties={
                "cluster": cluster.ref("name"),
                "task_definition_arn": task.resource.ref("arn"),
                "desired_count": spec.desired_count,
                "launch_type": "FARGATE",
                "platform_version": "1.4.0",
                "subnet_ids": network.ref("public_subnet_ids"),
                "security_group_ids": [security_group.ref("group_id")],
                "assign_public_ip": public_ip,
            },
        ))
