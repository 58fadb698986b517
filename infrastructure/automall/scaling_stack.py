"""
Service Auto Scaling
====================
Binds the ECS service to capacity bounds and target-tracking rules. The rules
are evaluated by Application Auto Scaling's own control loop; this module's
job ends once they are registered.
"""
from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from automall.errors import ConfigurationError
from automall.graph import Resource, ResourceGraph, ResourceKind


class UtilizationMetric(str, Enum):
    CPU = "ECSServiceAverageCPUUtilization"
    MEMORY = "ECSServiceAverageMemoryUtilization"


class CapacityBounds(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_capacity: int = Field(ge=0)
    max_capacity: int = Field(ge=1)

    @model_validator(mode="after")
    def _min_not_above_max(self) -> "CapacityBounds":
        if self.min_capacity > self.max_capacity:
            raise ValueError(
                f"min_capacity {self.min_capacity} exceeds max_capacity {self.max_capacity}"
            )
        return self


class UtilizationRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    metric: UtilizationMetric
    target_percent: float = Field(gt=0, le=100)
    scale_in_cooldown_seconds: int = Field(ge=0)
    scale_out_cooldown_seconds: int = Field(ge=0)


class AutoScalingPolicyEngine:
    def __init__(self, graph: ResourceGraph, prefix: str):
        self._graph = graph
        self._prefix = prefix

    def attach(self, service: Resource, min_capacity: int, max_capacity: int) -> Resource:
        try:
            bounds = CapacityBounds(min_capacity=min_capacity, max_capacity=max_capacity)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid scaling bounds {min_capacity}..{max_capacity}: {e}") from e
        return self._graph.add_node(
            Resource(
                id="scalable-target",
                kind=ResourceKind.SCALABLE_TARGET,
                name=f"{self._prefix}-scaling",
                properties={
                    "service_namespace": "ecs",
                    "scalable_dimension": "ecs:service:DesiredCount",
                    "cluster": service.ref("cluster_name"),
                    "service": service.ref("name"),
                    "min_capacity": bounds.min_capacity,
                    "max_capacity": bounds.max_capacity,
                },
            ),
            depends_on=[service.id],
        )

    def add_utilization_rule(
        self,
        target: Resource,
        metric: UtilizationMetric,
        target_percent: float,
        scale_in_cooldown_seconds: int,
        scale_out_cooldown_seconds: int,
    ) -> Resource:
        try:
            rule = UtilizationRule(
                metric=metric,
                target_percent=target_percent,
                scale_in_cooldown_seconds=scale_in_cooldown_seconds,
                scale_out_cooldown_seconds=scale_out_cooldown_seconds,
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid utilization scaling rule: {e}") from e
        suffix = "cpu" if metric == UtilizationMetric.CPU else "memory"
        return self._graph.add_node(
            Resource(
                id=f"scaling-{suffix}",
                kind=ResourceKind.SCALING_POLICY,
                name=f"{self._prefix}-{suffix}-scaling",
                properties={
                    "service_namespace": target.properties["service_namespace"],
                    "scalable_dimension": target.properties["scalable_dimension"],
                    "resource_id": target.ref("resource_id"),
                    "policy_type": "TargetTrackingScaling",
                    "predefined_metric": rule.metric.value,
                    "target_value": rule.target_percent,
                    "scale_in_cooldown": rule.scale_in_cooldown_seconds,
                    "scale_out_cooldown": rule.scale_out_cooldown_seconds,
                },
            ),
            depends_on=[target.id],
        )
