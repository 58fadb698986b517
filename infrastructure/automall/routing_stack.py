"""
Load Balancer Routing
=====================
Internet-facing ALB in the public subnets (one per AZ):

  :80   → permanent redirect to :443
  :443  → TLS terminated with the imported certificate, forwards to the
          target group that fronts the ECS service

The service is registered with the target group only after the HTTPS
listener exists, because ECS refuses a target group that no load balancer
uses yet. Unhealthy targets never receive traffic; that is enforced by the
load balancer itself.
"""
from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, model_validator

from automall.graph import Resource, ResourceGraph, ResourceKind
from automall.network_stack import ANY_IPV4, IngressRule


class HealthCheck(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str = "/health"
    interval_seconds: int = Field(default=30, ge=5, le=300)
    timeout_seconds: int = Field(default=10, ge=2, le=120)
    healthy_threshold: int = Field(default=2, ge=2, le=10)
    unhealthy_threshold: int = Field(default=3, ge=2, le=10)
    expected_code: str = "200"
    port: int | None = None

    @model_validator(mode="after")
    def _timeout_below_interval(self) -> "HealthCheck":
        if self.timeout_seconds >= self.interval_seconds:
            raise ValueError("health check timeout must be shorter than the interval")
        if not self.path.startswith("/"):
            raise ValueError("health check path must start with '/'")
        return self


@dataclass
class _PendingTarget:
    service: Resource
    container_name: str
    container_port: int


class LoadBalancerRouter:
    def __init__(self, graph: ResourceGraph, prefix: str):
        self._graph = graph
        self._prefix = prefix
        self._pending: dict[str, _PendingTarget] = {}
        self._lb_group: Resource | None = None

    def import_certificate(self, certificate_arn: str) -> Resource:
        return self._graph.add_node(Resource(
            id="certificate",
            kind=ResourceKind.CERTIFICATE,
            name=certificate_arn,
            imported=True,
        ))

    def create_load_balancer(
        self,
        network: Resource,
        internet_facing: bool = True,
        one_per_az: bool = True,
    ) -> Resource:
        listener_rules = [
            IngressRule(port=80, cidr=ANY_IPV4, description="Allow HTTP to the load balancer"),
            IngressRule(port=443, cidr=ANY_IPV4, description="Allow HTTPS to the load balancer"),
        ]
        self._lb_group = self._graph.add_node(Resource(
            id="lb-sg",
            kind=ResourceKind.SECURITY_GROUP,
            name=f"{self._prefix}-lb-sg",
            properties={
                "vpc_id": network.ref("vpc_id"),
                "description": "Security group for the application load balancer",
                "allow_all_outbound": True,
                "ingress": [rule.as_properties() for rule in listener_rules],
            },
        ))
        return self._graph.add_node(Resource(
            id="load-balancer",
            kind=ResourceKind.LOAD_BALANCER,
            name=f"{self._prefix}-lb",
            properties={
                "scheme": "internet-facing" if internet_facing else "internal",
                "type": "application",
                "subnet_ids": network.ref("public_subnet_ids"),
                "one_per_az": one_per_az,
                "security_group_ids": [self._lb_group.ref("group_id")],
            },
        ))

    def add_http_redirect(self, load_balancer: Resource, from_port: int = 80, to_port: int = 443) -> Resource:
        return self._graph.add_node(Resource(
            id="http-listener",
            kind=ResourceKind.LISTENER,
            name=f"{self._prefix}-http-listener",
            properties={
                "load_balancer_arn": load_balancer.ref("arn"),
                "port": from_port,
                "protocol": "HTTP",
                "default_action": {
                    "type": "redirect",
                    "port": str(to_port),
                    "protocol": "HTTPS",
                    "status_code": "HTTP_301",
                },
            },
        ))

    def create_target_group(
        self,
        network: Resource,
        port: int,
        service: Resource,
        health_check: HealthCheck,
        container_name: str,
    ) -> Resource:
        check_port = health_check.port or port
        target_group = self._graph.add_node(Resource(
            id="target-group",
            kind=ResourceKind.TARGET_GROUP,
            name=f"{self._prefix}-tg",
            properties={
                "vpc_id": network.ref("vpc_id"),
                "port": port,
                "protocol": "HTTP",
                "target_type": "ip",
                "health_check": {
                    "path": health_check.path,
                    "port": str(check_port),
                    "interval_seconds": health_check.interval_seconds,
                    "timeout_seconds": health_check.timeout_seconds,
                    "healthy_threshold": health_check.healthy_threshold,
                    "unhealthy_threshold": health_check.unhealthy_threshold,
                    "matcher": health_check.expected_code,
                },
            },
        ))
        self._pending[target_group.id] = _PendingTarget(service, container_name, port)
        return target_group

    def add_https_listener(
        self,
        load_balancer: Resource,
        certificate: Resource,
        default_target_group: Resource,
        port: int = 443,
    ) -> Resource:
        listener = self._graph.add_node(Resource(
            id="https-listener",
            kind=ResourceKind.LISTENER,
            name=f"{self._prefix}-https-listener",
            properties={
                "load_balancer_arn": load_balancer.ref("arn"),
                "port": port,
                "protocol": "HTTPS",
                "certificate_arn": certificate.ref("arn"),
                "default_action": {
                    "type": "forward",
                    "target_group_arn": default_target_group.ref("arn"),
                },
            },
        ))
        pending = self._pending.pop(default_target_group.id, None)
        if pending is not None:
            self._attach_service(pending, default_target_group, listener)
        return listener

    def _attach_service(self, pending: _PendingTarget, target_group: Resource, listener: Resource) -> Resource:
        service = pending.service
        return self._graph.add_node(
            Resource(
                id="service-attachment",
                kind=ResourceKind.SERVICE_ATTACHMENT,
                name=f"{service.name}-{target_group.name}",
                properties={
                    "cluster": service.ref("cluster_name"),
                    "service": service.ref("name"),
                    "target_group_arn": target_group.ref("arn"),
                    "container_name": pending.container_name,
                    "container_port": pending.container_port,
                    # Load balancer → task traffic on the container port
                    "service_group_ids": service.properties["security_group_ids"],
                    "source_group_id": self._lb_group.ref("group_id"),
                    "service_arn": service.ref("arn"),
                },
            ),
            depends_on=[listener.id],
        )
