"""
Automall Application Stack
==========================
Composes the components into one dependency graph:

  network ─┬─ compute-sg ── data-sg ─┐
           │  db-credentials ────────┼─ database ─┐
           │                         │            ├─ task-definition ─ service ─ scaling
           ├─ cluster / log-group / task-role ────┘                      │
           └─ lb-sg ─ load-balancer ─ listeners ─ target-group ──────────┴─ service-attachment
                                    └─ alias-record / www-record

Declaration is pure: building an AutomallStack never talks to a backend, so
the same config and version always produce the same plan. apply() hands the
graph to the Provisioner, which is the only thing that does. The imported
hosted zone and certificate are declared first so they are checked before
anything is created.
"""
from __future__ import annotations

from pathlib import Path
from typing import Mapping

from automall.backend import LiveState, Provisioner, ResourceBackend
from automall.compute_stack import ComputeClusterProvisioner, PortMapping, ServiceSpec
from automall.config import AppConfig, read_version
from automall.database_stack import DatabaseProvisioner
from automall.dns_stack import DnsBinder
from automall.graph import ResourceGraph
from automall.logger import get_logger
from automall.network_stack import POSTGRES_PORT, NetworkTopologyBuilder
from automall.outputs import OutputEmitter, StackOutputs
from automall.routing_stack import HealthCheck, LoadBalancerRouter
from automall.scaling_stack import AutoScalingPolicyEngine, UtilizationMetric
from automall.secrets_stack import PASSWORD_FIELD, USERNAME_FIELD, SecretCredentialProvider

logger = get_logger(__name__)

DB_USERNAME = "automall"
CONTAINER_PORT = 8000
TASK_CPU = 2048
TASK_MEMORY_MIB = 8192
DESIRED_COUNT = 3
MIN_CAPACITY = 2
MAX_CAPACITY = 12
CPU_TARGET_PERCENT = 60
MEMORY_TARGET_PERCENT = 65
SCALE_IN_COOLDOWN_SECONDS = 5 * 60
SCALE_OUT_COOLDOWN_SECONDS = 3 * 60
ENTRY_COMMAND = ["deno", "run", "--allow-net", "--allow-env", "--allow-read", "main.js"]


class AutomallStack:
    def __init__(self, config: AppConfig, version: str):
        self.config = config
        self.version = version
        self.graph = ResourceGraph()
        self.state = LiveState()

        prefix = config.prefix
        self.credentials = SecretCredentialProvider(self.graph, self.state, prefix)
        self.databases = DatabaseProvisioner(self.graph, self.state, prefix)
        self._declare(prefix)

    def _declare(self, prefix: str) -> None:
        config = self.config
        graph = self.graph

        router = LoadBalancerRouter(graph, prefix)
        dns = DnsBinder(graph, prefix)
        # Pre-existing resources are looked up first, so a wrong zone or
        # certificate fails the run before anything is created
        zone = dns.import_zone(config.hosted_zone_id, config.domain_name)
        certificate = router.import_certificate(config.certificate_arn)

        topology = NetworkTopologyBuilder(graph, prefix).build(admin_cidr=config.admin_cidr)

        secret = self.credentials.create(DB_USERNAME)
        database = self.databases.create(topology.network, topology.data_group, secret)

        compute = ComputeClusterProvisioner(graph, prefix)
        cluster = compute.create_cluster(topology.network)
        log_sink = compute.create_log_sink(config.region)
        role = compute.create_identity(log_sink)
        task = compute.create_task_spec(TASK_CPU, TASK_MEMORY_MIB, role, arch="ARM64")

        locator = config.image_locator
        image = compute.resolve_image(locator, tag=self.version)
        environment = {
            "ENVIRONMENT": config.environment,
            "RL_API_KEY": config.rl_api_key,
            "RL_USERNAME": config.rl_username,
            "RL_BASE_API_URL": config.rl_base_api_url,
            "POSTGRES_DB": config.postgres_db,
            "POSTGRES_USER": self.credentials.field_ref(secret, USERNAME_FIELD),
            "POSTGRES_PASSWORD": self.credentials.field_ref(secret, PASSWORD_FIELD),
            "POSTGRES_HOST": self.databases.endpoint_ref(database),
            "POSTGRES_PORT": str(POSTGRES_PORT),
            "GOOGLE_MAPS_API_KEY": config.google_maps_api_key,
            "OPENAI_API_KEY": config.openai_api_key,
            "ECR_REPO": locator,
            "SESSION_SECRET": config.session_secret,
        }
        compute.add_container(
            task,
            image,
            environment,
            log_sink,
            ENTRY_COMMAND,
            PortMapping(container_port=CONTAINER_PORT),
        )
        service = compute.create_service(
            cluster,
            task,
            topology.network,
            topology.compute_group,
            ServiceSpec(desired_count=DESIRED_COUNT, min_count=MIN_CAPACITY, max_count=MAX_CAPACITY),
            public_ip=True,
        )

        scaling = AutoScalingPolicyEngine(graph, prefix)
        target = scaling.attach(service, MIN_CAPACITY, MAX_CAPACITY)
        for metric, percent in (
            (UtilizationMetric.CPU, CPU_TARGET_PERCENT),
            (UtilizationMetric.MEMORY, MEMORY_TARGET_PERCENT),
        ):
            scaling.add_utilization_rule(
                target, metric, percent, SCALE_IN_COOLDOWN_SECONDS, SCALE_OUT_COOLDOWN_SECONDS
            )

        self.load_balancer = router.create_load_balancer(topology.network)
        router.add_http_redirect(self.load_balancer)
        target_group = router.create_target_group(
            topology.network,
            CONTAINER_PORT,
            service,
            HealthCheck(port=CONTAINER_PORT),
            container_name=task.resource.properties["container"]["name"],
        )
        router.add_https_listener(self.load_balancer, certificate, target_group)

        dns.bind_alias(zone, config.domain_name, self.load_balancer)
        dns.bind_cname(zone, f"www.{config.domain_name}", config.domain_name)

    def plan(self) -> list[dict]:
        return self.graph.plan()

    def apply(self, backend: ResourceBackend) -> StackOutputs:
        provisioner = Provisioner(backend, self.state, secret_reader=self.credentials.resolve)
        provisioner.apply(self.graph)
        return OutputEmitter(self.state).emit(self.config.domain_name, self.load_balancer)

    def destroy(self, backend: ResourceBackend) -> list[str]:
        provisioner = Provisioner(backend, self.state, secret_reader=self.credentials.resolve)
        return provisioner.destroy(self.graph)


def build_stack(
    environ: Mapping[str, str],
    version_file: str | Path = "version.txt",
    environment: str | None = None,
) -> AutomallStack:
    """Validate every input, then declare the stack. No backend is involved."""
    config = AppConfig.from_env(environ, environment=environment)
    version = read_version(version_file)
    logger.info(
        "Stack declared",
        extra={"environment": config.environment, "prefix": config.prefix, "version": version},
    )
    return AutomallStack(config, version)


def provision(
    environ: Mapping[str, str],
    backend: ResourceBackend,
    version_file: str | Path = "version.txt",
    environment: str | None = None,
) -> StackOutputs:
    """Declare and apply in one step. Configuration errors surface before `backend` sees a call."""
    return build_stack(environ, version_file, environment).apply(backend)
