"""
Integration tests: AwsBackend against moto.

These exercise the real boto3 calls (names, filters, waiters, error
translation) without touching an AWS account. Load balancer, RDS and ECS
service readiness depend on waiters moto does not model faithfully, so those
kinds are covered by the unit suite through the in-memory backend instead.
"""
import boto3
import pytest
from moto import mock_aws

from automall.aws_backend import LB_INGRESS_DESCRIPTION, AwsBackend, _same_listener
from automall.backend import Provisioner
from automall.dns_stack import DnsBinder
from automall.errors import BackendError, ZoneNotFoundError
from automall.graph import ResourceGraph, ResourceKind
from automall.network_stack import NetworkTopologyBuilder
from automall.secrets_stack import EXCLUDED_CHARACTERS, SecretCredentialProvider

pytestmark = pytest.mark.integration

REGION = "us-east-1"


@pytest.fixture
def aws():
    with mock_aws():
        yield AwsBackend(region=REGION, waiter_delay=1, waiter_max_attempts=5)


class TestNetwork:

    def test_network_spans_two_zones_with_public_and_private_subnets(self, aws):
        applied = aws.ensure(
            ResourceKind.NETWORK, "automall-it-vpc",
            {"cidr_block": "10.0.0.0/16", "max_azs": 2, "nat_gateways": 1},
        )

        assert applied.action == "created"
        attrs = applied.attributes
        assert len(attrs["availability_zones"]) == 2
        assert len(attrs["public_subnet_ids"]) == 2
        assert len(attrs["private_subnet_ids"]) == 2

        ec2 = boto3.client("ec2", region_name=REGION)
        nats = ec2.describe_nat_gateways(
            Filters=[{"Name": "vpc-id", "Values": [attrs["vpc_id"]]}]
        )["NatGateways"]
        assert len(nats) == 1
        assert nats[0]["SubnetId"] in attrs["public_subnet_ids"]

    def test_network_rerun_finds_existing_vpc(self, aws):
        props = {"cidr_block": "10.0.0.0/16", "max_azs": 2, "nat_gateways": 1}
        first = aws.ensure(ResourceKind.NETWORK, "automall-it-vpc", props)
        second = aws.ensure(ResourceKind.NETWORK, "automall-it-vpc", props)

        assert second.action == "unchanged"
        assert second.attributes["vpc_id"] == first.attributes["vpc_id"]
        assert sorted(second.attributes["public_subnet_ids"]) == sorted(first.attributes["public_subnet_ids"])

        vpcs = boto3.client("ec2", region_name=REGION).describe_vpcs(
            Filters=[{"Name": "tag:Name", "Values": ["automall-it-vpc"]}]
        )["Vpcs"]
        assert len(vpcs) == 1

    def test_security_groups_through_provisioner(self, aws):
        graph = ResourceGraph()
        NetworkTopologyBuilder(graph, "automall-it").build(admin_cidr="203.0.113.10")

        state = Provisioner(aws).apply(graph)

        ec2 = boto3.client("ec2", region_name=REGION)
        data_group = ec2.describe_security_groups(
            GroupIds=[state.require("data-sg", "group_id")]
        )["SecurityGroups"][0]
        assert data_group["GroupName"] == "automall-it-db-sg"

        postgres = [p for p in data_group["IpPermissions"] if p.get("FromPort") == 5432]
        cidrs = [r["CidrIp"] for p in postgres for r in p.get("IpRanges", [])]
        peers = [g["GroupId"] for p in postgres for g in p.get("UserIdGroupPairs", [])]
        assert cidrs == ["203.0.113.10/32"]
        assert peers == [state.require("compute-sg", "group_id")]

    def test_security_group_rerun_reuses_group(self, aws):
        vpc_id = boto3.client("ec2", region_name=REGION).create_vpc(CidrBlock="10.1.0.0/16")["Vpc"]["VpcId"]
        props = {
            "vpc_id": vpc_id,
            "description": "web",
            "allow_all_outbound": True,
            "ingress": [{
                "port": 443, "protocol": "tcp", "cidr": "0.0.0.0/0",
                "source_group_id": None, "description": "Allow inbound HTTPS traffic",
            }],
        }
        first = aws.ensure(ResourceKind.SECURITY_GROUP, "automall-it-web-sg", props)
        second = aws.ensure(ResourceKind.SECURITY_GROUP, "automall-it-web-sg", props)

        assert first.action == "created"
        assert second.attributes == first.attributes

    def test_interrupted_network_is_completed(self, aws):
        ec2 = boto3.client("ec2", region_name=REGION)
        vpc_id = ec2.create_vpc(CidrBlock="10.0.0.0/16")["Vpc"]["VpcId"]
        ec2.create_tags(Resources=[vpc_id], Tags=[{"Key": "Name", "Value": "automall-it-vpc"}])

        props = {"cidr_block": "10.0.0.0/16", "max_azs": 2, "nat_gateways": 1}
        completed = aws.ensure(ResourceKind.NETWORK, "automall-it-vpc", props)

        assert completed.action == "updated"
        attrs = completed.attributes
        assert attrs["vpc_id"] == vpc_id
        assert len(attrs["public_subnet_ids"]) == 2
        assert len(attrs["private_subnet_ids"]) == 2

        igws = ec2.describe_internet_gateways(
            Filters=[{"Name": "attachment.vpc-id", "Values": [vpc_id]}]
        )["InternetGateways"]
        nats = ec2.describe_nat_gateways(Filters=[{"Name": "vpc-id", "Values": [vpc_id]}])["NatGateways"]
        assert len(igws) == 1
        assert len(nats) == 1

        again = aws.ensure(ResourceKind.NETWORK, "automall-it-vpc", props)
        assert again.action == "unchanged"
        assert again.attributes == attrs

    def test_admin_cidr_change_replaces_the_admin_rule(self, aws):
        first = ResourceGraph()
        NetworkTopologyBuilder(first, "automall-it").build(admin_cidr="203.0.113.10")
        Provisioner(aws).apply(first)

        second = ResourceGraph()
        NetworkTopologyBuilder(second, "automall-it").build(admin_cidr="198.51.100.7")
        state = Provisioner(aws).apply(second)

        ec2 = boto3.client("ec2", region_name=REGION)
        data_group = ec2.describe_security_groups(
            GroupIds=[state.require("data-sg", "group_id")]
        )["SecurityGroups"][0]
        cidrs = [r["CidrIp"] for p in data_group["IpPermissions"] for r in p.get("IpRanges", [])]
        peers = [g["GroupId"] for p in data_group["IpPermissions"] for g in p.get("UserIdGroupPairs", [])]
        assert cidrs == ["198.51.100.7/32"]
        assert peers == [state.require("compute-sg", "group_id")]

    def test_undeclared_rule_revoked_but_load_balancer_rule_kept(self, aws):
        graph = ResourceGraph()
        NetworkTopologyBuilder(graph, "automall-it").build(admin_cidr="203.0.113.10")
        state = Provisioner(aws).apply(graph)
        compute_id = state.require("compute-sg", "group_id")

        ec2 = boto3.client("ec2", region_name=REGION)
        lb_id = ec2.create_security_group(
            GroupName="automall-it-lb-sg", Description="lb", VpcId=state.require("network", "vpc_id")
        )["GroupId"]
        ec2.authorize_security_group_ingress(GroupId=compute_id, IpPermissions=[
            {"IpProtocol": "tcp", "FromPort": 22, "ToPort": 22, "IpRanges": [{"CidrIp": "0.0.0.0/0"}]},
            {
                "IpProtocol": "tcp", "FromPort": 8000, "ToPort": 8000,
                "UserIdGroupPairs": [{"GroupId": lb_id, "Description": LB_INGRESS_DESCRIPTION}],
            },
        ])

        compute = graph.get("compute-sg")
        props = dict(compute.properties, vpc_id=state.require("network", "vpc_id"))
        applied = aws.ensure(ResourceKind.SECURITY_GROUP, compute.name, props)

        assert applied.action == "updated"
        permissions = ec2.describe_security_groups(GroupIds=[compute_id])["SecurityGroups"][0]["IpPermissions"]
        assert sorted(p["FromPort"] for p in permissions) == [80, 443, 8000]

    def test_client_error_becomes_backend_error(self, aws):
        with pytest.raises(BackendError) as exc:
            aws.ensure(ResourceKind.SECURITY_GROUP, "automall-it-orphan-sg", {
                "vpc_id": "vpc-0000000000000dead",
                "description": "orphan",
                "ingress": [],
            })
        assert exc.value.code == "InvalidVpcID.NotFound"


class TestSecretsAndLogs:

    def test_secret_is_generated_once(self, aws):
        graph = ResourceGraph()
        provisioner = Provisioner(aws)
        provider = SecretCredentialProvider(graph, provisioner.state, "automall-it")
        secret = provider.create("automall")

        provisioner.apply(graph)
        password = provider.read_password(secret)

        assert provider.read_username(secret) == "automall"
        assert len(password) == 32
        assert not set(password) & set(EXCLUDED_CHARACTERS)

        again = aws.ensure(ResourceKind.SECRET, secret.name, secret.properties)
        assert again.action == "unchanged"
        assert aws.read_secret(again.attributes["arn"])["password"] == password

    def test_secret_delete(self, aws):
        props = {"secret_string_template": {"username": "automall"}, "generate_string_key": "password"}
        created = aws.ensure(ResourceKind.SECRET, "automall-it-RdsDbCredentials", props)

        aws.delete(ResourceKind.SECRET, "automall-it-RdsDbCredentials", created.attributes, props)

        assert aws.find(ResourceKind.SECRET, "automall-it-RdsDbCredentials", props) is None

    def test_log_group_and_cluster_are_idempotent(self, aws):
        log_group = aws.ensure(ResourceKind.LOG_GROUP, "automall-it-logs", {"retention_in_days": None})
        cluster = aws.ensure(ResourceKind.CLUSTER, "automall-it-cluster", {})

        assert log_group.action == "created"
        assert log_group.attributes["name"] == "automall-it-logs"
        assert not log_group.attributes["arn"].endswith(":*")
        assert cluster.attributes["name"] == "automall-it-cluster"

        assert aws.ensure(ResourceKind.LOG_GROUP, "automall-it-logs", {"retention_in_days": None}).action == "unchanged"
        assert aws.ensure(ResourceKind.CLUSTER, "automall-it-cluster", {}).action == "unchanged"


class TestImportedResources:

    def test_missing_hosted_zone_raises_zone_not_found(self, aws):
        graph = ResourceGraph()
        DnsBinder(graph, "automall-it").import_zone("Z00000000000000000000", "everysinglecar.com")

        with pytest.raises(ZoneNotFoundError):
            Provisioner(aws).apply(graph)

    def test_existing_zone_and_records(self, aws):
        route53 = boto3.client("route53", region_name=REGION)
        zone_id = route53.create_hosted_zone(
            Name="everysinglecar.com", CallerReference="automall-it"
        )["HostedZone"]["Id"].split("/")[-1]

        graph = ResourceGraph()
        binder = DnsBinder(graph, "automall-it")
        zone = binder.import_zone(zone_id, "everysinglecar.com")
        binder.bind_cname(zone, "www.everysinglecar.com", "everysinglecar.com")

        state = Provisioner(aws).apply(graph)
        assert state.require("hosted-zone", "zone_id") == zone_id

        records = route53.list_resource_record_sets(HostedZoneId=zone_id)["ResourceRecordSets"]
        cname = [r for r in records if r["Type"] == "CNAME"]
        assert cname[0]["Name"].rstrip(".") == "www.everysinglecar.com"
        assert cname[0]["ResourceRecords"] == [{"Value": "everysinglecar.com"}]

    def test_container_repository_lookup(self, aws):
        assert aws.find(ResourceKind.CONTAINER_REPOSITORY, "automall-web", {}) is None

        boto3.client("ecr", region_name=REGION).create_repository(repositoryName="automall-web")
        found = aws.find(ResourceKind.CONTAINER_REPOSITORY, "automall-web", {})
        assert found["name"] == "automall-web"
        assert found["uri"].endswith("/automall-web")

    def test_unsupported_kind_cannot_be_created(self, aws):
        with pytest.raises(BackendError, match="cannot be created"):
            aws.ensure(ResourceKind.HOSTED_ZONE, "Z1", {})


def _task_properties(image):
    return {
        "cpu": "2048",
        "memory": "8192",
        "network_mode": "awsvpc",
        "requires_compatibilities": ["FARGATE"],
        "runtime_platform": {"cpu_architecture": "X86_64", "operating_system_family": "LINUX"},
        "task_role_arn": "arn:aws:iam::123456789012:role/automall-it-task-role",
        "execution_role_arn": "arn:aws:iam::123456789012:role/automall-it-task-role",
        "container": {
            "name": "automall-web",
            "image": image,
            "essential": True,
            "command": ["gunicorn", "app:app"],
            "environment": {"POSTGRES_HOST": "db.internal"},
            "port_mappings": [{"container_port": 8000, "host_port": 8000, "protocol": "tcp"}],
            "log_configuration": {
                "log_group": "automall-it-logs",
                "stream_prefix": "automall",
                "region": REGION,
            },
        },
    }


class TestUpdateInPlace:

    @pytest.fixture
    def ecs_service(self, aws):
        ecs = boto3.client("ecs", region_name=REGION)
        ecs.create_cluster(clusterName="automall-it-cluster")
        ecs.register_task_definition(
            family="automall-it-web",
            containerDefinitions=[{"name": "web", "image": "nginx", "memory": 512}],
        )
        ecs.create_service(
            cluster="automall-it-cluster",
            serviceName="automall-it-ecs-service",
            taskDefinition="automall-it-web",
            desiredCount=1,
        )
        return {"cluster": "automall-it-cluster", "service": "automall-it-ecs-service"}

    def test_task_definition_registers_a_revision_only_on_change(self, aws):
        name = "automall-it-ecs-fargate-definition"
        first = aws.ensure(ResourceKind.TASK_DEFINITION, name, _task_properties("repo/automall-web:1.0.0"))
        same = aws.ensure(ResourceKind.TASK_DEFINITION, name, _task_properties("repo/automall-web:1.0.0"))
        bumped = aws.ensure(ResourceKind.TASK_DEFINITION, name, _task_properties("repo/automall-web:1.1.0"))

        assert first.action == "created"
        assert same.action == "unchanged"
        assert same.attributes["arn"] == first.attributes["arn"]
        assert bumped.action == "updated"
        assert bumped.attributes["arn"] != first.attributes["arn"]

        current = boto3.client("ecs", region_name=REGION).describe_task_definition(taskDefinition=name)
        assert current["taskDefinition"]["containerDefinitions"][0]["image"] == "repo/automall-web:1.1.0"

    def test_scalable_target_bounds_updated(self, aws, ecs_service):
        props = {
            "service_namespace": "ecs",
            "scalable_dimension": "ecs:service:DesiredCount",
            "min_capacity": 2,
            "max_capacity": 12,
            **ecs_service,
        }
        created = aws.ensure(ResourceKind.SCALABLE_TARGET, "automall-it-scaling", props)
        same = aws.ensure(ResourceKind.SCALABLE_TARGET, "automall-it-scaling", props)
        widened = aws.ensure(ResourceKind.SCALABLE_TARGET, "automall-it-scaling", dict(props, min_capacity=3))

        assert [created.action, same.action, widened.action] == ["created", "unchanged", "updated"]
        target = aws.find(ResourceKind.SCALABLE_TARGET, "automall-it-scaling", props)
        assert (target["min_capacity"], target["max_capacity"]) == (3, 12)

    def test_scaling_policy_reports_updates_only_when_changed(self, aws, ecs_service):
        target = aws.ensure(ResourceKind.SCALABLE_TARGET, "automall-it-scaling", {
            "service_namespace": "ecs",
            "scalable_dimension": "ecs:service:DesiredCount",
            "min_capacity": 2,
            "max_capacity": 12,
            **ecs_service,
        })
        props = {
            "service_namespace": "ecs",
            "scalable_dimension": "ecs:service:DesiredCount",
            "resource_id": target.attributes["resource_id"],
            "policy_type": "TargetTrackingScaling",
            "predefined_metric": "ECSServiceAverageCPUUtilization",
            "target_value": 60,
            "scale_in_cooldown": 300,
            "scale_out_cooldown": 180,
        }
        created = aws.ensure(ResourceKind.SCALING_POLICY, "automall-it-cpu-scaling", props)
        same = aws.ensure(ResourceKind.SCALING_POLICY, "automall-it-cpu-scaling", props)
        raised = aws.ensure(ResourceKind.SCALING_POLICY, "automall-it-cpu-scaling", dict(props, target_value=70))

        assert [created.action, same.action, raised.action] == ["created", "unchanged", "updated"]
        policies = boto3.client("application-autoscaling", region_name=REGION).describe_scaling_policies(
            ServiceNamespace="ecs", ResourceId=target.attributes["resource_id"]
        )["ScalingPolicies"]
        cpu = [p for p in policies if p["PolicyName"] == "automall-it-cpu-scaling"]
        assert cpu[0]["TargetTrackingScalingPolicyConfiguration"]["TargetValue"] == 70.0

    def test_target_group_health_check_updated(self, aws):
        vpc_id = boto3.client("ec2", region_name=REGION).create_vpc(CidrBlock="10.2.0.0/16")["Vpc"]["VpcId"]
        props = {
            "vpc_id": vpc_id,
            "port": 8000,
            "protocol": "HTTP",
            "target_type": "ip",
            "health_check": {
                "path": "/health",
                "port": "8000",
                "interval_seconds": 30,
                "timeout_seconds": 10,
                "healthy_threshold": 2,
                "unhealthy_threshold": 3,
                "matcher": "200",
            },
        }
        created = aws.ensure(ResourceKind.TARGET_GROUP, "automall-it-tg", props)
        same = aws.ensure(ResourceKind.TARGET_GROUP, "automall-it-tg", props)
        moved = dict(props, health_check=dict(props["health_check"], path="/healthz"))
        changed = aws.ensure(ResourceKind.TARGET_GROUP, "automall-it-tg", moved)

        assert [created.action, same.action, changed.action] == ["created", "unchanged", "updated"]
        group = boto3.client("elbv2", region_name=REGION).describe_target_groups(
            Names=["automall-it-tg"]
        )["TargetGroups"][0]
        assert group["HealthCheckPath"] == "/healthz"


def test_listener_comparison_ignores_server_side_defaults():
    """ELBv2 fills in Host/Path/Query on redirects; only declared fields count."""
    live = {
        "Protocol": "HTTP",
        "DefaultActions": [{
            "Type": "redirect",
            "Order": 1,
            "RedirectConfig": {
                "Protocol": "HTTPS", "Port": "443", "StatusCode": "HTTP_301",
                "Host": "#{host}", "Path": "/#{path}", "Query": "#{query}",
            },
        }],
    }
    redirect = [{
        "Type": "redirect",
        "RedirectConfig": {"Protocol": "HTTPS", "Port": "443", "StatusCode": "HTTP_301"},
    }]

    assert _same_listener(live, "HTTP", redirect, None)
    assert not _same_listener(live, "HTTP", [dict(redirect[0], RedirectConfig={
        "Protocol": "HTTPS", "Port": "8443", "StatusCode": "HTTP_301",
    })], None)
    assert not _same_listener(live, "HTTPS", redirect, "arn:aws:acm:us-east-1:123456789012:certificate/x")
