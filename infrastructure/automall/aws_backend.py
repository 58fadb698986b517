"""
AWS Resource Backend
====================
boto3 implementation of the ResourceBackend contract.

Idempotency is name-based: every ensure() starts with a lookup by physical
name (tag:Name for EC2 objects, the native name everywhere else), so a run
interrupted halfway picks up where it stopped instead of duplicating.

Readiness is enforced with botocore waiters before ensure() returns:

  VPC            → vpc_available
  NAT gateway    → nat_gateway_available
  RDS instance   → db_instance_available
  ECS service    → services_stable
  Load balancer  → load_balancer_available

Every ClientError / WaiterError leaves this module as a BackendError carrying
the AWS error code, so callers never need to know about botocore.
"""
from __future__ import annotations

import hashlib
import ipaddress
import json
from contextlib import contextmanager
from typing import Any, Iterator

import boto3
from botocore.exceptions import ClientError, WaiterError

from automall.backend import Applied, ResourceBackend
from automall.errors import BackendError
from automall.graph import ResourceKind
from automall.logger import get_logger

logger = get_logger(__name__)

TIER_TAG = "automall:tier"
FINGERPRINT_TAG = "automall:fingerprint"
LB_INGRESS_DESCRIPTION = "Allow load balancer traffic to the container port"

_MISSING_CODES = {
    "ResourceNotFoundException",
    "DBInstanceNotFound",
    "DBInstanceNotFoundFault",
    "DBSubnetGroupNotFoundFault",
    "NoSuchEntity",
    "RepositoryNotFoundException",
    "NoSuchHostedZone",
    "LoadBalancerNotFound",
    "TargetGroupNotFound",
    "ListenerNotFound",
    "ClusterNotFoundException",
    "ServiceNotFoundException",
    "ServiceNotActiveException",
    "InvalidGroup.NotFound",
    "InvalidVpcID.NotFound",
    "InvalidPermission.NotFound",
    "ObjectNotFoundException",
}


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def _is_missing(e: ClientError) -> bool:
    return _error_code(e) in _MISSING_CODES


@contextmanager
def _aws_call(action: str, kind: ResourceKind, name: str) -> Iterator[None]:
    try:
        yield
    except ClientError as e:
        error = e.response.get("Error", {})
        raise BackendError(
            f"{action} {kind.value} {name!r} failed: {error.get('Message', str(e))}",
            code=error.get("Code"),
        ) from e
    except WaiterError as e:
        raise BackendError(
            f"{action} {kind.value} {name!r}: resource never became ready ({e})",
            code="WaiterTimeout",
        ) from e


def _tags(name: str, **extra: str) -> list[dict]:
    return [{"Key": "Name", "Value": name}] + [{"Key": k, "Value": v} for k, v in extra.items()]


class AwsBackend(ResourceBackend):
    def __init__(
        self,
        region: str,
        session: boto3.session.Session | None = None,
        waiter_delay: int = 15,
        waiter_max_attempts: int = 120,
    ):
        self.region = region
        self._session = session or boto3.session.Session(region_name=region)
        self._clients: dict[str, Any] = {}
        self._waiter_config = {"Delay": waiter_delay, "MaxAttempts": waiter_max_attempts}

    def _client(self, service: str):
        if service not in self._clients:
            self._clients[service] = self._session.client(service, region_name=self.region)
        return self._clients[service]

    def _wait(self, service: str, waiter_name: str, **params: Any) -> None:
        waiter = self._client(service).get_waiter(waiter_name)
        waiter.wait(WaiterConfig=self._waiter_config, **params)

    # -----------------------------------------------------------------------
    # Contract
    # -----------------------------------------------------------------------

    def find(self, kind, name, properties):
        with _aws_call("Looking up", kind, name):
            return getattr(self, f"_find_{kind.value}")(name, properties)

    def ensure(self, kind, name, properties):
        with _aws_call("Applying", kind, name):
            handler = getattr(self, f"_ensure_{kind.value}", None)
            if handler is None:
                raise BackendError(f"{kind.value} cannot be created by this backend", code="UnsupportedKind")
            return handler(name, properties)

    def read_secret(self, secret_arn):
        with _aws_call("Reading", ResourceKind.SECRET, secret_arn):
            response = self._client("secretsmanager").get_secret_value(SecretId=secret_arn)
        return json.loads(response["SecretString"])

    def delete(self, kind, name, attributes, properties):
        with _aws_call("Deleting", kind, name):
            try:
                getattr(self, f"_delete_{kind.value}")(name, attributes, properties)
            except ClientError as e:
                if not _is_missing(e):
                    raise
                logger.info("Already deleted", extra={"kind": kind.value, "physical_name": name})

    # -----------------------------------------------------------------------
    # Network
    # -----------------------------------------------------------------------

    def _find_network(self, name: str, properties: dict) -> dict | None:
        ec2 = self._client("ec2")
        vpcs = ec2.describe_vpcs(Filters=[{"Name": "tag:Name", "Values": [name]}])["Vpcs"]
        if not vpcs:
            return None
        vpc_id = vpcs[0]["VpcId"]
        subnets = ec2.describe_subnets(Filters=[{"Name": "vpc-id", "Values": [vpc_id]}])["Subnets"]
        subnets.sort(key=lambda s: (s["AvailabilityZone"], s["CidrBlock"]))

        def tier(subnet: dict) -> str:
            return next((t["Value"] for t in subnet.get("Tags", []) if t["Key"] == TIER_TAG), "")

        public = [s for s in subnets if tier(s) == "public"]
        return {
            "vpc_id": vpc_id,
            "availability_zones": [s["AvailabilityZone"] for s in public],
            "public_subnet_ids": [s["SubnetId"] for s in public],
            "private_subnet_ids": [s["SubnetId"] for s in subnets if tier(s) == "private"],
        }

    def _ensure_network(self, name: str, properties: dict) -> Applied:
        """
        Every sub-step is find-or-create, so a VPC left half-built by an
        interrupted run is completed instead of being reported as ready.
        """
        ec2 = self._client("ec2")
        filled: list[str] = []

        vpcs = ec2.describe_vpcs(Filters=[{"Name": "tag:Name", "Values": [name]}])["Vpcs"]
        if vpcs:
            vpc_id = vpcs[0]["VpcId"]
        else:
            vpc_id = ec2.create_vpc(CidrBlock=properties["cidr_block"])["Vpc"]["VpcId"]
            ec2.create_tags(Resources=[vpc_id], Tags=_tags(name))
            filled.append("vpc")
        self._wait("ec2", "vpc_available", VpcIds=[vpc_id])

        zones = sorted(
            z["ZoneName"]
            for z in ec2.describe_availability_zones()["AvailabilityZones"]
            if z.get("State", "available") == "available"
        )[: properties["max_azs"]]

        igw_id = self._ensure_internet_gateway(name, vpc_id, filled)
        public_ids, private_ids = self._ensure_subnets(name, vpc_id, properties["cidr_block"], zones, filled)

        self._ensure_route_table(f"{name}-public", vpc_id, public_ids, filled, GatewayId=igw_id)
        subnets = ec2.describe_subnets(SubnetIds=public_ids)["Subnets"] if public_ids else []
        for subnet in subnets:
            if not subnet.get("MapPublicIpOnLaunch"):
                ec2.modify_subnet_attribute(SubnetId=subnet["SubnetId"], MapPublicIpOnLaunch={"Value": True})
                filled.append(f"public-ip:{subnet['SubnetId']}")

        nat_ids = [
            self._ensure_nat_gateway(f"{name}-nat-{index + 1}", public_ids[index], filled)
            for index in range(properties["nat_gateways"])
        ]
        if nat_ids:
            self._wait("ec2", "nat_gateway_available", NatGatewayIds=nat_ids)

        for index, subnet_id in enumerate(private_ids):
            self._ensure_route_table(
                f"{name}-private-{index + 1}", vpc_id, [subnet_id], filled,
                NatGatewayId=nat_ids[index % len(nat_ids)],
            )

        if filled:
            ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsSupport={"Value": True})
            ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsHostnames={"Value": True})
            logger.info("Network steps applied", extra={"physical_name": name, "steps": filled})

        if "vpc" in filled:
            action = "created"
        else:
            action = "updated" if filled else "unchanged"
        return Applied(action, {
            "vpc_id": vpc_id,
            "availability_zones": zones,
            "public_subnet_ids": public_ids,
            "private_subnet_ids": private_ids,
        })

    def _ensure_internet_gateway(self, name: str, vpc_id: str, filled: list[str]) -> str:
        ec2 = self._client("ec2")
        attached = ec2.describe_internet_gateways(
            Filters=[{"Name": "attachment.vpc-id", "Values": [vpc_id]}]
        )["InternetGateways"]
        if attached:
            return attached[0]["InternetGatewayId"]

        # A gateway created by an interrupted run but never attached
        tagged = ec2.describe_internet_gateways(
            Filters=[{"Name": "tag:Name", "Values": [f"{name}-igw"]}]
        )["InternetGateways"]
        detached = [g for g in tagged if not g.get("Attachments")]
        if detached:
            igw_id = detached[0]["InternetGatewayId"]
        else:
            igw_id = ec2.create_internet_gateway()["InternetGateway"]["InternetGatewayId"]
            ec2.create_tags(Resources=[igw_id], Tags=_tags(f"{name}-igw"))
        ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
        filled.append("internet-gateway")
        return igw_id

    def _ensure_subnets(
        self, name: str, vpc_id: str, cidr_block: str, zones: list[str], filled: list[str]
    ) -> tuple[list[str], list[str]]:
        """One public and one private subnet per AZ, carved evenly out of the VPC block."""
        ec2 = self._client("ec2")
        existing = {
            s["CidrBlock"]: s
            for s in ec2.describe_subnets(Filters=[{"Name": "vpc-id", "Values": [vpc_id]}])["Subnets"]
        }
        block = ipaddress.ip_network(cidr_block)
        blocks = iter(block.subnets(prefixlen_diff=(2 * len(zones) - 1).bit_length()))

        public_ids, private_ids = [], []
        for index, zone in enumerate(zones):
            for tier, bucket in (("public", public_ids), ("private", private_ids)):
                cidr = str(next(blocks))
                subnet = existing.get(cidr)
                if subnet is None:
                    subnet_id = ec2.create_subnet(
                        VpcId=vpc_id, CidrBlock=cidr, AvailabilityZone=zone
                    )["Subnet"]["SubnetId"]
                    filled.append(f"subnet:{cidr}")
                    tags = {}
                else:
                    subnet_id = subnet["SubnetId"]
                    tags = {t["Key"]: t["Value"] for t in subnet.get("Tags", [])}
                if tags.get(TIER_TAG) != tier:
                    ec2.create_tags(
                        Resources=[subnet_id],
                        Tags=_tags(f"{name}-{tier}-{index + 1}", **{TIER_TAG: tier}),
                    )
                    if subnet is not None:
                        filled.append(f"subnet-tags:{cidr}")
                bucket.append(subnet_id)
        return public_ids, private_ids

    def _ensure_route_table(
        self, table_name: str, vpc_id: str, subnet_ids: list[str], filled: list[str], **target: str
    ) -> str:
        """Named table with a default route to `target`, associated with `subnet_ids`."""
        ec2 = self._client("ec2")
        tables = ec2.describe_route_tables(Filters=[
            {"Name": "vpc-id", "Values": [vpc_id]},
            {"Name": "tag:Name", "Values": [table_name]},
        ])["RouteTables"]
        if tables:
            table = tables[0]
        else:
            table = ec2.create_route_table(VpcId=vpc_id)["RouteTable"]
            ec2.create_tags(Resources=[table["RouteTableId"]], Tags=_tags(table_name))
            filled.append(f"route-table:{table_name}")
        table_id = table["RouteTableId"]

        if not any(r.get("DestinationCidrBlock") == "0.0.0.0/0" for r in table.get("Routes", [])):
            ec2.create_route(RouteTableId=table_id, DestinationCidrBlock="0.0.0.0/0", **target)
            filled.append(f"default-route:{table_name}")

        associated = {a.get("SubnetId") for a in table.get("Associations", [])}
        for subnet_id in subnet_ids:
            if subnet_id not in associated:
                ec2.associate_route_table(RouteTableId=table_id, SubnetId=subnet_id)
                filled.append(f"association:{subnet_id}")
        return table_id

    def _ensure_nat_gateway(self, nat_name: str, subnet_id: str, filled: list[str]) -> str:
        ec2 = self._client("ec2")
        nats = ec2.describe_nat_gateways(
            Filters=[{"Name": "subnet-id", "Values": [subnet_id]}]
        )["NatGateways"]
        live = [n for n in nats if n["State"] in ("pending", "available")]
        if live:
            return live[0]["NatGatewayId"]

        allocation = ec2.allocate_address(Domain="vpc")["AllocationId"]
        nat_id = ec2.create_nat_gateway(SubnetId=subnet_id, AllocationId=allocation)["NatGateway"]["NatGatewayId"]
        ec2.create_tags(Resources=[nat_id], Tags=_tags(nat_name))
        filled.append(f"nat-gateway:{nat_name}")
        return nat_id

    def _delete_network(self, name: str, attributes: dict, properties: dict) -> None:
        ec2 = self._client("ec2")
        vpc_id = attributes["vpc_id"]
        vpc_filter = [{"Name": "vpc-id", "Values": [vpc_id]}]

        nats = ec2.describe_nat_gateways(Filters=vpc_filter)["NatGateways"]
        live_nats = [n for n in nats if n["State"] not in ("deleted", "deleting")]
        for nat in live_nats:
            ec2.delete_nat_gateway(NatGatewayId=nat["NatGatewayId"])
        if live_nats:
            self._wait("ec2", "nat_gateway_deleted", NatGatewayIds=[n["NatGatewayId"] for n in live_nats])
        for nat in live_nats:
            for address in nat.get("NatGatewayAddresses", []):
                if "AllocationId" in address:
                    ec2.release_address(AllocationId=address["AllocationId"])

        for igw in ec2.describe_internet_gateways(
            Filters=[{"Name": "attachment.vpc-id", "Values": [vpc_id]}]
        )["InternetGateways"]:
            ec2.detach_internet_gateway(InternetGatewayId=igw["InternetGatewayId"], VpcId=vpc_id)
            ec2.delete_internet_gateway(InternetGatewayId=igw["InternetGatewayId"])

        for subnet in ec2.describe_subnets(Filters=vpc_filter)["Subnets"]:
            ec2.delete_subnet(SubnetId=subnet["SubnetId"])

        for table in ec2.describe_route_tables(Filters=vpc_filter)["RouteTables"]:
            if any(a.get("Main") for a in table.get("Associations", [])):
                continue
            ec2.delete_route_table(RouteTableId=table["RouteTableId"])

        ec2.delete_vpc(VpcId=vpc_id)

    # -----------------------------------------------------------------------
    # Security groups
    # -----------------------------------------------------------------------

    def _find_security_group(self, name: str, properties: dict) -> dict | None:
        filters = [{"Name": "group-name", "Values": [name]}]
        if properties.get("vpc_id"):
            filters.append({"Name": "vpc-id", "Values": [properties["vpc_id"]]})
        groups = self._client("ec2").describe_security_groups(Filters=filters)["SecurityGroups"]
        return {"group_id": groups[0]["GroupId"]} if groups else None

    def _ensure_security_group(self, name: str, properties: dict) -> Applied:
        ec2 = self._client("ec2")
        existing = self._find_security_group(name, properties)
        if existing is None:
            group_id = ec2.create_security_group(
                GroupName=name,
                Description=properties["description"],
                VpcId=properties["vpc_id"],
            )["GroupId"]
            ec2.create_tags(Resources=[group_id], Tags=_tags(name))
            action = "created"
        else:
            group_id = existing["group_id"]
            action = "unchanged"

        desired = [_ip_permission(rule) for rule in properties["ingress"]]
        if self._reconcile_ingress(group_id, desired) and action == "unchanged":
            action = "updated"
        return Applied(action, {"group_id": group_id})

    def _reconcile_ingress(self, group_id: str, desired: list[dict]) -> bool:
        """
        Make the group's ingress exactly `desired`: stale rules are revoked,
        missing ones authorized. The load balancer rule owned by the service
        attachment is not part of the declared set and is left in place.
        Returns True when anything changed.
        """
        ec2 = self._client("ec2")
        group = ec2.describe_security_groups(GroupIds=[group_id])["SecurityGroups"][0]
        live = {}
        for permission in group.get("IpPermissions", []):
            for single in _split_permission(permission):
                if _peer(single).get("Description") == LB_INGRESS_DESCRIPTION:
                    continue
                live[_permission_key(single)] = single
        wanted = {_permission_key(p): p for p in desired}

        stale = [p for key, p in live.items() if key not in wanted]
        missing = [p for key, p in wanted.items() if key not in live]
        if stale:
            ec2.revoke_security_group_ingress(GroupId=group_id, IpPermissions=stale)
        if missing:
            ec2.authorize_security_group_ingress(GroupId=group_id, IpPermissions=missing)
        if stale or missing:
            logger.info("Security group rules reconciled", extra={
                "group_id": group_id, "revoked": len(stale), "authorized": len(missing),
            })
        return bool(stale or missing)

    def _authorize(self, group_id: str, permissions: list[dict]) -> None:
        """Add each permission; ones already present are skipped."""
        for permission in permissions:
            try:
                self._client("ec2").authorize_security_group_ingress(
                    GroupId=group_id, IpPermissions=[permission]
                )
            except ClientError as e:
                if _error_code(e) != "InvalidPermission.Duplicate":
                    raise

    def _delete_security_group(self, name: str, attributes: dict, properties: dict) -> None:
        self._client("ec2").delete_security_group(GroupId=attributes["group_id"])

    # -----------------------------------------------------------------------
    # Secrets
    # -----------------------------------------------------------------------

    def _find_secret(self, name: str, properties: dict) -> dict | None:
        try:
            secret = self._client("secretsmanager").describe_secret(SecretId=name)
        except ClientError as e:
            if _is_missing(e):
                return None
            raise
        if secret.get("DeletedDate"):
            return None
        return {"arn": secret["ARN"], "name": secret["Name"]}

    def _ensure_secret(self, name: str, properties: dict) -> Applied:
        existing = self._find_secret(name, properties)
        if existing is not None:
            # Never regenerate: the database was created with the stored password
            return Applied("unchanged", existing)

        client = self._client("secretsmanager")
        password = client.get_random_password(
            PasswordLength=properties.get("password_length", 32),
            ExcludeCharacters=properties.get("exclude_characters", ""),
        )["RandomPassword"]
        document = dict(properties.get("secret_string_template", {}))
        document[properties.get("generate_string_key", "password")] = password

        created = client.create_secret(
            Name=name,
            Description=properties.get("description", ""),
            SecretString=json.dumps(document),
        )
        return Applied("created", {"arn": created["ARN"], "name": created["Name"]})

    def _delete_secret(self, name: str, attributes: dict, properties: dict) -> None:
        self._client("secretsmanager").delete_secret(
            SecretId=attributes["arn"], ForceDeleteWithoutRecovery=True
        )

    # -----------------------------------------------------------------------
    # Database
    # -----------------------------------------------------------------------

    def _describe_db(self, name: str) -> dict | None:
        try:
            return self._client("rds").describe_db_instances(DBInstanceIdentifier=name)["DBInstances"][0]
        except ClientError as e:
            if _is_missing(e):
                return None
            raise

    @staticmethod
    def _db_attributes(instance: dict) -> dict:
        endpoint = instance.get("Endpoint", {})
        return {
            "identifier": instance["DBInstanceIdentifier"],
            "arn": instance["DBInstanceArn"],
            "endpoint_address": endpoint.get("Address"),
            "endpoint_port": endpoint.get("Port"),
        }

    def _find_database(self, name: str, properties: dict) -> dict | None:
        instance = self._describe_db(name)
        if instance is None or instance.get("DBInstanceStatus") == "deleting":
            return None
        return self._db_attributes(instance)

    def _ensure_database(self, name: str, properties: dict) -> Applied:
        rds = self._client("rds")
        action = "unchanged"
        if self._find_database(name, properties) is None:
            subnet_group = f"{name}-subnets"
            try:
                rds.create_db_subnet_group(
                    DBSubnetGroupName=subnet_group,
                    DBSubnetGroupDescription=f"Subnets for {name}",
                    SubnetIds=properties["subnet_ids"],
                )
            except ClientError as e:
                if _error_code(e) not in ("DBSubnetGroupAlreadyExists", "DBSubnetGroupAlreadyExistsFault"):
                    raise

            credentials = self.read_secret(properties["credentials_secret_arn"])
            rds.create_db_instance(
                DBInstanceIdentifier=name,
                DBInstanceClass=properties["instance_class"],
                Engine=properties["engine"],
                EngineVersion=properties["engine_version"],
                DBName=properties["database_name"],
                MasterUsername=credentials["username"],
                MasterUserPassword=credentials["password"],
                AllocatedStorage=properties["allocated_storage"],
                StorageType=properties["storage_type"],
                MultiAZ=properties["multi_az"],
                PubliclyAccessible=properties["publicly_accessible"],
                DeletionProtection=properties["deletion_protection"],
                VpcSecurityGroupIds=properties["security_group_ids"],
                DBSubnetGroupName=subnet_group,
                Port=properties["port"],
            )
            action = "created"

        # Also covers an instance left "creating" by an interrupted run
        self._wait("rds", "db_instance_available", DBInstanceIdentifier=name)
        return Applied(action, self._db_attributes(self._describe_db(name)))

    def _delete_database(self, name: str, attributes: dict, properties: dict) -> None:
        rds = self._client("rds")
        rds.delete_db_instance(
            DBInstanceIdentifier=name, SkipFinalSnapshot=True, DeleteAutomatedBackups=True
        )
        self._wait("rds", "db_instance_deleted", DBInstanceIdentifier=name)
        try:
            rds.delete_db_subnet_group(DBSubnetGroupName=f"{name}-subnets")
        except ClientError as e:
            if not _is_missing(e):
                raise

    # -----------------------------------------------------------------------
    # ECS cluster, IAM role, log group, image repository
    # -----------------------------------------------------------------------

    def _find_cluster(self, name: str, properties: dict) -> dict | None:
        clusters = self._client("ecs").describe_clusters(clusters=[name])["clusters"]
        active = [c for c in clusters if c.get("status") == "ACTIVE"]
        return {"name": active[0]["clusterName"], "arn": active[0]["clusterArn"]} if active else None

    def _ensure_cluster(self, name: str, properties: dict) -> Applied:
        existing = self._find_cluster(name, properties)
        if existing is not None:
            return Applied("unchanged", existing)
        cluster = self._client("ecs").create_cluster(clusterName=name)["cluster"]
        return Applied("created", {"name": cluster["clusterName"], "arn": cluster["clusterArn"]})

    def _delete_cluster(self, name: str, attributes: dict, properties: dict) -> None:
        self._client("ecs").delete_cluster(cluster=name)

    def _find_role(self, name: str, properties: dict) -> dict | None:
        try:
            role = self._client("iam").get_role(RoleName=name)["Role"]
        except ClientError as e:
            if _is_missing(e):
                return None
            raise
        return {"name": role["RoleName"], "arn": role["Arn"]}

    def _ensure_role(self, name: str, properties: dict) -> Applied:
        iam = self._client("iam")
        existing = self._find_role(name, properties)
        if existing is None:
            trust = {
                "Version": "2012-10-17",
                "Statement": [{
                    "Effect": "Allow",
                    "Principal": {"Service": properties["assumed_by"]},
                    "Action": "sts:AssumeRole",
                }],
            }
            role = iam.create_role(RoleName=name, AssumeRolePolicyDocument=json.dumps(trust))["Role"]
            existing = {"name": role["RoleName"], "arn": role["Arn"]}
            action = "created"
        else:
            action = "unchanged"

        # Both calls are upserts
        for policy_arn in properties.get("managed_policy_arns", []):
            iam.attach_role_policy(RoleName=name, PolicyArn=policy_arn)
        for policy_name, document in properties.get("inline_policies", {}).items():
            iam.put_role_policy(RoleName=name, PolicyName=policy_name, PolicyDocument=json.dumps(document))
        return Applied(action, existing)

    def _delete_role(self, name: str, attributes: dict, properties: dict) -> None:
        iam = self._client("iam")
        for policy in iam.list_attached_role_policies(RoleName=name)["AttachedPolicies"]:
            iam.detach_role_policy(RoleName=name, PolicyArn=policy["PolicyArn"])
        for policy_name in iam.list_role_policies(RoleName=name)["PolicyNames"]:
            iam.delete_role_policy(RoleName=name, PolicyName=policy_name)
        iam.delete_role(RoleName=name)

    def _find_log_group(self, name: str, properties: dict) -> dict | None:
        groups = self._client("logs").describe_log_groups(logGroupNamePrefix=name)["logGroups"]
        for group in groups:
            if group["logGroupName"] == name:
                arn = group["arn"]
                return {"name": name, "arn": arn[:-2] if arn.endswith(":*") else arn}
        return None

    def _ensure_log_group(self, name: str, properties: dict) -> Applied:
        existing = self._find_log_group(name, properties)
        action = "unchanged"
        if existing is None:
            self._client("logs").create_log_group(logGroupName=name)
            existing = self._find_log_group(name, properties)
            action = "created"
        if properties.get("retention_in_days"):
            self._client("logs").put_retention_policy(
                logGroupName=name, retentionInDays=properties["retention_in_days"]
            )
        return Applied(action, existing)

    def _delete_log_group(self, name: str, attributes: dict, properties: dict) -> None:
        self._client("logs").delete_log_group(logGroupName=name)

    def _find_container_repository(self, name: str, properties: dict) -> dict | None:
        try:
            repos = self._client("ecr").describe_repositories(repositoryNames=[name])["repositories"]
        except ClientError as e:
            if _is_missing(e):
                return None
            raise
        repo = repos[0]
        return {"name": repo["repositoryName"], "arn": repo["repositoryArn"], "uri": repo["repositoryUri"]}

    # -----------------------------------------------------------------------
    # Task definition + service
    # -----------------------------------------------------------------------

    def _find_task_definition(self, name: str, properties: dict) -> dict | None:
        try:
            definition = self._client("ecs").describe_task_definition(
                taskDefinition=name, include=["TAGS"]
            )
        except ClientError as e:
            if _is_missing(e) or _error_code(e) == "ClientException":
                return None
            raise
        attrs = {
            "family": definition["taskDefinition"]["family"],
            "arn": definition["taskDefinition"]["taskDefinitionArn"],
        }
        for tag in definition.get("tags", []):
            if tag["key"] == FINGERPRINT_TAG:
                attrs["fingerprint"] = tag["value"]
        return attrs

    def _ensure_task_definition(self, name: str, properties: dict) -> Applied:
        # Revisions are immutable: register a new one only when the definition changed
        fingerprint = hashlib.sha256(
            json.dumps(properties, sort_keys=True, default=str).encode()
        ).hexdigest()
        current = self._find_task_definition(name, properties)
        if current is not None and current.get("fingerprint") == fingerprint:
            return Applied("unchanged", {"family": current["family"], "arn": current["arn"]})

        container = properties["container"]
        log = container["log_configuration"]
        definition = self._client("ecs").register_task_definition(
            family=name,
            taskRoleArn=properties["task_role_arn"],
            executionRoleArn=properties["execution_role_arn"],
            networkMode=properties["network_mode"],
            requiresCompatibilities=properties["requires_compatibilities"],
            cpu=properties["cpu"],
            memory=properties["memory"],
            runtimePlatform={
                "cpuArchitecture": properties["runtime_platform"]["cpu_architecture"],
                "operatingSystemFamily": properties["runtime_platform"]["operating_system_family"],
            },
            containerDefinitions=[{
                "name": container["name"],
                "image": container["image"],
                "essential": container["essential"],
                "command": container["command"],
                "environment": [
                    {"name": key, "value": str(value)}
                    for key, value in sorted(container["environment"].items())
                ],
                "portMappings": [
                    {
                        "containerPort": p["container_port"],
                        "hostPort": p["host_port"],
                        "protocol": p["protocol"],
                    }
                    for p in container["port_mappings"]
                ],
                "logConfiguration": {
                    "logDriver": "awslogs",
                    "options": {
                        "awslogs-group": log["log_group"],
                        "awslogs-stream-prefix": log["stream_prefix"],
                        "awslogs-region": log["region"],
                    },
                },
            }],
            tags=[{"key": FINGERPRINT_TAG, "value": fingerprint}],
        )["taskDefinition"]
        return Applied(
            "created" if current is None else "updated",
            {"family": definition["family"], "arn": definition["taskDefinitionArn"]},
        )

    def _delete_task_definition(self, name: str, attributes: dict, properties: dict) -> None:
        ecs = self._client("ecs")
        paginator = ecs.get_paginator("list_task_definitions")
        for page in paginator.paginate(familyPrefix=name, status="ACTIVE"):
            for arn in page["taskDefinitionArns"]:
                ecs.deregister_task_definition(taskDefinition=arn)

    def _describe_service(self, cluster: str, name: str) -> dict | None:
        try:
            services = self._client("ecs").describe_services(cluster=cluster, services=[name])["services"]
        except ClientError as e:
            if _is_missing(e):
                return None
            raise
        active = [s for s in services if s.get("status") == "ACTIVE"]
        return active[0] if active else None

    @staticmethod
    def _service_attributes(service: dict, cluster: str) -> dict:
        return {"name": service["serviceName"], "cluster_name": cluster, "arn": service["serviceArn"]}

    def _find_service(self, name: str, properties: dict) -> dict | None:
        service = self._describe_service(properties["cluster"], name)
        return self._service_attributes(service, properties["cluster"]) if service else None

    def _ensure_service(self, name: str, properties: dict) -> Applied:
        ecs = self._client("ecs")
        cluster = properties["cluster"]
        service = self._describe_service(cluster, name)

        if service is None:
            service = ecs.create_service(
                cluster=cluster,
                serviceName=name,
                taskDefinition=properties["task_definition_arn"],
                desiredCount=properties["desired_count"],
                launchType=properties["launch_type"],
                platformVersion=properties["platform_version"],
                networkConfiguration={
                    "awsvpcConfiguration": {
                        "subnets": properties["subnet_ids"],
                        "securityGroups": properties["security_group_ids"],
                        "assignPublicIp": "ENABLED" if properties["assign_public_ip"] else "DISABLED",
                    }
                },
            )["service"]
            action = "created"
        elif service["taskDefinition"] != properties["task_definition_arn"]:
            # desiredCount is left alone: auto scaling owns it once the service runs
            service = ecs.update_service(
                cluster=cluster, service=name, taskDefinition=properties["task_definition_arn"]
            )["service"]
            action = "updated"
        else:
            action = "unchanged"

        self._wait("ecs", "services_stable", cluster=cluster, services=[name])
        return Applied(action, self._service_attributes(service, cluster))

    def _delete_service(self, name: str, attributes: dict, properties: dict) -> None:
        ecs = self._client("ecs")
        cluster = attributes["cluster_name"]
        ecs.update_service(cluster=cluster, service=name, desiredCount=0)
        ecs.delete_service(cluster=cluster, service=name, force=True)
        self._wait("ecs", "services_inactive", cluster=cluster, services=[name])

    # -----------------------------------------------------------------------
    # Application Auto Scaling
    # -----------------------------------------------------------------------

    def _find_scalable_target(self, name: str, properties: dict) -> dict | None:
        resource_id = f"service/{properties['cluster']}/{properties['service']}"
        targets = self._client("application-autoscaling").describe_scalable_targets(
            ServiceNamespace=properties["service_namespace"],
            ResourceIds=[resource_id],
            ScalableDimension=properties["scalable_dimension"],
        )["ScalableTargets"]
        if not targets:
            return None
        return {
            "resource_id": resource_id,
            "min_capacity": targets[0]["MinCapacity"],
            "max_capacity": targets[0]["MaxCapacity"],
        }

    def _ensure_scalable_target(self, name: str, properties: dict) -> Applied:
        current = self._find_scalable_target(name, properties)
        wanted = (properties["min_capacity"], properties["max_capacity"])
        resource_id = f"service/{properties['cluster']}/{properties['service']}"
        if current is not None and (current["min_capacity"], current["max_capacity"]) == wanted:
            return Applied("unchanged", {"resource_id": resource_id})

        self._client("application-autoscaling").register_scalable_target(
            ServiceNamespace=properties["service_namespace"],
            ResourceId=resource_id,
            ScalableDimension=properties["scalable_dimension"],
            MinCapacity=properties["min_capacity"],
            MaxCapacity=properties["max_capacity"],
        )
        return Applied("created" if current is None else "updated", {"resource_id": resource_id})

    def _delete_scalable_target(self, name: str, attributes: dict, properties: dict) -> None:
        self._client("application-autoscaling").deregister_scalable_target(
            ServiceNamespace=properties["service_namespace"],
            ResourceId=attributes["resource_id"],
            ScalableDimension=properties["scalable_dimension"],
        )

    def _describe_scaling_policy(self, name: str, properties: dict) -> dict | None:
        policies = self._client("application-autoscaling").describe_scaling_policies(
            PolicyNames=[name],
            ServiceNamespace=properties["service_namespace"],
            ResourceId=properties["resource_id"],
            ScalableDimension=properties["scalable_dimension"],
        )["ScalingPolicies"]
        return next((p for p in policies if p["PolicyName"] == name), None)

    def _find_scaling_policy(self, name: str, properties: dict) -> dict | None:
        policy = self._describe_scaling_policy(name, properties)
        return {"arn": policy["PolicyARN"]} if policy else None

    def _ensure_scaling_policy(self, name: str, properties: dict) -> Applied:
        configuration = {
            "TargetValue": float(properties["target_value"]),
            "PredefinedMetricSpecification": {
                "PredefinedMetricType": properties["predefined_metric"],
            },
            "ScaleInCooldown": properties["scale_in_cooldown"],
            "ScaleOutCooldown": properties["scale_out_cooldown"],
        }
        current = self._describe_scaling_policy(name, properties)
        if (
            current is not None
            and current.get("PolicyType") == properties["policy_type"]
            and _same_settings(current.get("TargetTrackingScalingPolicyConfiguration", {}), configuration)
        ):
            return Applied("unchanged", {"arn": current["PolicyARN"]})

        policy = self._client("application-autoscaling").put_scaling_policy(
            PolicyName=name,
            ServiceNamespace=properties["service_namespace"],
            ResourceId=properties["resource_id"],
            ScalableDimension=properties["scalable_dimension"],
            PolicyType=properties["policy_type"],
            TargetTrackingScalingPolicyConfiguration=configuration,
        )
        return Applied("created" if current is None else "updated", {"arn": policy["PolicyARN"]})

    def _delete_scaling_policy(self, name: str, attributes: dict, properties: dict) -> None:
        self._client("application-autoscaling").delete_scaling_policy(
            PolicyName=name,
            ServiceNamespace=properties["service_namespace"],
            ResourceId=properties["resource_id"],
            ScalableDimension=properties["scalable_dimension"],
        )

    # -----------------------------------------------------------------------
    # Load balancing
    # -----------------------------------------------------------------------

    def _find_load_balancer(self, name: str, properties: dict) -> dict | None:
        try:
            lbs = self._client("elbv2").describe_load_balancers(Names=[name])["LoadBalancers"]
        except ClientError as e:
            if _is_missing(e):
                return None
            raise
        lb = lbs[0]
        return {
            "arn": lb["LoadBalancerArn"],
            "dns_name": lb["DNSName"],
            "canonical_hosted_zone_id": lb["CanonicalHostedZoneId"],
        }

    def _ensure_load_balancer(self, name: str, properties: dict) -> Applied:
        existing = self._find_load_balancer(name, properties)
        action = "unchanged"
        if existing is None:
            self._client("elbv2").create_load_balancer(
                Name=name,
                Subnets=properties["subnet_ids"],
                SecurityGroups=properties["security_group_ids"],
                Scheme=properties["scheme"],
                Type=properties["type"],
                Tags=_tags(name),
            )
            existing = self._find_load_balancer(name, properties)
            action = "created"
        self._wait("elbv2", "load_balancer_available", LoadBalancerArns=[existing["arn"]])
        return Applied(action, existing)

    def _delete_load_balancer(self, name: str, attributes: dict, properties: dict) -> None:
        self._client("elbv2").delete_load_balancer(LoadBalancerArn=attributes["arn"])
        self._wait("elbv2", "load_balancers_deleted", LoadBalancerArns=[attributes["arn"]])

    def _describe_target_group(self, name: str) -> dict | None:
        try:
            groups = self._client("elbv2").describe_target_groups(Names=[name])["TargetGroups"]
        except ClientError as e:
            if _is_missing(e):
                return None
            raise
        return groups[0]

    def _find_target_group(self, name: str, properties: dict) -> dict | None:
        group = self._describe_target_group(name)
        return {"arn": group["TargetGroupArn"]} if group else None

    def _ensure_target_group(self, name: str, properties: dict) -> Applied:
        elbv2 = self._client("elbv2")
        check = properties["health_check"]
        health_check = {
            "HealthCheckProtocol": "HTTP",
            "HealthCheckPort": check["port"],
            "HealthCheckPath": check["path"],
            "HealthCheckIntervalSeconds": check["interval_seconds"],
            "HealthCheckTimeoutSeconds": check["timeout_seconds"],
            "HealthyThresholdCount": check["healthy_threshold"],
            "UnhealthyThresholdCount": check["unhealthy_threshold"],
            "Matcher": {"HttpCode": check["matcher"]},
        }
        current = self._describe_target_group(name)
        if current is None:
            group = elbv2.create_target_group(
                Name=name,
                Protocol=properties["protocol"],
                Port=properties["port"],
                VpcId=properties["vpc_id"],
                TargetType=properties["target_type"],
                **health_check,
            )["TargetGroups"][0]
            return Applied("created", {"arn": group["TargetGroupArn"]})

        attributes = {"arn": current["TargetGroupArn"]}
        if _same_settings(current, health_check):
            return Applied("unchanged", attributes)
        elbv2.modify_target_group(TargetGroupArn=current["TargetGroupArn"], **health_check)
        return Applied("updated", attributes)

    def _delete_target_group(self, name: str, attributes: dict, properties: dict) -> None:
        self._client("elbv2").delete_target_group(TargetGroupArn=attributes["arn"])

    def _describe_listener(self, properties: dict) -> dict | None:
        try:
            listeners = self._client("elbv2").describe_listeners(
                LoadBalancerArn=properties["load_balancer_arn"]
            )["Listeners"]
        except ClientError as e:
            if _is_missing(e):
                return None
            raise
        return next((l for l in listeners if l["Port"] == properties["port"]), None)

    def _find_listener(self, name: str, properties: dict) -> dict | None:
        listener = self._describe_listener(properties)
        return {"arn": listener["ListenerArn"]} if listener else None

    def _ensure_listener(self, name: str, properties: dict) -> Applied:
        elbv2 = self._client("elbv2")
        action = properties["default_action"]
        if action["type"] == "redirect":
            default_actions = [{
                "Type": "redirect",
                "RedirectConfig": {
                    "Protocol": action["protocol"],
                    "Port": action["port"],
                    "StatusCode": action["status_code"],
                },
            }]
        else:
            default_actions = [{"Type": "forward", "TargetGroupArn": action["target_group_arn"]}]

        extra = {}
        if properties.get("certificate_arn"):
            extra["Certificates"] = [{"CertificateArn": properties["certificate_arn"]}]

        current = self._describe_listener(properties)
        if current is None:
            listener = elbv2.create_listener(
                LoadBalancerArn=properties["load_balancer_arn"],
                Protocol=properties["protocol"],
                Port=properties["port"],
                DefaultActions=default_actions,
                **extra,
            )["Listeners"][0]
            return Applied("created", {"arn": listener["ListenerArn"]})

        attributes = {"arn": current["ListenerArn"]}
        if _same_listener(current, properties["protocol"], default_actions, properties.get("certificate_arn")):
            return Applied("unchanged", attributes)
        elbv2.modify_listener(
            ListenerArn=current["ListenerArn"],
            Protocol=properties["protocol"],
            Port=properties["port"],
            DefaultActions=default_actions,
            **extra,
        )
        return Applied("updated", attributes)

    def _delete_listener(self, name: str, attributes: dict, properties: dict) -> None:
        self._client("elbv2").delete_listener(ListenerArn=attributes["arn"])

    def _find_service_attachment(self, name: str, properties: dict) -> dict | None:
        service = self._describe_service(properties["cluster"], properties["service"])
        if service is None:
            return None
        for lb in service.get("loadBalancers", []):
            if lb.get("targetGroupArn") == properties["target_group_arn"]:
                return {"service_arn": service["serviceArn"]}
        return None

    def _ensure_service_attachment(self, name: str, properties: dict) -> Applied:
        self._authorize_lb_to_service(properties)
        existing = self._find_service_attachment(name, properties)
        if existing is not None:
            return Applied("unchanged", existing)

        cluster, service = properties["cluster"], properties["service"]
        updated = self._client("ecs").update_service(
            cluster=cluster,
            service=service,
            loadBalancers=[{
                "targetGroupArn": properties["target_group_arn"],
                "containerName": properties["container_name"],
                "containerPort": properties["container_port"],
            }],
        )["service"]
        self._wait("ecs", "services_stable", cluster=cluster, services=[service])
        return Applied("created", {"service_arn": updated["serviceArn"]})

    def _lb_permission(self, properties: dict) -> dict:
        return {
            "IpProtocol": "tcp",
            "FromPort": properties["container_port"],
            "ToPort": properties["container_port"],
            "UserIdGroupPairs": [{
                "GroupId": properties["source_group_id"],
                "Description": LB_INGRESS_DESCRIPTION,
            }],
        }

    def _authorize_lb_to_service(self, properties: dict) -> None:
        for group_id in properties["service_group_ids"]:
            self._authorize(group_id, [self._lb_permission(properties)])

    def _delete_service_attachment(self, name: str, attributes: dict, properties: dict) -> None:
        self._client("ecs").update_service(
            cluster=properties["cluster"], service=properties["service"], loadBalancers=[]
        )
        for group_id in properties["service_group_ids"]:
            try:
                self._client("ec2").revoke_security_group_ingress(
                    GroupId=group_id, IpPermissions=[self._lb_permission(properties)]
                )
            except ClientError as e:
                if not _is_missing(e):
                    raise

    # -----------------------------------------------------------------------
    # Imported TLS certificate + DNS
    # -----------------------------------------------------------------------

    def _find_certificate(self, name: str, properties: dict) -> dict | None:
        try:
            certificate = self._client("acm").describe_certificate(CertificateArn=name)["Certificate"]
        except ClientError as e:
            if _is_missing(e):
                return None
            raise
        return {
            "arn": certificate["CertificateArn"],
            "domain_name": certificate.get("DomainName"),
            "status": certificate.get("Status"),
        }

    def _find_hosted_zone(self, name: str, properties: dict) -> dict | None:
        try:
            zone = self._client("route53").get_hosted_zone(Id=name)["HostedZone"]
        except ClientError as e:
            if _is_missing(e):
                return None
            raise
        zone_name = zone["Name"].rstrip(".")
        expected = properties.get("zone_name")
        if expected and zone_name != expected:
            raise BackendError(
                f"Hosted zone {name!r} serves {zone_name!r}, not {expected!r}",
                code="ZoneMismatch",
            )
        return {"zone_id": zone["Id"].split("/")[-1], "zone_name": zone_name}

    def _record_set(self, properties: dict) -> dict | None:
        wanted = properties["record_name"].rstrip(".")
        response = self._client("route53").list_resource_record_sets(
            HostedZoneId=properties["zone_id"],
            StartRecordName=wanted,
            StartRecordType=properties["type"],
            MaxItems="1",
        )
        for record in response["ResourceRecordSets"]:
            if record["Name"].rstrip(".") == wanted and record["Type"] == properties["type"]:
                return record
        return None

    def _find_dns_record(self, name: str, properties: dict) -> dict | None:
        record = self._record_set(properties)
        return {"fqdn": properties["record_name"]} if record else None

    def _ensure_dns_record(self, name: str, properties: dict) -> Applied:
        desired = _record_set_from(properties)
        current = self._record_set(properties)
        if current is not None and _same_record(current, desired):
            return Applied("unchanged", {"fqdn": properties["record_name"]})

        self._client("route53").change_resource_record_sets(
            HostedZoneId=properties["zone_id"],
            ChangeBatch={"Changes": [{"Action": "UPSERT", "ResourceRecordSet": desired}]},
        )
        return Applied("created" if current is None else "updated", {"fqdn": properties["record_name"]})

    def _delete_dns_record(self, name: str, attributes: dict, properties: dict) -> None:
        current = self._record_set(properties)
        if current is None:
            return
        self._client("route53").change_resource_record_sets(
            HostedZoneId=properties["zone_id"],
            ChangeBatch={"Changes": [{"Action": "DELETE", "ResourceRecordSet": current}]},
        )


def _ip_permission(rule: dict) -> dict:
    permission = {"IpProtocol": rule["protocol"], "FromPort": rule["port"], "ToPort": rule["port"]}
    peer: dict[str, str] = {}
    if rule.get("description"):
        peer["Description"] = rule["description"]
    if rule.get("cidr"):
        permission["IpRanges"] = [{"CidrIp": rule["cidr"], **peer}]
    else:
        permission["UserIdGroupPairs"] = [{"GroupId": rule["source_group_id"], **peer}]
    return permission


def _split_permission(permission: dict) -> Iterator[dict]:
    """One permission per peer, in the shape revoke_security_group_ingress accepts."""
    base = {k: permission[k] for k in ("IpProtocol", "FromPort", "ToPort") if k in permission}
    for ip_range in permission.get("IpRanges", []):
        yield {**base, "IpRanges": [ip_range]}
    for ip_range in permission.get("Ipv6Ranges", []):
        yield {**base, "Ipv6Ranges": [ip_range]}
    for pair in permission.get("UserIdGroupPairs", []):
        peer = {k: v for k, v in pair.items() if k in ("GroupId", "UserId", "Description")}
        yield {**base, "UserIdGroupPairs": [peer]}


def _peer(permission: dict) -> dict:
    for key in ("IpRanges", "Ipv6Ranges", "UserIdGroupPairs"):
        if permission.get(key):
            return permission[key][0]
    return {}


def _permission_key(permission: dict) -> tuple:
    peer = _peer(permission)
    return (
        permission["IpProtocol"],
        permission.get("FromPort"),
        permission.get("ToPort"),
        peer.get("CidrIp") or peer.get("CidrIpv6") or peer.get("GroupId"),
    )


def _record_set_from(properties: dict) -> dict:
    record = {"Name": properties["record_name"], "Type": properties["type"]}
    alias = properties.get("alias")
    if alias:
        record["AliasTarget"] = {
            "HostedZoneId": alias["hosted_zone_id"],
            "DNSName": alias["dns_name"],
            "EvaluateTargetHealth": alias["evaluate_target_health"],
        }
    else:
        record["TTL"] = properties["ttl"]
        record["ResourceRecords"] = [{"Value": v} for v in properties["values"]]
    return record


def _same_record(current: dict, desired: dict) -> bool:
    if "AliasTarget" in desired:
        alias = current.get("AliasTarget", {})
        return (
            alias.get("DNSName", "").rstrip(".").lower()
            == desired["AliasTarget"]["DNSName"].rstrip(".").lower()
            and alias.get("HostedZoneId") == desired["AliasTarget"]["HostedZoneId"]
        )
    return (
        current.get("TTL") == desired["TTL"]
        and [r["Value"] for r in current.get("ResourceRecords", [])]
        == [r["Value"] for r in desired["ResourceRecords"]]
    )


def _same_settings(live: dict, wanted: dict) -> bool:
    """True when every wanted key has the same value live. Scalars compare as strings."""
    for key, value in wanted.items():
        current = live.get(key)
        if isinstance(value, dict):
            if not isinstance(current, dict) or not _same_settings(current, value):
                return False
        elif isinstance(value, float):
            try:
                if float(current) != value:
                    return False
            except (TypeError, ValueError):
                return False
        elif str(current) != str(value):
            return False
    return True


def _same_listener(live: dict, protocol: str, default_actions: list[dict], certificate_arn: str | None) -> bool:
    if live.get("Protocol") != protocol:
        return False
    if certificate_arn and [c.get("CertificateArn") for c in live.get("Certificates", [])] != [certificate_arn]:
        return False
    actions = live.get("DefaultActions", [])
    if len(actions) != len(default_actions):
        return False
    return all(
        current.get("Type") == action["Type"] and _same_settings(current, action)
        for current, action in zip(actions, default_actions)
    )
