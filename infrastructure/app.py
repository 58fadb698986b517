#!/usr/bin/env python3
"""
Automall Provisioning App
=========================
Operator entry point for one Automall environment.

  python infrastructure/app.py plan                     # print the ordered plan
  python infrastructure/app.py deploy --environment prod
  python infrastructure/app.py deploy --dry-run         # in-memory backend, no AWS calls
  python infrastructure/app.py deploy --smoke-check     # poll https://<domain>/health after deploy
  python infrastructure/app.py destroy --environment dev

Provisioning order (resolved from the dependency graph, not from this file):
  network → security groups → secret → database → cluster/role/logs →
  task definition → service → autoscaling → load balancer → listeners →
  service attachment → DNS records

Configuration comes from the environment; see automall/config.py for the
variable list. Every variable is validated before the first AWS call.
"""
from __future__ import annotations

import argparse
import json
import os
import sys

import boto3
from aws_xray_sdk.core import patch_all, xray_recorder
from pydantic import ValidationError

from automall.app_stack import AutomallStack, build_stack
from automall.aws_backend import AwsBackend
from automall.backend import InMemoryBackend
from automall.config import AppConfig
from automall.errors import ConfigurationError, ProvisioningError
from automall.graph import ResourceKind
from automall.logger import get_logger, redact
from automall.smoke import wait_until_healthy

logger = get_logger("automall.app")


def _resolve_account(environ: dict[str, str], dry_run: bool) -> dict[str, str]:
    """Default image repository needs the account id; ask STS when it wasn't given."""
    if environ.get("ECR_REPO") or environ.get("AWS_ACCOUNT_ID"):
        return environ
    resolved = dict(environ)
    if dry_run:
        resolved["AWS_ACCOUNT_ID"] = InMemoryBackend.account_id
    else:
        resolved["AWS_ACCOUNT_ID"] = boto3.client("sts").get_caller_identity()["Account"]
    return resolved


def _dry_run_backend(stack: AutomallStack) -> InMemoryBackend:
    config = stack.config
    backend = InMemoryBackend(region=config.region)
    backend.register(
        ResourceKind.HOSTED_ZONE, config.hosted_zone_id,
        zone_id=config.hosted_zone_id, zone_name=config.domain_name,
    )
    backend.register(ResourceKind.CERTIFICATE, config.certificate_arn, arn=config.certificate_arn)
    repository = stack.graph.get("container-repo").name
    backend.register(ResourceKind.CONTAINER_REPOSITORY, repository, name=repository)
    return backend


def run(args: argparse.Namespace) -> int:
    environ = dict(os.environ)
    # Required variables first: a missing key must fail before STS or any backend call
    AppConfig.from_env(environ, environment=args.environment)
    environ = _resolve_account(environ, args.dry_run)

    stack = build_stack(environ, version_file=args.version_file, environment=args.environment)

    if args.command == "plan":
        print(json.dumps(redact(stack.plan()), indent=2))
        print(f"fingerprint: {stack.graph.fingerprint()}")
        return 0

    backend = _dry_run_backend(stack) if args.dry_run else AwsBackend(region=stack.config.region)

    if args.command == "destroy":
        deleted = stack.destroy(backend)
        print(f"Deleted {len(deleted)} resources: {', '.join(deleted) or '-'}")
        return 0

    outputs = stack.apply(backend)
    for key, value in outputs.as_cfn_style().items():
        print(f"{key} = {value}")

    if args.smoke_check and not args.dry_run:
        if not wait_until_healthy(outputs.domain_name, attempts=args.smoke_attempts):
            print(f"Smoke check failed: {outputs.domain_name}/health never returned 200", file=sys.stderr)
            return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Provision the Automall application environment")
    parser.add_argument("command", choices=["plan", "deploy", "destroy"])
    parser.add_argument("--environment", help="Environment name (overrides ENVIRONMENT)")
    parser.add_argument("--version-file", default="version.txt", help="File holding the image tag")
    parser.add_argument("--dry-run", action="store_true", help="Use the in-memory backend")
    parser.add_argument("--smoke-check", action="store_true", help="Poll /health after deploy")
    parser.add_argument("--smoke-attempts", type=int, default=30)
    args = parser.parse_args(argv)

    xray_recorder.configure(context_missing="LOG_ERROR")
    patch_all()

    try:
        with xray_recorder.in_segment(f"automall-{args.command}"):
            return run(args)
    except (ConfigurationError, ValidationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    except ProvisioningError as e:
        logger.error("Provisioning failed", extra={"error": str(e), "error_type": type(e).__name__})
        print(f"Provisioning failed: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
