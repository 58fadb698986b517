"""
Unit tests for service auto scaling.
"""
import pytest
from pydantic import ValidationError

from automall.app_stack import build_stack
from automall.errors import ConfigurationError
from automall.graph import Resource, ResourceGraph, ResourceKind
from automall.scaling_stack import AutoScalingPolicyEngine, CapacityBounds, UtilizationMetric


def _service(graph):
    return graph.add_node(Resource(id="service", kind=ResourceKind.SERVICE, name="automall-test-ecs-service"))


@pytest.mark.parametrize("target", [0, -5, 100.5, 150])
def test_utilization_target_outside_range_rejected(target):
    graph = ResourceGraph()
    engine = AutoScalingPolicyEngine(graph, "automall-test")
    scalable = engine.attach(_service(graph), 2, 12)

    with pytest.raises(ConfigurationError, match="utilization"):
        engine.add_utilization_rule(scalable, UtilizationMetric.CPU, target, 300, 180)
    assert "scaling-cpu" not in graph


def test_utilization_target_of_exactly_100_accepted():
    graph = ResourceGraph()
    engine = AutoScalingPolicyEngine(graph, "automall-test")
    scalable = engine.attach(_service(graph), 2, 12)

    policy = engine.add_utilization_rule(scalable, UtilizationMetric.MEMORY, 100, 300, 180)
    assert policy.properties["target_value"] == 100


def test_min_above_max_rejected():
    with pytest.raises(ValidationError):
        CapacityBounds(min_capacity=5, max_capacity=2)

    graph = ResourceGraph()
    with pytest.raises(ConfigurationError, match="scaling bounds"):
        AutoScalingPolicyEngine(graph, "automall-test").attach(_service(graph), 12, 2)


def test_application_scaling_rules(app_environ, version_file, backend):
    stack = build_stack(app_environ, version_file=version_file)
    stack.apply(backend)

    target = backend.resource(ResourceKind.SCALABLE_TARGET, "automall-prod-scaling")
    assert (target["min_capacity"], target["max_capacity"]) == (2, 12)
    assert target["service"] == "automall-prod-ecs-service"

    cpu = backend.resource(ResourceKind.SCALING_POLICY, "automall-prod-cpu-scaling")
    memory = backend.resource(ResourceKind.SCALING_POLICY, "automall-prod-memory-scaling")
    assert cpu["predefined_metric"] == "ECSServiceAverageCPUUtilization"
    assert cpu["target_value"] == 60
    assert memory["predefined_metric"] == "ECSServiceAverageMemoryUtilization"
    assert memory["target_value"] == 65
    for policy in (cpu, memory):
        assert policy["scale_in_cooldown"] == 300
        assert policy["scale_out_cooldown"] == 180
        assert policy["resource_id"] == "service/automall-prod-cluster/automall-prod-ecs-service"
