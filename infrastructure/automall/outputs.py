"""Stack outputs surfaced to the operator after a successful run."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from automall.backend import LiveState
from automall.graph import Resource
from automall.logger import get_logger

logger = get_logger(__name__)


class StackOutputs(BaseModel):
    model_config = ConfigDict(frozen=True)

    domain_name: str
    load_balancer_dns: str

    def as_cfn_style(self) -> dict[str, str]:
        return {"DomainName": self.domain_name, "LoadBalancerDNS": self.load_balancer_dns}


class OutputEmitter:
    def __init__(self, state: LiveState):
        self._state = state

    def emit(self, domain: str, load_balancer: Resource) -> StackOutputs:
        outputs = StackOutputs(
            domain_name=f"https://{domain}",
            load_balancer_dns=self._state.require(load_balancer.id, "dns_name"),
        )
        logger.info("Stack outputs", extra=outputs.as_cfn_style())
        return outputs
