"""Traffic routers: where canary weight is actually applied.

Routing is authoritative outside the controller; a router only pushes the
desired weight and reads back what the routing layer reports.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from loguru import logger

from src.canary.core.config import settings

CANARY_WEIGHT_ANNOTATION = "nginx.ingress.kubernetes.io/canary-weight"


class TrafficRouter(ABC):
    @abstractmethod
    async def set_weight(self, application: str, weight: int) -> None:
        """Route ``weight`` percent of traffic to the canary."""
        pass

    @abstractmethod
    async def get_weight(self, application: str) -> Optional[int]:
        """Weight currently applied by the routing layer, if known."""
        pass


class InMemoryTrafficRouter(TrafficRouter):
    """Keeps weights in memory; used in development and tests."""

    def __init__(self):
        self.weights: Dict[str, int] = {}
        self.calls: List[tuple] = []

    async def set_weight(self, application: str, weight: int) -> None:
        self.weights[application] = weight
        self.calls.append((application, weight))

    async def get_weight(self, application: str) -> Optional[int]:
        return self.weights.get(application)


class NginxIngressTrafficRouter(TrafficRouter):
    """Shifts traffic by annotating the canary ingress through kubectl."""

    def __init__(
        self,
        namespace: Optional[str] = None,
        ingress_name_template: Optional[str] = None,
        kubectl: str = "kubectl",
    ):
        self.namespace = namespace or settings.INGRESS_NAMESPACE
        self.ingress_name_template = ingress_name_template or settings.INGRESS_NAME_TEMPLATE
        self.kubectl = kubectl

    def ingress_name(self, application: str) -> str:
        return self.ingress_name_template.format(application=application)

    async def _kubectl(self, *args: str) -> str:
        process = await asyncio.create_subprocess_exec(
            self.kubectl, *args, "-n", self.namespace,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise RuntimeError(f"kubectl {args[0]} failed: {stderr.decode().strip()}")
        return stdout.decode().strip()

    async def set_weight(self, application: str, weight: int) -> None:
        ingress = self.ingress_name(application)
        logger.info(f"--> Setting canary weight of {ingress} to {weight}%")
        await self._kubectl(
            "annotate", "ingress", ingress,
            f"{CANARY_WEIGHT_ANNOTATION}={weight}",
            "--overwrite",
        )

    async def get_weight(self, application: str) -> Optional[int]:
        jsonpath = "{.metadata.annotations." + CANARY_WEIGHT_ANNOTATION.replace(".", "\\.") + "}"
        output = await self._kubectl(
            "get", "ingress", self.ingress_name(application), "-o", f"jsonpath={jsonpath}"
        )
        try:
            return int(output)
        except ValueError:
            return None


def create_traffic_router(kind: Optional[str] = None) -> TrafficRouter:
    kind = kind or settings.TRAFFIC_ROUTER
    if kind == "nginx":
        return NginxIngressTrafficRouter()
    return InMemoryTrafficRouter()
