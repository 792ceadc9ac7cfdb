"""
core/sources.py
Contract for external detection sources (router / controller integrations).

An integration reports what it knows about a batch of IPs; the orchestrator
feeds the observations to DetectionMerger. Integrations are optional
collaborators: one that fails is logged and skipped for that scan.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable

from core.detection_merger import DetectionSource, Observation


class AttributeSource(ABC):
    """Abstract base class for hostname / vendor providers."""

    source: DetectionSource

    @abstractmethod
    async def collect(self, ips: Iterable[str]) -> Dict[str, Observation]:
        """Retrieves what this source knows about the given IPs.

        Returns:
            A mapping ip → Observation. IPs the source does not know are
            simply absent. Every Observation must carry ``self.source``.
        """


__all__ = ["AttributeSource"]
