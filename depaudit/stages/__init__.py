"""Scan stages."""

from depaudit.stages.base import BaseStage, StageTool
from depaudit.stages.hygiene import HygieneStage
from depaudit.stages.supply_chain import SupplyChainStage
from depaudit.stages.vulnerability import VulnerabilityStage


def default_stages() -> list[BaseStage]:
    """One instance of every stage, in pipeline order."""
    return [VulnerabilityStage(), HygieneStage(), SupplyChainStage()]


__all__ = [
    "BaseStage",
    "HygieneStage",
    "StageTool",
    "SupplyChainStage",
    "VulnerabilityStage",
    "default_stages",
]
