"""Static workflow catalog."""

from __future__ import annotations

from . import grant_eth_ost, stake_and_mint
from .definition import WorkflowCatalog, WorkflowDefinition


def default_catalog() -> WorkflowCatalog:
    """Catalog of the workflows that ship with complete handlers."""
    return WorkflowCatalog([grant_eth_ost.definition()])


__all__ = [
    "WorkflowCatalog",
    "WorkflowDefinition",
    "default_catalog",
    "grant_eth_ost",
    "stake_and_mint",
]
