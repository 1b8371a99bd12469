"""
Collaborator interfaces and the HTTP commerce platform client.

Exports:
    PlatformClient, ProposalGenerator, SignalSource: collaborator protocols
    PlatformResult, Proposal, CatalogObservation: their result types
    CommercePlatformClient: httpx implementation of PlatformClient
"""

from change_governor.platform.protocols import (
    CatalogObservation,
    PlatformClient,
    PlatformResult,
    Proposal,
    ProposalGenerator,
    SignalSource,
)
from change_governor.platform.http_client import CommercePlatformClient

__all__ = [
    "CatalogObservation",
    "CommercePlatformClient",
    "PlatformClient",
    "PlatformResult",
    "Proposal",
    "ProposalGenerator",
    "SignalSource",
]
