"""
auth.py - Capability Checks

The engine asks a CapabilityChecker whether a caller holds a capability over a
resource instead of deriving signing authority itself. Resources are named
with the same keys records use: "protocol", "market:<id>", "vault:<owner>".
"""

from __future__ import annotations
from typing import Optional, Set, Tuple

from .core import Capability
from .records import GlobalConfig


PROTOCOL_RESOURCE = "protocol"


class AuthorityCapabilities:
    """
    Default policy for a deployed protocol.

    - The protocol authority may create markets and pause any market.
    - A vault's owner may manage that vault.
    - Extra grants can be added per (caller, capability, resource).
    """

    def __init__(self, config: Optional[GlobalConfig] = None):
        self.config = config
        self._grants: Set[Tuple[str, Capability, str]] = set()

    def bind(self, config: GlobalConfig) -> None:
        """Point the policy at the current protocol configuration."""
        self.config = config

    def grant(self, caller: str, capability: Capability, resource: str) -> None:
        self._grants.add((caller, capability, resource))

    def revoke(self, caller: str, capability: Capability, resource: str) -> None:
        self._grants.discard((caller, capability, resource))

    def has_capability(self, caller: str, capability: Capability, resource: str) -> bool:
        if (caller, capability, resource) in self._grants:
            return True
        if capability in (Capability.CREATE_MARKET, Capability.PAUSE_MARKET):
            return self.config is not None and caller == self.config.authority
        if capability is Capability.MANAGE_VAULT:
            return resource == f"vault:{caller}"
        return False


class AllowAll:
    """Grants everything; for single-operator simulations."""

    def has_capability(self, caller: str, capability: Capability, resource: str) -> bool:
        return True
