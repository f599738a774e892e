"""Capability-based authorization for drop-in management.

Provides:
- ``AccessController``: resolves the manager capability (config override,
  multisite default, pluggable override) and checks principals against it.
- ``parse_principals``: reads ``token:cap,cap;...`` principal definitions.
- ``UnauthorizedAction``: raised when a principal lacks the capability.
"""
from __future__ import annotations

import hashlib
from typing import Dict, Optional, Protocol

from cache_dropin.domain.dropin import Principal

# ---------------------------------------------------------------------------
# Capability constants
# ---------------------------------------------------------------------------

CAP_MANAGE_OPTIONS = "manage_options"
CAP_MANAGE_NETWORK_OPTIONS = "manage_network_options"
ADMIN_CAPABILITIES = frozenset({CAP_MANAGE_OPTIONS, CAP_MANAGE_NETWORK_OPTIONS})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class UnauthorizedAction(Exception):
    """Raised when a principal attempts to manage the drop-in without the capability."""


# ---------------------------------------------------------------------------
# Extension point
# ---------------------------------------------------------------------------


class CapabilityOverride(Protocol):
    def __call__(self, default_capability: str) -> str:
        ...


# ---------------------------------------------------------------------------
# AccessController
# ---------------------------------------------------------------------------


class AccessController:
    def __init__(
        self,
        configured_capability: str = "",
        multisite: bool = False,
        override: Optional[CapabilityOverride] = None,
    ) -> None:
        self._configured = (configured_capability or "").strip()
        self._multisite = multisite
        self._override = override

    def manager_capability(self) -> str:
        if self._configured:
            return self._configured
        capability = CAP_MANAGE_NETWORK_OPTIONS if self._multisite else CAP_MANAGE_OPTIONS
        if self._override is not None:
            capability = (self._override(capability) or "").strip() or capability
        return capability

    def check(self, principal: Optional[Principal]) -> bool:
        """Return True if the principal may manage the drop-in; raise otherwise."""
        capability = self.manager_capability()
        if principal is None or not principal.can(capability):
            who = principal.principal_id if principal is not None else "anonymous"
            raise UnauthorizedAction(f"{who!r} lacks capability {capability!r}")
        return True

    def is_allowed(self, principal: Optional[Principal]) -> bool:
        try:
            return self.check(principal)
        except UnauthorizedAction:
            return False


def parse_principals(raw: str) -> Dict[str, Principal]:
    """Parse ``token:cap,cap;token2:cap`` into principals keyed by token."""
    out: Dict[str, Principal] = {}
    for chunk in (raw or "").split(";"):
        value = chunk.strip()
        if not value:
            continue
        parts = value.split(":", 1)
        if len(parts) != 2:
            continue
        token = parts[0].strip()
        if not token:
            continue
        caps = frozenset(c.strip() for c in parts[1].split(",") if c.strip())
        digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]
        out[token] = Principal(principal_id=f"key-{digest}", capabilities=caps, session=digest)
    return out
