"""Time-scoped capability grants, kept per principal."""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from .models import GrantSource, PermissionGrant, utcnow
from .patterns import glob_to_regex

logger = logging.getLogger(__name__)

DEFAULT_PRINCIPAL = "default"


def scope_matches(required: Optional[str], granted: Optional[str]) -> bool:
    """Does a granted scope glob cover the required scope?

    Any grant covers an unscoped requirement; an unscoped grant covers
    nothing scoped.
    """
    if not required:
        return True
    if not granted:
        return False
    return glob_to_regex(granted).match(required) is not None


class GrantStore:
    """Holds PermissionGrants keyed by principal (user id or "default")."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._grants: dict[str, list[PermissionGrant]] = {}
        self._lock = threading.Lock()

    def grant(
        self,
        capability: str,
        scope: str,
        duration_ms: Optional[int] = None,
        principal: Optional[str] = None,
        granted_by: GrantSource = GrantSource.USER,
    ) -> PermissionGrant:
        """Grant a capability on a scope, permanently or for ``duration_ms``."""
        now = self._clock()
        grant = PermissionGrant(
            capability=str(getattr(capability, "value", capability)),
            scope=scope,
            granted_at=now,
            expires_at=now + timedelta(milliseconds=duration_ms) if duration_ms is not None else None,
            granted_by=GrantSource(granted_by),
        )

        key = principal or DEFAULT_PRINCIPAL
        with self._lock:
            self._grants.setdefault(key, []).append(grant)

        logger.info(
            f"Permission granted: {grant.capability} on {scope!r} to {key} "
            f"(expires: {grant.expires_at.isoformat() if grant.expires_at else 'never'})"
        )
        return grant

    def revoke(self, capability: str, scope: str, principal: Optional[str] = None) -> bool:
        """Remove every grant with exactly this (capability, scope).

        Returns:
            True if anything was removed
        """
        capability = str(getattr(capability, "value", capability))
        key = principal or DEFAULT_PRINCIPAL
        with self._lock:
            grants = self._grants.get(key)
            if not grants:
                return False

            kept = [g for g in grants if not (g.capability == capability and g.scope == scope)]
            if len(kept) == len(grants):
                return False
            self._grants[key] = kept

        logger.info(f"Permission revoked: {capability} on {scope!r} for {key}")
        return True

    def has_grant(
        self,
        capability: str,
        required_scope: Optional[str] = None,
        principal: Optional[str] = None,
    ) -> bool:
        """True iff an unexpired grant covers the capability and scope."""
        capability = str(getattr(capability, "value", capability))
        now = self._clock()
        with self._lock:
            grants = list(self._grants.get(principal or DEFAULT_PRINCIPAL, ()))
        return any(
            g.capability == capability
            and scope_matches(required_scope, g.scope)
            and not g.is_expired(now)
            for g in grants
        )

    def list_grants(
        self, principal: Optional[str] = None, include_expired: bool = False
    ) -> list[PermissionGrant]:
        now = self._clock()
        with self._lock:
            grants = list(self._grants.get(principal or DEFAULT_PRINCIPAL, ()))
        if include_expired:
            return grants
        return [g for g in grants if not g.is_expired(now)]

    def prune_expired(self) -> int:
        """Drop expired grants for every principal. Returns how many were dropped."""
        now = self._clock()
        removed = 0
        with self._lock:
            for key, grants in self._grants.items():
                kept = [g for g in grants if not g.is_expired(now)]
                removed += len(grants) - len(kept)
                self._grants[key] = kept
        if removed:
            logger.debug(f"Pruned {removed} expired grants")
        return removed
