"""
Shared pool of egress identities.

The pool is the only object shared between concurrent study workers. All
state changes happen under one asyncio.Lock so that marking an identity
blocked and selecting its replacement is a single atomic step: two workers
can never both pick the identity the other just gave up.

Selection rules:
- Candidates for a location are identities whose location matches, plus
  identities with location "unknown" (e.g. a local SOCKS tunnel)
- The first candidate (in configuration order) that is not blocked wins;
  candidates currently leased to another worker are skipped if an unleased
  one exists
- If every candidate is blocked, the caller may allow the block list for
  those candidates to be cleared (identities recover over time) and the
  first candidate is returned

Example:
    >>> pool = IdentityPool([EgressIdentity("proxy-in-1", "in-mum", "http://p:1")])
    >>> selection = await pool.acquire("google-india", "in-mum")
    >>> selection.identity.name
    'proxy-in-1'
    >>> selection = await pool.rotate("google-india", "in-mum", selection.identity)
    >>> selection.pool_reset
    True
"""

import asyncio
import logging
from dataclasses import dataclass

from .models import EgressIdentity

logger = logging.getLogger(__name__)

UNKNOWN_LOCATION = "unknown"


@dataclass
class IdentitySelection:
    """
    Outcome of a pool selection.

    Attributes:
        identity: Selected identity, or None if nothing is available
        pool_reset: True if the block list was cleared to make the selection
    """

    identity: EgressIdentity | None
    pool_reset: bool = False


class IdentityPool:
    """
    Lock-protected pool of egress identities with a shared block list.

    Attributes:
        identities: Configured identities in priority order
    """

    def __init__(self, identities: list[EgressIdentity]):
        names = [identity.name for identity in identities]
        if len(names) != len(set(names)):
            duplicates = {name for name in names if names.count(name) > 1}
            raise ValueError(f"Duplicate identity names: {duplicates}")

        self.identities = list(identities)
        self._blocked: set[str] = set()
        self._leases: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def candidates(self, location: str) -> list[EgressIdentity]:
        """Identities usable for a location, in configuration order."""
        return [
            identity
            for identity in self.identities
            if identity.location == location or identity.location == UNKNOWN_LOCATION
        ]

    def has_candidates(self, location: str) -> bool:
        return bool(self.candidates(location))

    def is_blocked(self, identity: EgressIdentity) -> bool:
        return identity.name in self._blocked

    @property
    def blocked_names(self) -> frozenset[str]:
        return frozenset(self._blocked)

    async def acquire(
        self, owner: str, location: str, allow_reset: bool = True
    ) -> IdentitySelection:
        """
        Select and lease an identity for a worker.

        Args:
            owner: Worker key (study id) taking the lease
            location: Target location
            allow_reset: Clear the block list for this location if every
                candidate is blocked

        Returns:
            IdentitySelection (identity is None when nothing is available)
        """
        async with self._lock:
            return self._select_locked(owner, location, allow_reset)

    async def rotate(
        self,
        owner: str,
        location: str,
        current: EgressIdentity | None,
        allow_reset: bool = True,
    ) -> IdentitySelection:
        """
        Mark the current identity blocked and select its replacement atomically.

        Args:
            owner: Worker key (study id) holding the current lease
            location: Target location
            current: Identity being abandoned (None or direct: nothing to block)
            allow_reset: Clear the block list if every candidate is blocked

        Returns:
            IdentitySelection for the replacement
        """
        async with self._lock:
            if current is not None and not current.is_direct:
                self._block_locked(current)
            self._release_locked(owner)
            return self._select_locked(owner, location, allow_reset)

    async def mark_blocked(self, identity: EgressIdentity) -> None:
        """Block an identity (e.g. its new session kept the same IP)."""
        async with self._lock:
            if not identity.is_direct:
                self._block_locked(identity)

    async def release(self, owner: str) -> None:
        """Drop a worker's lease when its study ends."""
        async with self._lock:
            self._release_locked(owner)

    async def reset_blocks(self, location: str) -> None:
        """Clear the block list for a location's candidates (operator continue)."""
        async with self._lock:
            self._reset_locked(location)

    async def available_count(self, location: str) -> int:
        """Number of unblocked candidates for a location."""
        async with self._lock:
            return sum(
                1 for identity in self.candidates(location) if not self.is_blocked(identity)
            )

    # ------------------------------------------------------------------
    # Lock-held helpers
    # ------------------------------------------------------------------

    def _block_locked(self, identity: EgressIdentity) -> None:
        if identity.name not in self._blocked:
            self._blocked.add(identity.name)
            logger.warning(f"Identity blocked: {identity.label}")

    def _release_locked(self, owner: str) -> None:
        for name, holder in list(self._leases.items()):
            if holder == owner:
                del self._leases[name]

    def _reset_locked(self, location: str) -> None:
        names = {identity.name for identity in self.candidates(location)}
        cleared = self._blocked & names
        self._blocked -= names
        if cleared:
            logger.info(
                f"Cleared block list for location {location}: {sorted(cleared)}"
            )

    def _select_locked(
        self, owner: str, location: str, allow_reset: bool
    ) -> IdentitySelection:
        candidates = self.candidates(location)
        if not candidates:
            return IdentitySelection(identity=None)

        pool_reset = False
        available = [c for c in candidates if c.name not in self._blocked]
        if not available:
            if not allow_reset:
                return IdentitySelection(identity=None)
            self._reset_locked(location)
            pool_reset = True
            available = candidates

        # Prefer an identity no other worker is using
        chosen = next(
            (
                c
                for c in available
                if self._leases.get(c.name) in (None, owner)
            ),
            available[0],
        )

        self._release_locked(owner)
        self._leases[chosen.name] = owner
        logger.debug(
            f"Identity selected for {owner}: {chosen.label} (pool_reset={pool_reset})"
        )
        return IdentitySelection(identity=chosen, pool_reset=pool_reset)
