"""
resolution - Conflict resolution strategies.

A conflict exists when an incoming change targets a row that the
local log shows was last written by a different origin. Resolvers
decide whether the incoming change is applied:
- Last-Write-Wins (LWW) by entry timestamp
- Fixed origin priority (server-wins / client-wins)
- Custom resolver callback
- Overwrite (last applier wins)
- Manual (refuse to decide)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Sequence

from tablesync.log.entries import ChangeLogEntry, Row


class ResolutionStrategy(Enum):
    """Available conflict resolution strategies."""
    LAST_WRITE_WINS = "lww"
    ORIGIN_PRIORITY = "origin_priority"
    CUSTOM = "custom"
    OVERWRITE = "overwrite"
    MANUAL = "manual"


@dataclass
class ConflictContext:
    """Context provided to conflict resolvers."""
    table_name: str
    pk_value: Row
    local: ChangeLogEntry
    remote: ChangeLogEntry


@dataclass
class ResolutionResult:
    """
    Result of conflict resolution.

    apply_remote decides whether the incoming change is written.
    merged_payload, when set, is written instead of the remote payload.
    """
    resolved: bool
    apply_remote: bool
    reason: str
    merged_payload: Row | None = None


class ConflictResolver(ABC):
    """Abstract base class for conflict resolvers."""

    @abstractmethod
    def resolve(self, context: ConflictContext) -> ResolutionResult:
        """
        Resolve a conflict between the local and the incoming change.

        Args:
            context: Conflict context with both entries

        Returns:
            Resolution result indicating whether the remote change wins
        """

    @property
    @abstractmethod
    def strategy(self) -> ResolutionStrategy:
        """Return the strategy type."""


class LastWriteWinsResolver(ConflictResolver):
    """
    Last-Write-Wins (LWW) conflict resolution.

    The entry with the later timestamp wins. Timestamps share one
    fixed-width UTC format, so ordinal string comparison orders them.
    Equal timestamps fall back to comparing origins so that every
    replica picks the same winner.
    """

    @property
    def strategy(self) -> ResolutionStrategy:
        return ResolutionStrategy.LAST_WRITE_WINS

    def resolve(self, context: ConflictContext) -> ResolutionResult:
        local, remote = context.local, context.remote
        if remote.timestamp != local.timestamp:
            remote_wins = remote.timestamp > local.timestamp
            reason = f"timestamp {remote.timestamp} vs local {local.timestamp}"
        else:
            remote_wins = remote.origin > local.origin
            reason = f"equal timestamps, origin {remote.origin} vs local {local.origin}"
        return ResolutionResult(
            resolved=True,
            apply_remote=remote_wins,
            reason=("Remote wins: " if remote_wins else "Local wins: ") + reason,
        )


class OriginPriorityResolver(ConflictResolver):
    """
    Fixed priority between origins.

    Origins earlier in the list beat later ones; unlisted origins rank
    last. When neither side is listed, or both share a rank, the
    fallback resolver decides.
    """

    def __init__(self, priority: Sequence[str], fallback: ConflictResolver | None = None):
        self._rank = {origin: index for index, origin in enumerate(priority)}
        self._fallback = fallback or LastWriteWinsResolver()

    @property
    def strategy(self) -> ResolutionStrategy:
        return ResolutionStrategy.ORIGIN_PRIORITY

    def resolve(self, context: ConflictContext) -> ResolutionResult:
        unlisted = len(self._rank)
        local_rank = self._rank.get(context.local.origin, unlisted)
        remote_rank = self._rank.get(context.remote.origin, unlisted)
        if local_rank == remote_rank:
            return self._fallback.resolve(context)
        remote_wins = remote_rank < local_rank
        return ResolutionResult(
            resolved=True,
            apply_remote=remote_wins,
            reason=f"{'Remote' if remote_wins else 'Local'} origin has priority",
        )


class CustomResolver(ConflictResolver):
    """
    Custom conflict resolution using user-provided callback.

    Maximum flexibility for application-specific logic.
    """

    def __init__(self, resolver_fn: Callable[[ConflictContext], ResolutionResult]):
        self._resolver_fn = resolver_fn

    @property
    def strategy(self) -> ResolutionStrategy:
        return ResolutionStrategy.CUSTOM

    def resolve(self, context: ConflictContext) -> ResolutionResult:
        return self._resolver_fn(context)


class OverwriteResolver(ConflictResolver):
    """The incoming change always wins (last applier wins)."""

    @property
    def strategy(self) -> ResolutionStrategy:
        return ResolutionStrategy.OVERWRITE

    def resolve(self, context: ConflictContext) -> ResolutionResult:
        return ResolutionResult(resolved=True, apply_remote=True, reason="Overwrite")


class ManualResolver(ConflictResolver):
    """
    Never decides. The applier turns this into ConflictUnresolved,
    which rolls the batch back.
    """

    @property
    def strategy(self) -> ResolutionStrategy:
        return ResolutionStrategy.MANUAL

    def resolve(self, context: ConflictContext) -> ResolutionResult:
        return ResolutionResult(
            resolved=False,
            apply_remote=False,
            reason="Marked for manual resolution",
        )


def get_resolver(strategy: ResolutionStrategy, **kwargs) -> ConflictResolver:
    """
    Factory function to get a conflict resolver.

    Args:
        strategy: Resolution strategy to use
        **kwargs: Strategy-specific options (priority, fallback, resolver_fn)

    Returns:
        Configured conflict resolver
    """
    if strategy == ResolutionStrategy.LAST_WRITE_WINS:
        return LastWriteWinsResolver()
    elif strategy == ResolutionStrategy.ORIGIN_PRIORITY:
        return OriginPriorityResolver(kwargs["priority"], kwargs.get("fallback"))
    elif strategy == ResolutionStrategy.CUSTOM:
        if "resolver_fn" not in kwargs:
            raise ValueError("CustomResolver requires 'resolver_fn' argument")
        return CustomResolver(kwargs["resolver_fn"])
    elif strategy == ResolutionStrategy.OVERWRITE:
        return OverwriteResolver()
    elif strategy == ResolutionStrategy.MANUAL:
        return ManualResolver()
    else:
        raise ValueError(f"Unknown strategy: {strategy}")


__all__ = [
    "ResolutionStrategy",
    "ConflictContext",
    "ResolutionResult",
    "ConflictResolver",
    "LastWriteWinsResolver",
    "OriginPriorityResolver",
    "CustomResolver",
    "OverwriteResolver",
    "ManualResolver",
    "get_resolver",
]
