"""Change application."""

from tablesync.apply.applier import BatchApplyResult, ChangeApplier

__all__ = ["ChangeApplier", "BatchApplyResult"]
