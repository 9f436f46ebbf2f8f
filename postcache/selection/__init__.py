"""Selection of records whose assets are kept in the local cache."""

from .reconciler import ReconcileResult, SelectionReconciler, qualifies

__all__ = ["ReconcileResult", "SelectionReconciler", "qualifies"]
