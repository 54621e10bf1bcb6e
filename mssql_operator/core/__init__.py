"""
Core reconciliation logic for Database resources.

- State machine deciding the action of each pass
- Drift detection against the live database
- Finalization gate guarding deletion
- Lifecycle reconciler tying them together

Import directly from submodules:
from mssql_operator.core.reconciler import LifecycleReconciler
from mssql_operator.core.drift import DriftDetector
"""
