"""
SQL Server database operator.

Reconciles ``Database`` custom resources against databases on a managed
SQL Server instance: creates them, keeps their options in sync, and drops
them when the owning resource is deleted.
"""

__version__ = "1.0.0"
