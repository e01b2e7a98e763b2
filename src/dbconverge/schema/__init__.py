"""
Schema management package for dbconverge.

This package provides:
- The schema object model and contribution merging
- The ownership ledger (whitelist)
- Diffing, dependency ordering and plan execution
- PostgreSQL DDL rendering and the applied-schema marker
"""

from .model import ElementId, LiveSchema, LogicalSchema, ModuleContribution, TableDecl
from .merger import ContributionMerger, merge_contributions
from .ledger import FileWhitelistStore, InMemoryWhitelistStore, OwnershipLedger, WhitelistEntry
from .operations import OperationType, SchemaOperation
from .diff import DiffEngine, DiffResult, OwnershipViolation
from .orderer import DependencyOrderer, ExecutionPlan
from .executor import ExecutionReport, OperationMode, PlanExecutor, ReconciliationStatus
from .reconciler import ReconciliationPlan, ReconciliationResult, SchemaReconciler
from .metadata import MetadataManager

__all__ = [
    "ElementId",
    "LiveSchema",
    "LogicalSchema",
    "ModuleContribution",
    "TableDecl",
    "ContributionMerger",
    "merge_contributions",
    "FileWhitelistStore",
    "InMemoryWhitelistStore",
    "OwnershipLedger",
    "WhitelistEntry",
    "OperationType",
    "SchemaOperation",
    "DiffEngine",
    "DiffResult",
    "OwnershipViolation",
    "DependencyOrderer",
    "ExecutionPlan",
    "ExecutionReport",
    "OperationMode",
    "PlanExecutor",
    "ReconciliationStatus",
    "ReconciliationPlan",
    "ReconciliationResult",
    "SchemaReconciler",
    "MetadataManager",
]
