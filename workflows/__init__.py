from workflows.schemas import (
    ArgumentSchema,
    QualityConfig,
    ResolvedWorkflow,
    StepOverride,
    Workflow,
    WorkflowStep,
)
from workflows.registry import WorkflowCatalog, WorkflowCatalogError, default_catalog, list_workflows
from workflows.resolver import WorkflowResolution, resolve_workflow_from_params
from workflows.tools import WorkflowToolset

__all__ = [
    "ArgumentSchema",
    "QualityConfig",
    "ResolvedWorkflow",
    "StepOverride",
    "Workflow",
    "WorkflowStep",
    "WorkflowCatalog",
    "WorkflowCatalogError",
    "default_catalog",
    "list_workflows",
    "WorkflowResolution",
    "resolve_workflow_from_params",
    "WorkflowToolset",
]
