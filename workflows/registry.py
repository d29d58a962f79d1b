"""
HyperCut Agent - Workflow Catalog

Loads workflow templates from YAML and hands out copies.

Lookup is by name, case-insensitive after trimming. Every read returns a
deep copy, so callers may edit what they get without touching the catalog.

Usage:
    catalog = WorkflowCatalog.load()            # built-in catalog.yaml
    catalog = WorkflowCatalog.load("my.yaml")   # host-supplied templates
    catalog.get("Podcast-To-Clips")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from workflows.schemas import Workflow

logger = logging.getLogger("hypercut_agent.workflows")

BUILTIN_CATALOG = Path(__file__).with_name("catalog.yaml")


class WorkflowCatalogError(Exception):
    """Raised when a workflow catalog file is unreadable or a template is invalid."""
    pass


def normalize_workflow_name(name: str) -> str:
    return name.strip().lower()


class WorkflowCatalog:
    def __init__(self, workflows: list[Workflow] | None = None):
        self._workflows: dict[str, Workflow] = {}
        for workflow in workflows or []:
            self.add(workflow)

    @classmethod
    def load(cls, path: str | Path | None = None) -> WorkflowCatalog:
        """
        Load templates from a YAML file with a top-level ``workflows`` list.

        Raises:
            WorkflowCatalogError: If the file is missing, unparseable, or a
                template fails validation.
        """
        path = Path(path) if path else BUILTIN_CATALOG
        try:
            with open(path, encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise WorkflowCatalogError(f"Cannot read workflow catalog {path}: {e}") from e
        if not isinstance(raw, dict):
            raise WorkflowCatalogError(f"Workflow catalog {path} must be a mapping with a 'workflows' list")
        catalog = cls.from_dicts(raw.get("workflows") or [])
        logger.info("Loaded %d workflows from %s", len(catalog), path)
        return catalog

    @classmethod
    def from_dicts(cls, items: list[dict[str, Any]]) -> WorkflowCatalog:
        workflows = []
        for item in items:
            try:
                workflows.append(Workflow.model_validate(item))
            except ValidationError as e:
                name = item.get("name", "?") if isinstance(item, dict) else "?"
                raise WorkflowCatalogError(f"Invalid workflow {name!r}: {e}") from e
        return cls(workflows)

    def add(self, workflow: Workflow) -> None:
        """
        Raises:
            WorkflowCatalogError: If a workflow with the same name exists.
        """
        key = normalize_workflow_name(workflow.name)
        if key in self._workflows:
            raise WorkflowCatalogError(f"Duplicate workflow name: {workflow.name}")
        self._workflows[key] = workflow

    def list(self) -> list[Workflow]:
        return [w.model_copy(deep=True) for w in self._workflows.values()]

    def get(self, name: str) -> Workflow | None:
        if not isinstance(name, str):
            return None
        workflow = self._workflows.get(normalize_workflow_name(name))
        return workflow.model_copy(deep=True) if workflow else None

    def names(self) -> list[str]:
        return [w.name for w in self._workflows.values()]

    def __contains__(self, name: str) -> bool:
        return isinstance(name, str) and normalize_workflow_name(name) in self._workflows

    def __len__(self) -> int:
        return len(self._workflows)


_default_catalog: WorkflowCatalog | None = None


def default_catalog() -> WorkflowCatalog:
    global _default_catalog
    if _default_catalog is None:
        _default_catalog = WorkflowCatalog.load()
    return _default_catalog


def list_workflows(catalog: WorkflowCatalog | None = None) -> list[Workflow]:
    if catalog is None:
        catalog = default_catalog()
    return catalog.list()
