"""
Domain models — Pydantic types for the engine.

All models are re-exported here for convenient access:

    from confsnap.core.models import Template, FileItem, ItemOutcome, ExecutionReport
"""

from confsnap.core.models.kinds import CATEGORY_ORDER, Category, OperationKind, RunState
from confsnap.core.models.report import (
    EngineWarning,
    ExecutionReport,
    ItemOutcome,
    PrerequisiteReport,
    PrerequisiteResult,
    StageItemResult,
    StageReport,
)
from confsnap.core.models.template import (
    ApplicationItem,
    ConditionalSection,
    Configuration,
    EffectiveTemplate,
    FileItem,
    InheritanceRule,
    ItemSpec,
    MachineSelector,
    MachineSpecificSection,
    Metadata,
    PrerequisiteSpec,
    RegistryItem,
    SectionCondition,
    SharedSection,
    StageItemSpec,
    Stages,
    Template,
)

__all__ = [
    "ApplicationItem",
    "CATEGORY_ORDER",
    "Category",
    "ConditionalSection",
    "Configuration",
    "EffectiveTemplate",
    "EngineWarning",
    "ExecutionReport",
    "FileItem",
    "InheritanceRule",
    "ItemOutcome",
    "ItemSpec",
    "MachineSelector",
    "MachineSpecificSection",
    "Metadata",
    "OperationKind",
    "PrerequisiteReport",
    "PrerequisiteResult",
    "PrerequisiteSpec",
    "RegistryItem",
    "RunState",
    "SectionCondition",
    "SharedSection",
    "StageItemResult",
    "StageItemSpec",
    "StageReport",
    "Stages",
    "Template",
]
