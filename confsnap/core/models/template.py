"""
Template models — the typed shape of a configuration template document.

A template declares what to manage (files, registry-equivalent keys,
application inventories), the checks that gate a run, hook stages, and
an optional inheritance layer: a shared section, machine-specific
sections selected per host, conditional sections, and rules applied
after merging.

All models are frozen. The parser builds a Template once per run and
the inheritance resolver derives an EffectiveTemplate from it with
``model_copy``; nothing mutates a model in place.

YAML keys are snake_case. The historical spellings used by older
templates (``path``, ``key_name``, ``parse_script``, ...) are accepted
as aliases.
"""

from __future__ import annotations

from typing import Annotated, Any, ClassVar, Iterator, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    model_validator,
)

from confsnap.core.models.kinds import CATEGORY_ORDER, Category


def _lower(value: Any) -> Any:
    """Normalize enum-like strings (``Backup`` → ``backup``)."""
    if isinstance(value, str):
        return value.strip().lower()
    return value


def _as_text(value: Any) -> Any:
    """YAML turns ``version: 1.0`` into a float; keep it as text."""
    if value is None:
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    return value


ItemAction = Annotated[Literal["backup", "restore", "sync"], BeforeValidator(_lower)]
InheritancePolicy = Annotated[
    Literal["merge", "replace", "extend", "skip"], BeforeValidator(_lower)
]
ConflictResolution = Annotated[
    Literal["machine_wins", "shared_wins", "merge_both", "prompt"],
    BeforeValidator(_lower),
]
ChecksumType = Annotated[
    Literal["md5", "sha1", "sha256", "sha512"], BeforeValidator(_lower)
]
RegistryKind = Annotated[
    Literal["string", "expand_string", "dword", "qword", "binary", "multi_string"],
    BeforeValidator(_lower),
]
SelectorType = Annotated[
    Literal[
        "machine_name",
        "hostname_pattern",
        "environment_variable",
        "registry_value",
        "script",
    ],
    BeforeValidator(_lower),
]
SelectorOperator = Annotated[
    Literal["equals", "contains", "matches", "not_equals", "greater_than", "less_than"],
    BeforeValidator(_lower),
]
TextField = Annotated[str, BeforeValidator(_as_text)]

# Origins an item can carry through resolution.
Origin = Literal["template", "shared", "machine", "conditional"]


class TemplateModel(BaseModel):
    """Base for every template model: frozen, alias-aware, tolerant of extras."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # An empty YAML key (``files:``) means "use the default".
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


# ── Metadata & configuration ─────────────────────────────────────────


class Metadata(TemplateModel):
    """Informational template header."""

    name: str = Field(min_length=1)
    description: str = ""
    version: TextField = ""
    author: str = ""
    category: str = ""
    tags: list[str] = Field(default_factory=list)


class Configuration(TemplateModel):
    """Inheritance behaviour switches.

    Attributes:
        inheritance_mode: ``merge`` layers sections over the shared base,
            ``replace`` drops the shared base when any machine or
            conditional section matches, ``disabled`` ignores all layering.
        machine_precedence: Tie-break default when neither merging item
            declares a conflict resolution (True → machine_wins).
        validation_level: ``strict`` turns resolution warnings into errors.
        fallback_strategy: What to do when no section matches the host.
    """

    inheritance_mode: Annotated[
        Literal["merge", "replace", "disabled"], BeforeValidator(_lower)
    ] = "merge"
    machine_precedence: bool = True
    validation_level: Annotated[
        Literal["strict", "moderate", "relaxed"], BeforeValidator(_lower)
    ] = "moderate"
    fallback_strategy: Annotated[
        Literal["use_shared", "fail", "warn"], BeforeValidator(_lower)
    ] = "use_shared"


# ── Items ────────────────────────────────────────────────────────────


class ItemSpec(TemplateModel):
    """Fields shared by every managed item."""

    category: ClassVar[Category]

    name: str = Field(min_length=1)
    action: ItemAction
    description: str = ""
    encrypt: bool = False
    dynamic_state_path: str = ""
    inheritance_tags: list[str] = Field(default_factory=list)
    inheritance_priority: int | None = None
    inheritance_policy: InheritancePolicy | None = None
    conflict_resolution: ConflictResolution | None = None
    origin: Origin = "template"

    # Fields that are unioned rather than overwritten during merges.
    list_fields: ClassVar[tuple[str, ...]] = ("inheritance_tags",)
    # Bookkeeping fields that never take part in field-by-field merges.
    merge_exempt: ClassVar[tuple[str, ...]] = (
        "name",
        "inheritance_tags",
        "inheritance_priority",
        "inheritance_policy",
        "conflict_resolution",
        "origin",
    )

    @model_validator(mode="after")
    def _check_state_path(self) -> ItemSpec:
        if self.captures and not self.dynamic_state_path:
            raise ValueError(
                f"item '{self.name}': dynamic_state_path is required for action '{self.action}'"
            )
        path = self.dynamic_state_path.replace("\\", "/")
        if path.startswith("/") or ".." in path.split("/"):
            raise ValueError(
                f"item '{self.name}': dynamic_state_path must be relative and stay "
                f"inside the snapshot: {self.dynamic_state_path!r}"
            )
        return self

    @property
    def captures(self) -> bool:
        """Whether this item's action writes state into a snapshot."""
        return self.action in ("backup", "sync")

    @property
    def applies(self) -> bool:
        """Whether this item's action reads state back from a snapshot."""
        return self.action in ("restore", "sync")

    @property
    def tag_set(self) -> frozenset[str]:
        return frozenset(self.inheritance_tags)

    @property
    def merge_key(self) -> tuple[Category, str, frozenset[str]]:
        """Items with equal keys collapse into one logical item."""
        return (self.category, self.name, self.tag_set)

    @property
    def structural_type(self) -> str:
        """The category-specific kind used for merge compatibility."""
        return ""

    def scalar_fields(self) -> list[str]:
        """Field names that merge by value placement."""
        return [
            name
            for name in type(self).model_fields
            if name not in self.merge_exempt and name not in self.list_fields
        ]


class FileItem(ItemSpec):
    """A file or directory on the local filesystem."""

    category: ClassVar[Category] = Category.FILES
    list_fields: ClassVar[tuple[str, ...]] = ("inheritance_tags", "exclude_patterns")

    source_path: str = Field(
        min_length=1, validation_alias=AliasChoices("source_path", "path")
    )
    type: Annotated[Literal["file", "directory"], BeforeValidator(_lower)] = "file"
    destination: str = ""
    checksum_type: ChecksumType = "sha256"
    verify_checksum: bool = False
    exclude_patterns: list[str] = Field(default_factory=list)
    filter: str = ""

    @property
    def structural_type(self) -> str:
        return self.type


class RegistryItem(ItemSpec):
    """A registry-equivalent key (all values) or a single named value."""

    category: ClassVar[Category] = Category.REGISTRY

    key_path: str = Field(min_length=1, validation_alias=AliasChoices("key_path", "path"))
    type: Annotated[Literal["key", "value"], BeforeValidator(_lower)] = "key"
    value_name: str = Field(default="", validation_alias=AliasChoices("value_name", "key_name"))
    value_data: Any = None
    value_kind: RegistryKind = "string"

    @model_validator(mode="after")
    def _check_value_name(self) -> RegistryItem:
        if self.type == "value" and not self.value_name:
            raise ValueError(f"item '{self.name}': value_name is required for type 'value'")
        return self

    @property
    def structural_type(self) -> str:
        return self.type


class ApplicationItem(ItemSpec):
    """An installed-application inventory driven by external procedures."""

    category: ClassVar[Category] = Category.APPLICATIONS
    list_fields: ClassVar[tuple[str, ...]] = ("inheritance_tags", "dependencies")

    package_manager_type: str = Field(
        default="custom", validation_alias=AliasChoices("package_manager_type", "type")
    )
    discovery_command: str = Field(min_length=1)
    parse_procedure: str = Field(
        default="", validation_alias=AliasChoices("parse_procedure", "parse_script")
    )
    install_procedure: str = Field(
        default="", validation_alias=AliasChoices("install_procedure", "install_script")
    )
    uninstall_procedure: str = Field(
        default="", validation_alias=AliasChoices("uninstall_procedure", "uninstall_script")
    )
    dependencies: list[str] = Field(default_factory=list)

    @property
    def structural_type(self) -> str:
        return self.package_manager_type


# ── Prerequisites & stages ───────────────────────────────────────────


class PrerequisiteSpec(TemplateModel):
    """A gate evaluated before any item is touched."""

    type: Annotated[Literal["application", "registry", "script"], BeforeValidator(_lower)]
    name: str = Field(min_length=1)
    on_missing: Annotated[
        Literal["warn", "fail_backup", "fail_restore"], BeforeValidator(_lower)
    ] = "warn"
    check_command: str = Field(
        default="", validation_alias=AliasChoices("check_command", "command")
    )
    inline_script: str = ""
    expected_output: str = Field(
        default="", validation_alias=AliasChoices("expected_output", "expected_result")
    )
    key_path: str = Field(default="", validation_alias=AliasChoices("key_path", "path"))
    value_name: str = Field(default="", validation_alias=AliasChoices("value_name", "key_name"))
    expected_value: TextField | None = None

    @model_validator(mode="after")
    def _check_parameters(self) -> PrerequisiteSpec:
        required = {
            "application": ("check_command", self.check_command),
            "registry": ("key_path", self.key_path),
            "script": ("inline_script", self.inline_script),
        }[self.type]
        if not required[1]:
            raise ValueError(
                f"prerequisite '{self.name}': '{required[0]}' is required for type '{self.type}'"
            )
        return self


class StageItemSpec(TemplateModel):
    """A hook script or output check run at a lifecycle point."""

    name: str = Field(min_length=1)
    type: Annotated[Literal["script", "check"], BeforeValidator(_lower)] = "script"
    inline_script: str = ""
    command: str = ""
    script: str = ""                # path to a script file
    parameters: dict[str, Any] = Field(default_factory=dict)
    expected_output: str = Field(
        default="", validation_alias=AliasChoices("expected_output", "expected_result")
    )
    on_failure: Annotated[Literal["warn", "fail"], BeforeValidator(_lower)] = "fail"

    @model_validator(mode="before")
    @classmethod
    def _scalar_parameters(cls, data: Any) -> Any:
        # Older templates pass a bare token (``parameters: $TemplateConfig``).
        if isinstance(data, dict) and isinstance(data.get("parameters"), str):
            data = {**data, "parameters": {"value": data["parameters"]}}
        return data

    @model_validator(mode="after")
    def _check_body(self) -> StageItemSpec:
        if not (self.inline_script or self.command or self.script):
            raise ValueError(
                f"stage item '{self.name}': one of inline_script, command or script is required"
            )
        if self.type == "check" and not self.expected_output:
            raise ValueError(f"stage item '{self.name}': checks need expected_output")
        return self


class Stages(TemplateModel):
    """The four lifecycle hook points."""

    prereqs: list[StageItemSpec] = Field(default_factory=list)
    pre_update: list[StageItemSpec] = Field(default_factory=list)
    post_update: list[StageItemSpec] = Field(default_factory=list)
    cleanup: list[StageItemSpec] = Field(default_factory=list)


StageName = Literal["prereqs", "pre_update", "post_update", "cleanup"]


# ── Selectors, rules & layered sections ──────────────────────────────


class MachineSelector(TemplateModel):
    """Decides whether a section applies to the current host.

    The compared subject depends on ``type``: the machine name, the
    hostname, an environment variable named by ``value``, a registry
    value at ``key_path``/``value_name``, or a script's output. For the
    last three the pattern lives in ``expected_value``.
    """

    type: SelectorType
    value: TextField = ""
    operator: SelectorOperator = "equals"
    case_sensitive: bool = False
    expected_value: TextField | None = None
    key_path: str = Field(default="", validation_alias=AliasChoices("key_path", "path"))
    value_name: str = Field(default="", validation_alias=AliasChoices("value_name", "key_name"))


class SectionCondition(MachineSelector):
    """A conditional-section predicate: a selector or a script check."""

    type: Annotated[
        Literal[
            "machine_name",
            "hostname_pattern",
            "environment_variable",
            "registry_value",
            "script",
            "hardware_check",
            "software_check",
            "script_check",
        ],
        BeforeValidator(_lower),
    ]
    check: str = ""
    expected_result: str = ""
    on_failure: Annotated[Literal["skip", "fail"], BeforeValidator(_lower)] = "skip"

    @property
    def is_check(self) -> bool:
        return self.type in ("hardware_check", "software_check", "script_check")


class TagCondition(TemplateModel):
    contains: list[str] = Field(default_factory=list)       # all must be present
    contains_any: list[str] = Field(default_factory=list)
    excludes: list[str] = Field(default_factory=list)


class RuleCondition(TemplateModel):
    """Which items an inheritance rule targets. Empty matches everything."""

    inheritance_tags: TagCondition = Field(default_factory=TagCondition)
    machine_selectors: list[MachineSelector] = Field(default_factory=list)
    name_pattern: str = ""


class InheritanceRule(TemplateModel):
    """A post-merge operation on items of the listed categories."""

    name: str = Field(min_length=1)
    description: str = ""
    applies_to: list[Annotated[Category, BeforeValidator(_lower)]] = Field(
        default_factory=lambda: list(CATEGORY_ORDER)
    )
    condition: RuleCondition = Field(default_factory=RuleCondition)
    action: Annotated[
        Literal["merge", "replace", "skip", "validate", "transform"], BeforeValidator(_lower)
    ]
    parameters: dict[str, Any] = Field(default_factory=dict)
    script: str = ""

    @model_validator(mode="after")
    def _check_script(self) -> InheritanceRule:
        if self.action == "transform" and not self.script:
            raise ValueError(f"rule '{self.name}': transform rules need a script")
        return self


class ItemLists(TemplateModel):
    """Item-bearing fields shared by templates and their sections."""

    prerequisites: list[PrerequisiteSpec] = Field(default_factory=list)
    files: list[FileItem] = Field(default_factory=list)
    registry: list[RegistryItem] = Field(default_factory=list)
    applications: list[ApplicationItem] = Field(default_factory=list)

    def items(self, category: Category) -> list[ItemSpec]:
        return list(getattr(self, category.value))

    def all_items(self) -> Iterator[ItemSpec]:
        """Every item in fixed category order, declared order within."""
        for category in CATEGORY_ORDER:
            yield from self.items(category)

    @property
    def item_count(self) -> int:
        return sum(len(self.items(c)) for c in CATEGORY_ORDER)


class SharedSection(ItemLists):
    """Items that apply to every machine."""

    name: str = ""
    description: str = ""
    priority: int = 0
    override_policy: InheritancePolicy = "merge"


class MachineSpecificSection(ItemLists):
    """Items for hosts matched by any of ``selectors``."""

    name: str = ""
    description: str = ""
    selectors: list[MachineSelector] = Field(
        default_factory=list, validation_alias=AliasChoices("selectors", "machine_selectors")
    )
    priority: int = 0
    merge_strategy: Annotated[
        Literal["deep_merge", "shallow_merge", "replace"], BeforeValidator(_lower)
    ] = "deep_merge"


class ConditionalSection(ItemLists):
    """Items applied when ``conditions`` combine to true under ``logic``."""

    name: str = Field(min_length=1)
    description: str = ""
    conditions: list[SectionCondition] = Field(default_factory=list)
    logic: Annotated[Literal["and", "or", "not"], BeforeValidator(_lower)] = "and"
    priority: int = 0


# ── Documents ────────────────────────────────────────────────────────


class TemplateBody(ItemLists):
    """Fields common to a parsed template and its effective form."""

    metadata: Metadata
    configuration: Configuration = Field(default_factory=Configuration)
    stages: Stages = Field(default_factory=Stages)

    def find_item(self, category: Category, name: str) -> ItemSpec | None:
        for item in self.items(category):
            if item.name == name:
                return item
        return None


class Template(TemplateBody):
    """A parsed template document, before inheritance resolution."""

    shared: SharedSection | None = None
    machine_specific: list[MachineSpecificSection] = Field(default_factory=list)
    inheritance_rules: list[InheritanceRule] = Field(default_factory=list)
    conditional_sections: list[ConditionalSection] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_state_paths(self) -> Template:
        for category in CATEGORY_ORDER:
            seen: dict[str, str] = {}
            for item in self.items(category):
                if not item.captures:
                    continue
                key = item.dynamic_state_path.replace("\\", "/").lower()
                if key in seen:
                    raise ValueError(
                        f"{category.value}: items '{seen[key]}' and '{item.name}' share "
                        f"dynamic_state_path '{item.dynamic_state_path}'"
                    )
                seen[key] = item.name
        return self


class EffectiveTemplate(TemplateBody):
    """A template with every layer folded in. Only this reaches extractors."""
