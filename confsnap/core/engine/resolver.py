"""
Inheritance resolver — fold a layered Template into an EffectiveTemplate.

Layering order (lowest first):

    1. the template's own item lists                  (origin "template")
    2. the shared section, under its override policy  (origin "shared")
    3. matching machine-specific sections             (origin "machine")
    4. matching conditional sections                  (origin "conditional")
    5. inheritance rules, applied to the merged items

Sections of one kind are layered in ascending priority, declared order
breaking ties, so the highest-priority section lands last.

Two items collapse into one when category, name and tag set are equal.
How they combine is decided by the incoming item's inheritance policy
and, for ``merge``, by conflict resolution: an explicit ``machine_wins``
or ``shared_wins`` is honored whatever the priorities; otherwise the
higher priority places scalar values and ties go to the machine side
when ``machine_precedence`` is set. List fields are always unioned and
the merged priority is the higher of the two.

Resolution problems (failed rule scripts, incompatible ``merge_both``
pairs, duplicate state paths) are warnings unless the validation level
is ``strict``, where they raise.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from confsnap.adapters.shell.command import CommandResult, ScriptRunner
from confsnap.core.context import HostContext
from confsnap.core.engine.selectors import combine, condition_holds, matches
from confsnap.core.errors import (
    CommandCancelledError,
    CommandTimeoutError,
    MergeConflictError,
    ResolutionError,
    RuleExecutionError,
)
from confsnap.core.models.kinds import CATEGORY_ORDER, Category
from confsnap.core.models.report import EngineWarning
from confsnap.core.models.template import (
    ConditionalSection,
    EffectiveTemplate,
    InheritanceRule,
    ItemLists,
    ItemSpec,
    MachineSpecificSection,
    PrerequisiteSpec,
    Template,
)

logger = logging.getLogger(__name__)

# Field a plain-text transform result replaces, per category.
_PRIMARY_PATH = {
    Category.FILES: "source_path",
    Category.REGISTRY: "key_path",
}


@dataclass
class _Entry:
    item: ItemSpec
    priority: int

    @property
    def origin(self) -> str:
        return self.item.origin


@dataclass
class _Layer:
    """One section's contribution to the merge."""

    name: str
    origin: str
    priority: int
    items: ItemLists
    policy: str | None = None          # forced inheritance policy for every item
    replaces_categories: bool = False


@dataclass
class _Resolution:
    template: Template
    host: HostContext
    runner: ScriptRunner | None
    strict: bool
    timeout: float | None
    cancel: threading.Event | None
    entries: dict[Category, list[_Entry]] = field(default_factory=dict)
    warnings: list[EngineWarning] = field(default_factory=list)

    # ── Problem reporting ────────────────────────────────────────

    def problem(self, error: ResolutionError, item: str = "") -> None:
        """Raise under strict validation, otherwise record a warning."""
        if self.strict:
            raise error
        self.warn(str(error), item)

    def warn(self, message: str, item: str = "") -> None:
        warning = EngineWarning(source="resolver", message=message, item=item)
        logger.warning("%s", warning)
        self.warnings.append(warning)


def resolve(
    template: Template,
    host: HostContext,
    runner: ScriptRunner | None = None,
    *,
    validation_level: str | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> tuple[EffectiveTemplate, list[EngineWarning]]:
    """Resolve inheritance for ``host``.

    Args:
        template: Parsed template.
        host: The machine being resolved for.
        runner: Runs script selectors, condition checks and rule scripts.
        validation_level: Overrides ``configuration.validation_level``.
        timeout: Per-script timeout in seconds.
        cancel: Cancellation event forwarded to scripts.

    Returns:
        The effective template and the warnings raised along the way.

    Raises:
        ResolutionError: Under strict validation for any resolution
            problem, or when ``fallback_strategy`` is ``fail`` and no
            section matched.
    """
    config = template.configuration
    level = validation_level or config.validation_level
    state = _Resolution(
        template=template,
        host=host,
        runner=runner,
        strict=level == "strict",
        timeout=timeout,
        cancel=cancel,
        entries={c: [] for c in CATEGORY_ORDER},
    )

    # Root items are the base layer
    for category in CATEGORY_ORDER:
        for item in template.items(category):
            state.entries[category].append(
                _Entry(_with_origin(item, "template"), _priority(item, 0))
            )

    matched: list[_Layer] = []
    layered = config.inheritance_mode != "disabled"
    if layered:
        matched = _matching_layers(state)
        shared = template.shared
        if shared is not None and not (config.inheritance_mode == "replace" and matched):
            _apply_layer(
                state,
                _Layer("shared", "shared", shared.priority, shared, policy=None),
                default_policy=shared.override_policy,
            )
        for layer in matched:
            _apply_layer(state, layer, default_policy="merge")

    if layered and (template.machine_specific or template.conditional_sections) and not matched:
        _fallback(state)

    for rule in template.inheritance_rules:
        _apply_rule(state, rule)

    _drop_duplicate_paths(state)

    effective = EffectiveTemplate(
        metadata=template.metadata,
        configuration=template.configuration,
        stages=template.stages,
        prerequisites=_prerequisites(template, matched, config.inheritance_mode),
        files=[e.item for e in state.entries[Category.FILES]],
        registry=[e.item for e in state.entries[Category.REGISTRY]],
        applications=[e.item for e in state.entries[Category.APPLICATIONS]],
    )
    logger.info(
        "Resolved '%s' for %s: %d items, %d sections matched, %d warnings",
        template.metadata.name,
        host.machine_name,
        effective.item_count,
        len(matched),
        len(state.warnings),
    )
    return effective, state.warnings


# ── Section selection ────────────────────────────────────────────────


def _matching_layers(state: _Resolution) -> list[_Layer]:
    """Machine then conditional sections that apply, each ascending by priority."""
    template, host = state.template, state.host
    machine: list[_Layer] = []
    for index, section in enumerate(template.machine_specific):
        if not matches(section.selectors, host, state.runner, state.timeout, state.cancel):
            continue
        machine.append(_machine_layer(section, index))

    conditional: list[_Layer] = []
    for section in template.conditional_sections:
        if _conditions_hold(state, section):
            conditional.append(
                _Layer(section.name, "conditional", section.priority, section)
            )

    for layer in machine + conditional:
        logger.debug("Section '%s' (%s, priority %d) applies", layer.name, layer.origin, layer.priority)
    by_priority = lambda layer: layer.priority
    return sorted(machine, key=by_priority) + sorted(conditional, key=by_priority)


def _machine_layer(section: MachineSpecificSection, index: int) -> _Layer:
    name = section.name or f"machine_specific[{index}]"
    match section.merge_strategy:
        case "shallow_merge":
            return _Layer(name, "machine", section.priority, section, policy="replace")
        case "replace":
            return _Layer(name, "machine", section.priority, section, replaces_categories=True)
    return _Layer(name, "machine", section.priority, section)


def _conditions_hold(state: _Resolution, section: ConditionalSection) -> bool:
    if not section.conditions:
        return True
    results = []
    for condition in section.conditions:
        try:
            results.append(
                condition_holds(condition, state.host, state.runner, state.timeout, state.cancel)
            )
        except RuleExecutionError as e:
            state.problem(RuleExecutionError(f"conditional section '{section.name}': {e}"))
            return False
    return combine(results, section.logic)


def _fallback(state: _Resolution) -> None:
    strategy = state.template.configuration.fallback_strategy
    message = f"no machine-specific or conditional section matched {state.host.machine_name}"
    if strategy == "fail":
        raise ResolutionError(message)
    if strategy == "warn":
        state.warn(message + "; using shared configuration only")
    else:
        logger.info("%s; using shared configuration", message)


# ── Layering ─────────────────────────────────────────────────────────


def _apply_layer(state: _Resolution, layer: _Layer, default_policy: str) -> None:
    for category in CATEGORY_ORDER:
        incoming = layer.items.items(category)
        if not incoming:
            continue
        entries = state.entries[category]
        if layer.replaces_categories:
            logger.debug("Section '%s' replaces all %s items", layer.name, category.value)
            entries.clear()
        for item in incoming:
            entry = _Entry(_with_origin(item, layer.origin), _priority(item, layer.priority))
            policy = layer.policy or item.inheritance_policy or default_policy
            _layer_item(state, entries, entry, policy)


def _layer_item(state: _Resolution, entries: list[_Entry], incoming: _Entry, policy: str) -> None:
    key = incoming.item.merge_key
    for index, existing in enumerate(entries):
        if existing.item.merge_key != key:
            continue
        match policy:
            case "skip":
                logger.debug("Kept existing '%s' (incoming policy skip)", key[1])
            case "replace":
                entries[index] = incoming
            case "extend":
                entries[index] = _extend(state, existing, incoming)
            case _:
                entries[index] = _merge(state, existing, incoming)
        return
    entries.append(incoming)


def _sides(existing: _Entry, incoming: _Entry) -> tuple[_Entry, _Entry]:
    """(machine side, shared side): the shared-origin entry is the shared side."""
    if incoming.origin == "shared" and existing.origin != "shared":
        return existing, incoming
    return incoming, existing


def _merge(state: _Resolution, existing: _Entry, incoming: _Entry) -> _Entry:
    machine, shared = _sides(existing, incoming)
    name = incoming.item.name
    policy = machine.item.conflict_resolution or shared.item.conflict_resolution

    if policy == "prompt":
        state.warn("conflict_resolution 'prompt' is not supported unattended; using machine_wins", name)
        policy = "machine_wins"

    if policy == "merge_both":
        try:
            return _merge_both(machine, shared)
        except MergeConflictError as e:
            state.problem(e, name)
            winner, loser = machine, shared
    elif policy == "machine_wins":
        winner, loser = machine, shared
    elif policy == "shared_wins":
        winner, loser = shared, machine
    elif machine.priority != shared.priority:
        winner, loser = (machine, shared) if machine.priority > shared.priority else (shared, machine)
    elif state.template.configuration.machine_precedence:
        winner, loser = machine, shared
    else:
        winner, loser = shared, machine

    update = _union_lists(winner.item, loser.item)
    return _combined(state, winner, update, max(winner.priority, loser.priority))


def _merge_both(machine: _Entry, shared: _Entry) -> _Entry:
    m, s = machine.item, shared.item
    if type(m) is not type(s) or m.structural_type != s.structural_type:
        raise MergeConflictError(
            f"merge_both needs compatible items: '{m.name}' is "
            f"{m.structural_type or type(m).__name__} in one layer and "
            f"{s.structural_type or type(s).__name__} in the other"
        )
    update = _union_lists(s, m)
    for name in s.scalar_fields():
        if _is_empty(s, name) and not _is_empty(m, name):
            update[name] = getattr(m, name)
    priority = max(machine.priority, shared.priority)
    update["origin"] = m.origin
    update["inheritance_priority"] = priority
    item = _rebuild(s, update)
    return _Entry(item, priority)


def _extend(state: _Resolution, existing: _Entry, incoming: _Entry) -> _Entry:
    """Union lists and fill the existing item's empty scalars."""
    update = _union_lists(existing.item, incoming.item)
    for name in existing.item.scalar_fields():
        if _is_empty(existing.item, name) and not _is_empty(incoming.item, name):
            update[name] = getattr(incoming.item, name)
    return _combined(state, existing, update, max(existing.priority, incoming.priority))


def _combined(state: _Resolution, base: _Entry, update: dict[str, Any], priority: int) -> _Entry:
    update["inheritance_priority"] = priority
    try:
        item = _rebuild(base.item, update)
    except MergeConflictError as e:
        state.problem(e, base.item.name)
        item = base.item
    return _Entry(item, priority)


# ── Rules ────────────────────────────────────────────────────────────


def _apply_rule(state: _Resolution, rule: InheritanceRule) -> None:
    host_matches = matches(
        rule.condition.machine_selectors, state.host, state.runner, state.timeout, state.cancel
    )
    if not host_matches:
        logger.debug("Rule '%s' does not apply to this host", rule.name)
        return

    try:
        name_re = re.compile(rule.condition.name_pattern, re.IGNORECASE) if rule.condition.name_pattern else None
    except re.error as e:
        state.problem(RuleExecutionError(f"rule '{rule.name}': invalid name_pattern: {e}"))
        return

    for category in CATEGORY_ORDER:
        if category not in rule.applies_to:
            continue
        kept: list[_Entry] = []
        for entry in state.entries[category]:
            if not _rule_targets(rule, entry.item, name_re):
                kept.append(entry)
                continue
            result = _run_rule(state, rule, entry)
            if result is not None:
                kept.append(result)
        state.entries[category] = kept


def _rule_targets(rule: InheritanceRule, item: ItemSpec, name_re: re.Pattern[str] | None) -> bool:
    tags = {t.casefold() for t in item.inheritance_tags}
    cond = rule.condition.inheritance_tags
    if cond.contains and not all(t.casefold() in tags for t in cond.contains):
        return False
    if cond.contains_any and not any(t.casefold() in tags for t in cond.contains_any):
        return False
    if any(t.casefold() in tags for t in cond.excludes):
        return False
    if name_re is not None and not name_re.search(item.name):
        return False
    return True


def _run_rule(state: _Resolution, rule: InheritanceRule, entry: _Entry) -> _Entry | None:
    item = entry.item
    params = rule.parameters
    match rule.action:
        case "skip":
            logger.debug("Rule '%s' drops %s '%s'", rule.name, item.category.value, item.name)
            return None
        case "merge":
            update = {}
            for name, value in dict(params.get("fields", {})).items():
                if name in type(item).model_fields and _is_empty(item, name):
                    update[name] = value
            tags = params.get("tags", [])
            if tags:
                update["inheritance_tags"] = _union(item.inheritance_tags, list(tags))
            return _after_rule(state, rule, entry, update)
        case "replace":
            update = {
                name: value
                for name, value in dict(params.get("set", {})).items()
                if name in type(item).model_fields
            }
            return _after_rule(state, rule, entry, update)
        case "transform":
            return _transform(state, rule, entry)
        case "validate":
            _validate(state, rule, item)
            return entry
    return entry


def _after_rule(state: _Resolution, rule: InheritanceRule, entry: _Entry, update: dict[str, Any]) -> _Entry:
    if not update:
        return entry
    try:
        return _Entry(_rebuild(entry.item, update), entry.priority)
    except MergeConflictError as e:
        state.problem(RuleExecutionError(f"rule '{rule.name}': {e}"), entry.item.name)
        return entry


def _rule_params(state: _Resolution, rule: InheritanceRule, item: ItemSpec) -> dict[str, Any]:
    params = item.model_dump(mode="json", exclude={"origin"})
    params.update(state.host.as_params())
    params.update({"rule": rule.name, "category": item.category.value, "item": item.name})
    return params


def _run_script(state: _Resolution, rule: InheritanceRule, item: ItemSpec, body: str) -> CommandResult:
    if state.runner is None:
        raise RuleExecutionError(f"rule '{rule.name}': no script runner available")
    payload = item.model_dump(mode="json", exclude={"origin"})
    try:
        return state.runner.run(
            body,
            _rule_params(state, rule, item),
            timeout=state.timeout,
            stdin=json.dumps(payload),
            cancel=state.cancel,
        )
    except (CommandTimeoutError, CommandCancelledError) as e:
        raise RuleExecutionError(f"rule '{rule.name}': {e}") from e


def _transform(state: _Resolution, rule: InheritanceRule, entry: _Entry) -> _Entry:
    item = entry.item
    try:
        result = _run_script(state, rule, item, rule.script)
        if not result.ok:
            raise RuleExecutionError(
                f"rule '{rule.name}': transform script exited {result.exit_code}: "
                f"{(result.stderr or result.output).strip()}"
            )
    except RuleExecutionError as e:
        state.problem(e, item.name)
        return entry

    output = result.output.strip()
    if not output:
        return entry
    try:
        parsed = json.loads(output)
    except json.JSONDecodeError:
        parsed = None

    if isinstance(parsed, dict):
        update = {k: v for k, v in parsed.items() if k in type(item).model_fields and k != "origin"}
    else:
        target = _PRIMARY_PATH.get(item.category)
        if target is None:
            state.warn(f"rule '{rule.name}': plain-text transform output ignored for {item.category.value}", item.name)
            return entry
        update = {target: output}
    logger.debug("Rule '%s' transformed '%s': %s", rule.name, item.name, sorted(update))
    return _after_rule(state, rule, entry, update)


def _validate(state: _Resolution, rule: InheritanceRule, item: ItemSpec) -> None:
    params = rule.parameters
    failure = ""
    missing = [f for f in params.get("required_fields", []) if _is_empty(item, f)]
    if missing:
        failure = f"missing {', '.join(missing)}"
    elif rule.script:
        try:
            result = _run_script(state, rule, item, rule.script)
        except RuleExecutionError as e:
            state.problem(e, item.name)
            return
        expected = params.get("expected_output", "")
        if not result.ok:
            failure = f"check exited {result.exit_code}"
        elif expected and not re.search(str(expected), result.output, re.IGNORECASE):
            failure = f"output did not match {expected!r}"
    if failure:
        state.problem(ResolutionError(f"validation rule '{rule.name}' failed: {failure}"), item.name)


# ── Final checks ─────────────────────────────────────────────────────


def _drop_duplicate_paths(state: _Resolution) -> None:
    for category in CATEGORY_ORDER:
        seen: dict[str, str] = {}
        kept: list[_Entry] = []
        for entry in state.entries[category]:
            item = entry.item
            if not item.captures:
                kept.append(entry)
                continue
            key = item.dynamic_state_path.replace("\\", "/").strip("/").casefold()
            if key in seen:
                state.problem(
                    ResolutionError(
                        f"{category.value}: '{item.name}' reuses dynamic_state_path "
                        f"'{item.dynamic_state_path}' of '{seen[key]}'; dropped"
                    ),
                    item.name,
                )
                continue
            seen[key] = item.name
            kept.append(entry)
        state.entries[category] = kept


def _prerequisites(template: Template, layers: list[_Layer], mode: str) -> list[PrerequisiteSpec]:
    """Prerequisites by name; later layers replace earlier ones."""
    merged: dict[str, PrerequisiteSpec] = {p.name: p for p in template.prerequisites}
    if mode == "disabled":
        return list(merged.values())
    sources: list[ItemLists] = []
    if template.shared is not None and not (mode == "replace" and layers):
        sources.append(template.shared)
    sources.extend(layer.items for layer in layers)
    for source in sources:
        for prereq in source.prerequisites:
            merged[prereq.name] = prereq
    return list(merged.values())


# ── Helpers ──────────────────────────────────────────────────────────


def _priority(item: ItemSpec, section_priority: int) -> int:
    return item.inheritance_priority if item.inheritance_priority is not None else section_priority


def _with_origin(item: ItemSpec, origin: str) -> ItemSpec:
    return item if item.origin == origin else item.model_copy(update={"origin": origin})


def _is_empty(item: ItemSpec, name: str) -> bool:
    value = getattr(item, name, None)
    if value is None or value == "" or value == [] or value == {}:
        return True
    info = type(item).model_fields.get(name)
    return info is not None and not info.is_required() and value == info.get_default(call_default_factory=True)


def _union(first: list[Any], second: list[Any]) -> list[Any]:
    out = list(first)
    for value in second:
        if value not in out:
            out.append(value)
    return out


def _union_lists(winner: ItemSpec, loser: ItemSpec) -> dict[str, Any]:
    return {
        name: _union(getattr(winner, name), getattr(loser, name))
        for name in winner.list_fields
        if hasattr(loser, name)
    }


def _rebuild(item: ItemSpec, update: dict[str, Any]) -> ItemSpec:
    """Re-validate ``item`` with ``update`` applied."""
    data = item.model_dump()
    data.update(update)
    try:
        return type(item).model_validate(data)
    except ValidationError as e:
        problems = "; ".join(err.get("msg", "invalid") for err in e.errors())
        raise MergeConflictError(f"'{item.name}' is invalid after merge: {problems}") from e
