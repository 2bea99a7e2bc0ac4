"""
Tests for the inheritance resolver — layering, conflict resolution,
inheritance rules and fallback behaviour.
"""

import json
import textwrap

import pytest

from confsnap.adapters.shell.command import CommandResult
from confsnap.core.config.loader import parse_template
from confsnap.core.engine.resolver import resolve
from confsnap.core.errors import MergeConflictError, ResolutionError, RuleExecutionError


def _resolve(content: str, host, runner=None, **kwargs):
    template = parse_template(textwrap.dedent(content))
    return resolve(template, host, runner, **kwargs)


def _file(name: str, source: str, path: str = "", **extra) -> dict:
    item = {"name": name, "action": "backup", "source_path": source, "dynamic_state_path": path or name}
    item.update(extra)
    return item


def _doc(**sections) -> str:
    """Build a template document from Python structures."""
    document = {"metadata": {"name": "layered"}}
    document.update(sections)
    return json.dumps(document)


THIS_HOST = [{"type": "machine_name", "value": "WORKSTATION-01"}]
OTHER_HOST = [{"type": "machine_name", "value": "LAPTOP-99"}]


# ── Layering ─────────────────────────────────────────────────────────


class TestLayering:
    def test_machine_item_overrides_shared_theme(self, host):
        effective, warnings = _resolve(
            """\
            metadata: {name: desktop}
            shared:
              registry:
                - name: Theme
                  action: backup
                  key_path: HKCU:/Software/Desktop
                  type: value
                  value_name: Theme
                  value_data: light
                  dynamic_state_path: theme.json
                  inheritance_tags: [theme]
                  inheritance_priority: 50
            machine_specific:
              - selectors:
                  - {type: machine_name, value: WORKSTATION-01}
                registry:
                  - name: Theme
                    action: backup
                    key_path: HKCU:/Software/Desktop
                    type: value
                    value_name: Theme
                    value_data: dark
                    dynamic_state_path: theme.json
                    inheritance_tags: [theme]
                    inheritance_priority: 90
                    conflict_resolution: machine_wins
            """,
            host,
        )
        assert len(effective.registry) == 1
        theme = effective.registry[0]
        assert theme.inheritance_priority == 90
        assert theme.value_data == "dark"
        assert theme.origin == "machine"
        assert warnings == []

    def test_root_items_keep_template_origin(self, host):
        effective, _ = _resolve(_doc(files=[_file("a", "/a")]), host)
        assert effective.files[0].origin == "template"

    def test_non_matching_section_is_ignored(self, host):
        effective, _ = _resolve(
            _doc(
                shared={"files": [_file("editor", "/shared/editor")]},
                machine_specific=[{"selectors": OTHER_HOST, "files": [_file("editor", "/laptop/editor")]}],
            ),
            host,
        )
        assert [f.source_path for f in effective.files] == ["/shared/editor"]
        assert effective.files[0].origin == "shared"

    def test_disjoint_items_are_all_kept(self, host):
        shared = [_file(f"s{i}", f"/s{i}") for i in range(3)]
        machine = [_file(f"m{i}", f"/m{i}") for i in range(2)]
        forward, _ = _resolve(
            _doc(shared={"files": shared}, machine_specific=[{"selectors": THIS_HOST, "files": machine}]),
            host,
        )
        swapped, _ = _resolve(
            _doc(shared={"files": machine}, machine_specific=[{"selectors": THIS_HOST, "files": shared}]),
            host,
        )
        assert len(forward.files) == len(swapped.files) == 5
        assert {f.name for f in forward.files} == {f.name for f in swapped.files}

    def test_different_tags_do_not_merge(self, host):
        effective, _ = _resolve(
            _doc(
                shared={"files": [_file("cfg", "/a", "a", inheritance_tags=["work"])]},
                machine_specific=[
                    {"selectors": THIS_HOST, "files": [_file("cfg", "/b", "b", inheritance_tags=["home"])]}
                ],
            ),
            host,
        )
        assert len(effective.files) == 2

    def test_tag_order_does_not_matter(self, host):
        effective, _ = _resolve(
            _doc(
                shared={"files": [_file("cfg", "/a", "cfg", inheritance_tags=["x", "y"])]},
                machine_specific=[
                    {"selectors": THIS_HOST, "files": [_file("cfg", "/b", "cfg", inheritance_tags=["y", "x"])]}
                ],
            ),
            host,
        )
        assert len(effective.files) == 1

    def test_higher_priority_section_wins_whatever_the_declared_order(self, host):
        effective, _ = _resolve(
            _doc(
                machine_specific=[
                    {"selectors": THIS_HOST, "priority": 20, "files": [_file("cfg", "/high")]},
                    {"selectors": THIS_HOST, "priority": 5, "files": [_file("cfg", "/low")]},
                ]
            ),
            host,
        )
        assert effective.files[0].source_path == "/high"
        assert effective.files[0].inheritance_priority == 20

    def test_item_priority_overrides_section_priority(self, host):
        effective, _ = _resolve(
            _doc(
                shared={"priority": 0, "files": [_file("cfg", "/shared", inheritance_priority=99)]},
                machine_specific=[{"selectors": THIS_HOST, "priority": 10, "files": [_file("cfg", "/machine")]}],
            ),
            host,
        )
        assert effective.files[0].source_path == "/shared"
        assert effective.files[0].inheritance_priority == 99

    def test_conditional_sections_layer_after_machine_sections(self, host):
        effective, _ = _resolve(
            _doc(
                machine_specific=[{"selectors": THIS_HOST, "files": [_file("cfg", "/machine")]}],
                conditional_sections=[
                    {
                        "name": "dev-boxes",
                        "conditions": [{"type": "environment_variable", "value": "DEPLOY_ENV", "expected_value": "dev"}],
                        "files": [_file("cfg", "/conditional")],
                    }
                ],
            ),
            host,
        )
        assert effective.files[0].source_path == "/conditional"
        assert effective.files[0].origin == "conditional"

    def test_prerequisites_later_layers_replace_by_name(self, host):
        effective, _ = _resolve(
            _doc(
                prerequisites=[{"type": "application", "name": "git", "check_command": "git --version"}],
                machine_specific=[
                    {
                        "selectors": THIS_HOST,
                        "prerequisites": [
                            {"type": "application", "name": "git", "check_command": "git --version", "on_missing": "fail_backup"}
                        ],
                    }
                ],
            ),
            host,
        )
        assert len(effective.prerequisites) == 1
        assert effective.prerequisites[0].on_missing == "fail_backup"


# ── Conflict resolution ──────────────────────────────────────────────


class TestConflictResolution:
    def _pair(self, shared_item: dict, machine_item: dict, **config) -> str:
        return _doc(
            configuration=config,
            shared={"files": [shared_item]},
            machine_specific=[{"selectors": THIS_HOST, "files": [machine_item]}],
        )

    @pytest.mark.parametrize("shared_priority, machine_priority", [(10, 90), (90, 10), (50, 50)])
    def test_machine_wins_for_any_priority_order(self, host, shared_priority, machine_priority):
        effective, _ = _resolve(
            self._pair(
                _file("cfg", "/shared", destination="/dst-shared", inheritance_priority=shared_priority),
                _file(
                    "cfg",
                    "/machine",
                    destination="/dst-machine",
                    inheritance_priority=machine_priority,
                    conflict_resolution="machine_wins",
                ),
            ),
            host,
        )
        item = effective.files[0]
        assert (item.source_path, item.destination) == ("/machine", "/dst-machine")
        assert item.inheritance_priority == max(shared_priority, machine_priority)

    def test_shared_wins_mirror(self, host):
        effective, _ = _resolve(
            self._pair(
                _file("cfg", "/shared", inheritance_priority=1),
                _file("cfg", "/machine", inheritance_priority=99, conflict_resolution="shared_wins"),
            ),
            host,
        )
        assert effective.files[0].source_path == "/shared"

    def test_shared_side_policy_applies_when_machine_declares_none(self, host):
        effective, _ = _resolve(
            self._pair(
                _file("cfg", "/shared", conflict_resolution="shared_wins"),
                _file("cfg", "/machine", inheritance_priority=99),
            ),
            host,
        )
        assert effective.files[0].source_path == "/shared"

    def test_tie_follows_machine_precedence(self, host):
        shared, machine = _file("cfg", "/shared"), _file("cfg", "/machine")
        on, _ = _resolve(self._pair(shared, machine, machine_precedence=True), host)
        off, _ = _resolve(self._pair(shared, machine, machine_precedence=False), host)
        assert on.files[0].source_path == "/machine"
        assert off.files[0].source_path == "/shared"

    def test_prompt_falls_back_to_machine_wins_with_warning(self, host):
        effective, warnings = _resolve(
            self._pair(
                _file("cfg", "/shared", inheritance_priority=99),
                _file("cfg", "/machine", conflict_resolution="prompt"),
            ),
            host,
        )
        assert effective.files[0].source_path == "/machine"
        assert any("prompt" in w.message for w in warnings)

    def test_list_fields_are_unioned(self, host):
        effective, _ = _resolve(
            self._pair(
                _file("cfg", "/shared", exclude_patterns=["*.tmp", "cache"]),
                _file("cfg", "/machine", exclude_patterns=["*.log", "cache"], conflict_resolution="machine_wins"),
            ),
            host,
        )
        assert effective.files[0].exclude_patterns == ["*.log", "cache", "*.tmp"]

    def test_merge_both_fills_empty_shared_fields(self, host):
        effective, warnings = _resolve(
            self._pair(
                _file("cfg", "/shared"),
                _file("cfg", "/machine", destination="/dst", verify_checksum=True, conflict_resolution="merge_both"),
            ),
            host,
        )
        item = effective.files[0]
        assert item.source_path == "/shared"
        assert item.destination == "/dst"
        assert item.verify_checksum is True
        assert warnings == []

    @pytest.mark.parametrize("shared_priority, machine_priority", [(50, 90), (90, 50)])
    def test_merge_both_keeps_the_higher_priority(self, host, shared_priority, machine_priority):
        effective, _ = _resolve(
            self._pair(
                _file("cfg", "/shared", inheritance_priority=shared_priority, conflict_resolution="merge_both"),
                _file("cfg", "/machine", inheritance_priority=machine_priority, conflict_resolution="merge_both"),
            ),
            host,
        )
        assert len(effective.files) == 1
        assert effective.files[0].inheritance_priority == 90
        assert effective.files[0].source_path == "/shared"

    def test_incompatible_merge_both_warns(self, host):
        effective, warnings = _resolve(
            self._pair(
                _file("cfg", "/shared", type="file"),
                _file("cfg", "/machine", type="directory", conflict_resolution="merge_both"),
            ),
            host,
        )
        assert len(effective.files) == 1
        assert effective.files[0].type == "directory"
        assert any("merge_both needs compatible items" in w.message for w in warnings)

    def test_incompatible_merge_both_is_fatal_when_strict(self, host):
        doc = self._pair(
            _file("cfg", "/shared", type="file"),
            _file("cfg", "/machine", type="directory", conflict_resolution="merge_both"),
        )
        with pytest.raises(MergeConflictError):
            _resolve(doc, host, validation_level="strict")

    def test_template_validation_level_applies_without_override(self, host):
        doc = self._pair(
            _file("cfg", "/shared", type="file"),
            _file("cfg", "/machine", type="directory", conflict_resolution="merge_both"),
            validation_level="strict",
        )
        with pytest.raises(MergeConflictError):
            _resolve(doc, host)


# ── Inheritance policies & merge strategies ──────────────────────────


class TestPolicies:
    def test_skip_keeps_existing(self, host):
        effective, _ = _resolve(
            _doc(
                shared={"files": [_file("cfg", "/shared")]},
                machine_specific=[
                    {"selectors": THIS_HOST, "files": [_file("cfg", "/machine", inheritance_policy="skip")]}
                ],
            ),
            host,
        )
        assert effective.files[0].source_path == "/shared"

    def test_replace_takes_incoming_whole(self, host):
        effective, _ = _resolve(
            _doc(
                shared={"files": [_file("cfg", "/shared", exclude_patterns=["*.tmp"])]},
                machine_specific=[
                    {"selectors": THIS_HOST, "files": [_file("cfg", "/machine", inheritance_policy="replace")]}
                ],
            ),
            host,
        )
        assert effective.files[0].source_path == "/machine"
        assert effective.files[0].exclude_patterns == []

    def test_extend_fills_gaps_only(self, host):
        effective, _ = _resolve(
            _doc(
                shared={"files": [_file("cfg", "/shared", exclude_patterns=["*.tmp"])]},
                machine_specific=[
                    {
                        "selectors": THIS_HOST,
                        "priority": 50,
                        "files": [
                            _file("cfg", "/machine", destination="/dst", exclude_patterns=["*.bak"], inheritance_policy="extend")
                        ],
                    }
                ],
            ),
            host,
        )
        item = effective.files[0]
        assert item.source_path == "/shared"
        assert item.destination == "/dst"
        assert item.exclude_patterns == ["*.tmp", "*.bak"]

    def test_shared_override_policy(self, host):
        effective, _ = _resolve(
            _doc(
                files=[_file("cfg", "/root")],
                shared={"override_policy": "skip", "files": [_file("cfg", "/shared")]},
            ),
            host,
        )
        assert effective.files[0].source_path == "/root"

    def test_shallow_merge_replaces_items(self, host):
        effective, _ = _resolve(
            _doc(
                shared={"files": [_file("cfg", "/shared", exclude_patterns=["*.tmp"])]},
                machine_specific=[
                    {"selectors": THIS_HOST, "merge_strategy": "shallow_merge", "files": [_file("cfg", "/machine")]}
                ],
            ),
            host,
        )
        assert effective.files[0].exclude_patterns == []

    def test_replace_strategy_clears_declared_categories(self, host):
        effective, _ = _resolve(
            _doc(
                shared={
                    "files": [_file("a", "/a"), _file("b", "/b")],
                    "applications": [
                        {"name": "apps", "action": "backup", "discovery_command": "list", "dynamic_state_path": "apps"}
                    ],
                },
                machine_specific=[
                    {"selectors": THIS_HOST, "merge_strategy": "replace", "files": [_file("c", "/c")]}
                ],
            ),
            host,
        )
        assert [f.name for f in effective.files] == ["c"]
        assert [a.name for a in effective.applications] == ["apps"]


# ── Inheritance mode & fallback ──────────────────────────────────────


class TestInheritanceMode:
    def test_replace_mode_drops_shared_when_a_section_matches(self, host):
        effective, _ = _resolve(
            _doc(
                configuration={"inheritance_mode": "replace"},
                shared={"files": [_file("a", "/a")]},
                machine_specific=[{"selectors": THIS_HOST, "files": [_file("b", "/b")]}],
            ),
            host,
        )
        assert [f.name for f in effective.files] == ["b"]

    def test_replace_mode_keeps_shared_when_nothing_matches(self, host):
        effective, _ = _resolve(
            _doc(
                configuration={"inheritance_mode": "replace"},
                shared={"files": [_file("a", "/a")]},
                machine_specific=[{"selectors": OTHER_HOST, "files": [_file("b", "/b")]}],
            ),
            host,
        )
        assert [f.name for f in effective.files] == ["a"]

    def test_disabled_mode_uses_root_items_only(self, host):
        effective, warnings = _resolve(
            _doc(
                configuration={"inheritance_mode": "disabled", "fallback_strategy": "fail"},
                files=[_file("root", "/root")],
                shared={"files": [_file("a", "/a")]},
                machine_specific=[{"selectors": OTHER_HOST, "files": [_file("b", "/b")]}],
            ),
            host,
        )
        assert [f.name for f in effective.files] == ["root"]
        assert warnings == []


class TestFallback:
    def _unmatched(self, strategy: str) -> str:
        return _doc(
            configuration={"fallback_strategy": strategy},
            shared={"files": [_file("a", "/a")]},
            machine_specific=[{"selectors": OTHER_HOST, "files": [_file("b", "/b")]}],
        )

    def test_use_shared_is_silent(self, host):
        effective, warnings = _resolve(self._unmatched("use_shared"), host)
        assert [f.name for f in effective.files] == ["a"]
        assert warnings == []

    def test_warn(self, host):
        effective, warnings = _resolve(self._unmatched("warn"), host)
        assert [f.name for f in effective.files] == ["a"]
        assert any("no machine-specific or conditional section matched" in w.message for w in warnings)

    def test_fail(self, host):
        with pytest.raises(ResolutionError, match="WORKSTATION-01"):
            _resolve(self._unmatched("fail"), host)

    def test_no_sections_declared_never_falls_back(self, host):
        _, warnings = _resolve(
            _doc(configuration={"fallback_strategy": "fail"}, shared={"files": [_file("a", "/a")]}),
            host,
        )
        assert warnings == []


# ── Conditional sections ─────────────────────────────────────────────


class TestConditionalSections:
    def _section(self, conditions: list, logic: str = "and") -> str:
        return _doc(
            conditional_sections=[
                {"name": "extra", "logic": logic, "conditions": conditions, "files": [_file("x", "/x")]}
            ]
        )

    DEV = {"type": "environment_variable", "value": "DEPLOY_ENV", "expected_value": "dev"}
    PROD = {"type": "environment_variable", "value": "DEPLOY_ENV", "expected_value": "prod"}

    def test_and(self, host):
        applied, _ = _resolve(self._section([self.DEV, self.DEV]), host)
        skipped, _ = _resolve(self._section([self.DEV, self.PROD]), host)
        assert len(applied.files) == 1
        assert len(skipped.files) == 0

    def test_or(self, host):
        effective, _ = _resolve(self._section([self.PROD, self.DEV], logic="or"), host)
        assert effective.files[0].origin == "conditional"

    def test_not(self, host):
        effective, _ = _resolve(self._section([self.PROD], logic="not"), host)
        assert len(effective.files) == 1

    def test_empty_conditions_apply(self, host):
        effective, _ = _resolve(self._section([]), host)
        assert len(effective.files) == 1

    def test_check_condition(self, host, mock_runner):
        mock_runner.respond("nvidia-smi", output="GPU 0: RTX")
        check = {"type": "hardware_check", "check": "nvidia-smi -L", "expected_result": "RTX"}
        effective, _ = _resolve(self._section([check]), host, mock_runner)
        assert len(effective.files) == 1

    def test_fatal_check_failure_warns_and_skips_section(self, host, mock_runner):
        mock_runner.fail("nvidia-smi")
        check = {"type": "hardware_check", "check": "nvidia-smi", "on_failure": "fail"}
        effective, warnings = _resolve(self._section([check]), host, mock_runner)
        assert effective.files == []
        assert any("conditional section 'extra'" in w.message for w in warnings)

    def test_fatal_check_failure_raises_when_strict(self, host, mock_runner):
        mock_runner.fail("nvidia-smi")
        check = {"type": "hardware_check", "check": "nvidia-smi", "on_failure": "fail"}
        with pytest.raises(RuleExecutionError):
            _resolve(self._section([check]), host, mock_runner, validation_level="strict")


# ── Inheritance rules ────────────────────────────────────────────────


class TestRules:
    ITEMS = [
        _file("stable", "/stable", inheritance_tags=["core"]),
        _file("beta", "/beta", inheritance_tags=["core", "experimental"]),
    ]

    def _with_rule(self, rule: dict, items: list | None = None) -> str:
        rule = {"name": "rule", **rule}
        return _doc(files=items or self.ITEMS, inheritance_rules=[rule])

    def test_skip_by_tag(self, host):
        effective, _ = _resolve(
            self._with_rule({"action": "skip", "condition": {"inheritance_tags": {"contains": ["Experimental"]}}}),
            host,
        )
        assert [f.name for f in effective.files] == ["stable"]

    def test_excludes_tag(self, host):
        effective, _ = _resolve(
            self._with_rule({"action": "skip", "condition": {"inheritance_tags": {"excludes": ["experimental"]}}}),
            host,
        )
        assert [f.name for f in effective.files] == ["beta"]

    def test_contains_any(self, host):
        effective, _ = _resolve(
            self._with_rule(
                {"action": "skip", "condition": {"inheritance_tags": {"contains_any": ["nothing", "experimental"]}}}
            ),
            host,
        )
        assert [f.name for f in effective.files] == ["stable"]

    def test_name_pattern(self, host):
        effective, _ = _resolve(
            self._with_rule({"action": "skip", "condition": {"name_pattern": "^sta"}}),
            host,
        )
        assert [f.name for f in effective.files] == ["beta"]

    def test_applies_to_limits_categories(self, host):
        effective, _ = _resolve(self._with_rule({"action": "skip", "applies_to": ["registry"]}), host)
        assert len(effective.files) == 2

    def test_rule_for_other_hosts_is_ignored(self, host):
        effective, _ = _resolve(
            self._with_rule({"action": "skip", "condition": {"machine_selectors": OTHER_HOST}}),
            host,
        )
        assert len(effective.files) == 2

    def test_merge_fills_empty_fields_and_adds_tags(self, host):
        effective, _ = _resolve(
            self._with_rule(
                {
                    "action": "merge",
                    "condition": {"name_pattern": "stable"},
                    "parameters": {"fields": {"destination": "/opt/stable", "source_path": "/ignored"}, "tags": ["managed"]},
                }
            ),
            host,
        )
        item = effective.find_item(effective.files[0].category, "stable")
        assert item.destination == "/opt/stable"
        assert item.source_path == "/stable"
        assert item.inheritance_tags == ["core", "managed"]

    def test_replace_sets_fields(self, host):
        effective, _ = _resolve(
            self._with_rule({"action": "replace", "parameters": {"set": {"verify_checksum": True}}}),
            host,
        )
        assert all(f.verify_checksum for f in effective.files)

    def test_transform_json_output(self, host, mock_runner):
        mock_runner.respond("rewrite", output='{"destination": "/mnt/backup", "unknown": 1}')
        effective, _ = _resolve(
            self._with_rule({"action": "transform", "script": "rewrite", "condition": {"name_pattern": "stable"}}),
            host,
            mock_runner,
        )
        assert effective.files[0].destination == "/mnt/backup"
        assert effective.files[1].destination == ""

    def test_transform_plain_text_replaces_source_path(self, host, mock_runner):
        mock_runner.respond("relocate", output="/new/location\n")
        effective, _ = _resolve(
            self._with_rule({"action": "transform", "script": "relocate", "condition": {"name_pattern": "beta"}}),
            host,
            mock_runner,
        )
        assert effective.files[1].source_path == "/new/location"

    def test_transform_receives_item_and_host(self, host, mock_runner):
        _resolve(
            self._with_rule({"action": "transform", "script": "inspect", "condition": {"name_pattern": "stable"}}),
            host,
            mock_runner,
        )
        call = mock_runner.calls_matching("inspect")[0]
        assert json.loads(call.stdin)["source_path"] == "/stable"
        assert call.params["machine_name"] == "WORKSTATION-01"
        assert call.params["rule"] == "rule"

    def test_failing_transform_warns_and_keeps_item(self, host, mock_runner):
        mock_runner.fail("rewrite", stderr="boom")
        effective, warnings = _resolve(
            self._with_rule({"action": "transform", "script": "rewrite"}), host, mock_runner
        )
        assert [f.source_path for f in effective.files] == ["/stable", "/beta"]
        assert any("boom" in w.message for w in warnings)

    def test_failing_transform_raises_when_strict(self, host, mock_runner):
        mock_runner.fail("rewrite")
        with pytest.raises(RuleExecutionError):
            _resolve(
                self._with_rule({"action": "transform", "script": "rewrite"}),
                host,
                mock_runner,
                validation_level="strict",
            )

    def test_timed_out_transform(self, host, mock_runner):
        mock_runner.time_out("rewrite")
        _, warnings = _resolve(self._with_rule({"action": "transform", "script": "rewrite"}), host, mock_runner)
        assert any("timed out" in w.message for w in warnings)

    def test_validate_required_fields(self, host):
        _, warnings = _resolve(
            self._with_rule({"action": "validate", "parameters": {"required_fields": ["destination"]}}),
            host,
        )
        assert len(warnings) == 2
        assert "missing destination" in warnings[0].message

    def test_validate_required_fields_strict(self, host):
        with pytest.raises(ResolutionError, match="validation rule 'rule' failed"):
            _resolve(
                self._with_rule({"action": "validate", "parameters": {"required_fields": ["destination"]}}),
                host,
                validation_level="strict",
            )

    def test_validate_script_output(self, host, mock_runner):
        mock_runner.respond_with(
            "lint",
            lambda call: CommandResult(output="OK" if "stable" in call.stdin else "bad path"),
        )
        _, warnings = _resolve(
            self._with_rule({"action": "validate", "script": "lint", "parameters": {"expected_output": "^ok$"}}),
            host,
            mock_runner,
        )
        assert [w.item for w in warnings] == ["beta"]

    def test_invalid_name_pattern_warns(self, host):
        effective, warnings = _resolve(
            self._with_rule({"action": "skip", "condition": {"name_pattern": "([bad"}}),
            host,
        )
        assert len(effective.files) == 2
        assert any("invalid name_pattern" in w.message for w in warnings)


# ── Final checks ─────────────────────────────────────────────────────


class TestDuplicateStatePaths:
    def _doc(self) -> str:
        return _doc(
            shared={"files": [_file("a", "/a", "shared/path")]},
            machine_specific=[{"selectors": THIS_HOST, "files": [_file("b", "/b", "Shared/Path")]}],
        )

    def test_later_item_is_dropped_with_warning(self, host):
        effective, warnings = _resolve(self._doc(), host)
        assert [f.name for f in effective.files] == ["a"]
        assert any("reuses dynamic_state_path" in w.message for w in warnings)

    def test_fatal_when_strict(self, host):
        with pytest.raises(ResolutionError, match="reuses dynamic_state_path"):
            _resolve(self._doc(), host, validation_level="strict")

    def test_restore_only_items_may_share_paths(self, host):
        effective, warnings = _resolve(
            _doc(
                files=[
                    {"name": "a", "action": "restore", "source_path": "/a", "dynamic_state_path": "p"},
                    {"name": "b", "action": "restore", "source_path": "/b", "dynamic_state_path": "p"},
                ]
            ),
            host,
        )
        assert len(effective.files) == 2
        assert warnings == []
