"""Adapters — extractors and external-command bindings.

Public re-exports for convenient access.
"""

from confsnap.adapters.base import ExtractionContext, Extractor, StateArtifact
from confsnap.adapters.dispatch import ExtractorSet
from confsnap.adapters.mock import MockScriptRunner
from confsnap.adapters.shell.command import CommandResult, ScriptRunner, ShellScriptRunner

__all__ = [
    "CommandResult",
    "ExtractionContext",
    "Extractor",
    "ExtractorSet",
    "MockScriptRunner",
    "ScriptRunner",
    "ShellScriptRunner",
    "StateArtifact",
]
