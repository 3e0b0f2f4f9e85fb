"""Rule sources supplying raw rule trees by workflow id."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import yaml
from pydantic import BaseModel

logger = logging.getLogger(__name__)

RULE_SUFFIXES = (".yaml", ".yml", ".json")


class RuleDefinition(BaseModel):
    workflow_id: str
    version: str = "1"
    rule: Any


class RuleSource(Protocol):
    async def get_rule(self, workflow_id: str) -> RuleDefinition | None:
        """Return the current rule tree for ``workflow_id``."""


class InMemoryRuleSource:
    """Rules held in a dict; ``set_rule`` bumps the version."""

    def __init__(self, rules: Optional[Dict[str, Any]] = None) -> None:
        self._rules: Dict[str, RuleDefinition] = {}
        for workflow_id, rule in (rules or {}).items():
            self.set_rule(workflow_id, rule)

    def set_rule(self, workflow_id: str, rule: Any, version: Optional[str] = None) -> RuleDefinition:
        previous = self._rules.get(workflow_id)
        if version is None:
            version = str(int(previous.version) + 1) if previous and previous.version.isdigit() else "1"
        definition = RuleDefinition(workflow_id=workflow_id, version=version, rule=rule)
        self._rules[workflow_id] = definition
        return definition

    async def get_rule(self, workflow_id: str) -> RuleDefinition | None:
        return self._rules.get(workflow_id)


def load_rule_file(path: str | Path, workflow_id: Optional[str] = None) -> RuleDefinition:
    """Read one YAML or JSON rule file.

    The file holds either the bare rule tree or a mapping with ``rule`` and
    optional ``workflow_id``/``version`` keys.
    """
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f)
    if isinstance(data, dict) and "rule" in data:
        return RuleDefinition(
            workflow_id=str(data.get("workflow_id") or workflow_id or path.stem),
            version=str(data.get("version", "1")),
            rule=data["rule"],
        )
    return RuleDefinition(workflow_id=workflow_id or path.stem, rule=data)


class FileRuleSource:
    """Directory of ``<workflow_id>.yaml|.yml|.json`` rule files.

    Files are read on every lookup so edits apply to the next admission.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _find(self, workflow_id: str) -> Optional[Path]:
        for suffix in RULE_SUFFIXES:
            candidate = self.directory / f"{workflow_id}{suffix}"
            if candidate.is_file():
                return candidate
        return None

    async def get_rule(self, workflow_id: str) -> RuleDefinition | None:
        path = self._find(workflow_id)
        if path is None:
            logger.warning(f"No rule file for workflow {workflow_id} in {self.directory}")
            return None
        return await asyncio.to_thread(load_rule_file, path, workflow_id)
