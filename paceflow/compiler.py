"""Compile declarative rule trees into flat, index-addressable plans."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from .constants import DEFAULT_RE_ENTRY_RULE, DELAY_PRESETS, END_REASONS, RE_ENTRY_RULES
from .contracts import (
    ActionPayload,
    ConditionBranch,
    ConditionPayload,
    DelayPayload,
    EndPayload,
    Plan,
    SharedFlowPayload,
    Step,
    StepKind,
)
from .errors import CompileError
from .predicates import check as check_predicate

logger = logging.getLogger(__name__)

# Rule keys that compile to an action step, mapped to the action name.
ACTION_KEYS: Dict[str, str] = {
    "send_email": "send_email",
    "send_mail": "send_email",
    "Send Mail": "send_email",
    "send_sms": "send_sms",
    "webhook": "webhook",
}

_UNITS = {"weeks": 604800, "days": 86400, "hours": 3600, "minutes": 60, "seconds": 1}

_Item = Tuple[Any, str]


def source_hash(rule_tree: Any) -> str:
    canonical = json.dumps(rule_tree, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


class _IdSequence:
    def __init__(self, prefix: str) -> None:
        self.prefix = prefix
        self._counter = 0

    def next(self) -> str:
        self._counter += 1
        return f"{self.prefix}{self._counter}"


class _PlanMeta:
    def __init__(self) -> None:
        self.trigger_event: Optional[str] = None
        self.re_entry_rule: str = DEFAULT_RE_ENTRY_RULE


class RuleCompiler:
    """Depth-first compiler from rule tree to :class:`Plan`.

    Branching nodes never run in parallel. Each branch becomes its own
    sub-sequence after the condition step, the steps that follow the
    branching node are copied into every branch, and every branch ends with
    an ``end`` step so execution cannot fall through into a sibling.
    ``if`` branches are laid out in the plan itself; ``switch`` branches are
    carried inside the condition payload and spliced in when matched.
    """

    def compile(self, rule_tree: Any, workflow_id: str, version: str = "1") -> Plan:
        if not isinstance(rule_tree, (dict, list)):
            raise CompileError("rule must be an object or a list")
        meta = _PlanMeta()
        steps = self._sequence([(rule_tree, "")], _IdSequence("step_"), meta, None)
        if not steps:
            raise CompileError("rule produces no steps")
        plan = Plan(
            workflow_id=workflow_id,
            version=str(version),
            source_hash=source_hash(rule_tree),
            trigger_event=meta.trigger_event,
            re_entry_rule=meta.re_entry_rule,
            steps=steps,
        )
        logger.info(
            f"Compiled workflow {workflow_id} v{plan.version} into {len(steps)} steps"
        )
        return plan

    # ------------------------------------------------------------------
    # Sequencing
    def _sequence(
        self,
        items: List[_Item],
        ids: _IdSequence,
        meta: _PlanMeta,
        branch: Optional[str],
    ) -> List[Step]:
        queue = list(items)
        steps: List[Step] = []
        while queue:
            node, path = queue.pop(0)
            if isinstance(node, list):
                queue[0:0] = [(child, f"{path}[{i}]") for i, child in enumerate(node)]
                continue
            if not isinstance(node, dict) or len(node) != 1:
                raise CompileError("expected an object with exactly one key", path or "$")

            key, body = next(iter(node.items()))
            node_path = _join(path, key)
            if key == "and":
                if not isinstance(body, list):
                    raise CompileError("'and' expects a list", node_path)
                queue[0:0] = [(child, f"{node_path}[{i}]") for i, child in enumerate(body)]
            elif key == "trigger":
                if branch is not None:
                    raise CompileError("trigger must be declared outside branches", node_path)
                self._trigger(body, node_path, meta)
            elif key == "if":
                # the branches consume the rest of the sequence
                steps.extend(self._static_branches(body, node_path, queue, ids, meta, branch))
                return steps
            elif key == "switch":
                steps.append(self._runtime_branches(body, node_path, queue, ids, meta, branch))
                return steps
            else:
                steps.append(Step(id=ids.next(), payload=self._leaf(key, body, node_path), branch=branch))
        return steps

    def _terminate(self, steps: List[Step], ids: _IdSequence, label: str) -> List[Step]:
        if steps and steps[-1].kind is StepKind.END:
            return steps
        return steps + [Step(id=ids.next(), payload=EndPayload(), branch=label)]

    # ------------------------------------------------------------------
    # Branching
    def _if_arms(self, body: Any, path: str) -> List[Tuple[Any, Any, str]]:
        arms: List[Tuple[Any, Any, str]] = []
        while True:
            if not isinstance(body, list) or len(body) < 2:
                raise CompileError("'if' expects [condition, then, ...]", path)
            for i in range(0, len(body) - 1, 2):
                predicate = body[i]
                if predicate is None:
                    raise CompileError("condition must not be null", f"{path}[{i}]")
                problems = check_predicate(predicate)
                if problems:
                    raise CompileError(problems[0], f"{path}[{i}]")
                arms.append((predicate, body[i + 1], f"{path}[{i + 1}]"))
            if len(body) % 2 == 0:
                return arms
            else_node = body[-1]
            else_path = f"{path}[{len(body) - 1}]"
            if isinstance(else_node, dict) and list(else_node) == ["if"]:
                # else-if continues the same chain
                body = else_node["if"]
                path = f"{else_path}.if"
                continue
            arms.append((None, else_node, else_path))
            return arms

    def _static_branches(
        self,
        body: Any,
        path: str,
        tail: List[_Item],
        ids: _IdSequence,
        meta: _PlanMeta,
        branch: Optional[str],
    ) -> List[Step]:
        arms = self._if_arms(body, path)
        condition_id = ids.next()
        branches: List[ConditionBranch] = []
        emitted: List[Step] = []
        for index, (predicate, then_node, then_path) in enumerate(arms):
            suffix = "default" if predicate is None else str(index)
            label = f"{branch}/{condition_id}:{suffix}" if branch else f"{condition_id}:{suffix}"
            sub = self._sequence([(then_node, then_path)] + list(tail), ids, meta, label)
            sub = self._terminate(sub, ids, label)
            branches.append(ConditionBranch(label=label, predicate=predicate, target=sub[0].id))
            emitted.extend(sub)
        condition = Step(
            id=condition_id,
            payload=ConditionPayload(branches=branches),
            branch=branch,
        )
        return [condition] + emitted

    def _runtime_branches(
        self,
        body: Any,
        path: str,
        tail: List[_Item],
        ids: _IdSequence,
        meta: _PlanMeta,
        branch: Optional[str],
    ) -> Step:
        if not isinstance(body, dict):
            raise CompileError("'switch' expects an object", path)
        var = body.get("var")
        cases = body.get("cases")
        if not var or not isinstance(var, str):
            raise CompileError("'switch' requires 'var'", _join(path, "var"))
        if not isinstance(cases, dict) or not cases:
            raise CompileError("'switch' requires non-empty 'cases'", _join(path, "cases"))

        arms: List[Tuple[str, Any, Any, str]] = [
            (str(case), {"==": [{"var": var}, case]}, node, f"{path}.cases.{case}")
            for case, node in cases.items()
        ]
        if "default" in body:
            arms.append(("default", None, body["default"], _join(path, "default")))

        condition_id = ids.next()
        branches: List[ConditionBranch] = []
        for index, (case, predicate, node, node_path) in enumerate(arms):
            label = f"{branch}/{condition_id}:{case}" if branch else f"{condition_id}:{case}"
            sub_ids = _IdSequence(f"{condition_id}.{index}.")
            sub = self._sequence([(node, node_path)] + list(tail), sub_ids, meta, label)
            sub = self._terminate(sub, sub_ids, label)
            branches.append(
                ConditionBranch(label=label, predicate=predicate, target=sub[0].id, steps=sub)
            )
        return Step(
            id=condition_id,
            payload=ConditionPayload(branches=branches, runtime=True),
            branch=branch,
        )

    # ------------------------------------------------------------------
    # Leaves
    def _trigger(self, body: Any, path: str, meta: _PlanMeta) -> None:
        if isinstance(body, str):
            body = {"event": body}
        if not isinstance(body, dict):
            raise CompileError("'trigger' expects an object", path)
        meta.trigger_event = body.get("event") or meta.trigger_event
        rule = body.get("reEntryRule", body.get("re_entry_rule"))
        if rule is not None:
            if rule not in RE_ENTRY_RULES:
                raise CompileError(
                    f"unknown re-entry rule {rule!r}; expected one of {', '.join(RE_ENTRY_RULES)}",
                    _join(path, "reEntryRule"),
                )
            meta.re_entry_rule = rule

    def _leaf(self, key: str, body: Any, path: str):
        if key == "delay":
            return self._delay(body, path)
        if key in ACTION_KEYS:
            return ActionPayload(action=ACTION_KEYS[key], params=self._action_params(body, path))
        if key == "action":
            if not isinstance(body, dict) or not body.get("name"):
                raise CompileError("'action' requires 'name'", path)
            params = body.get("params") or {}
            if not isinstance(params, dict):
                raise CompileError("'params' must be an object", _join(path, "params"))
            return ActionPayload(action=str(body["name"]), params=params)
        if key in ("shared_flow", "sharedFlow"):
            name = body.get("name") if isinstance(body, dict) else body
            if not name or not isinstance(name, str):
                raise CompileError("shared flow requires 'name'", path)
            return SharedFlowPayload(flow=name)
        if key == "end":
            return self._end(body, path)
        raise CompileError(f"unknown node {key!r}", path)

    def _action_params(self, body: Any, path: str) -> Dict[str, Any]:
        if body is None:
            return {}
        if not isinstance(body, dict):
            raise CompileError("action body must be an object", path)
        params = {k: v for k, v in body.items() if k != "data"}
        data = body.get("data")
        if isinstance(data, dict):
            params = {**data, **params}
        return params

    def _end(self, body: Any, path: str) -> EndPayload:
        reason = "completed"
        message = None
        if isinstance(body, dict):
            reason = body.get("reason", reason)
            message = body.get("message")
        elif isinstance(body, str):
            reason = body
        elif body not in (True, None):
            raise CompileError("'end' expects an object", path)
        if reason not in END_REASONS:
            raise CompileError(f"unknown end reason {reason!r}", _join(path, "reason"))
        return EndPayload(reason=reason, message=message)

    def _delay(self, body: Any, path: str) -> DelayPayload:
        if isinstance(body, str):
            body = {"type": body}
        elif isinstance(body, (int, float)) and not isinstance(body, bool):
            body = {"seconds": body}
        if not isinstance(body, dict):
            raise CompileError("'delay' expects an object", path)

        delay_type = body.get("type")
        if delay_type == "random":
            low = self._duration(body, "min_", path)
            high = self._duration(body, "max_", path)
            if low is None or high is None:
                raise CompileError("random delay requires min_* and max_* bounds", path)
            if high < low:
                raise CompileError("random delay maximum is below its minimum", path)
            return DelayPayload(min_seconds=low, max_seconds=high, label="random")
        if delay_type is not None and delay_type != "custom":
            if delay_type not in DELAY_PRESETS:
                raise CompileError(f"unknown delay type {delay_type!r}", _join(path, "type"))
            return DelayPayload(seconds=float(DELAY_PRESETS[delay_type]), label=delay_type)

        seconds = self._duration(body, "", path)
        if seconds is None:
            raise CompileError("delay requires a type or a duration", path)
        return DelayPayload(seconds=seconds)

    def _duration(self, body: Dict[str, Any], prefix: str, path: str) -> Optional[float]:
        total: Optional[float] = None
        for unit, factor in _UNITS.items():
            value = body.get(f"{prefix}{unit}")
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise CompileError(
                    f"{prefix}{unit} must be a non-negative number", _join(path, f"{prefix}{unit}")
                )
            total = (total or 0.0) + float(value) * factor
        return total


def compile_rule(rule_tree: Any, workflow_id: str, version: str = "1") -> Plan:
    """Compile ``rule_tree`` with a default :class:`RuleCompiler`."""
    return RuleCompiler().compile(rule_tree, workflow_id, version)
