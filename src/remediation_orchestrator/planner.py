from __future__ import annotations

import json
import logging
import math
import uuid
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from .errors import PlanParseError
from .llm import get_structured_planner
from .models import (
    ROLE_ADVISOR,
    ROLE_OPERATOR,
    ROLE_REVIEWER,
    GeneratedPlan,
    GeneratedSubTask,
    Plan,
    Priority,
    RepoInfo,
    RiskLevel,
    SubTaskType,
)

logger = logging.getLogger(__name__)

PLANNER_SYSTEM_PROMPT = """You are the planning agent of a legacy-code remediation system.
Break the user's request into small, executable subtasks and return a structured plan.

RULES:
1. Always start with analysis (advisor) before any modification.
2. Security comes first: include a vulnerability scan whenever code will change.
3. Generate tests BEFORE risky refactors.
4. Review is mandatory for high-risk changes.
5. Merge/deploy only after human approval for critical operations.

AVAILABLE AGENTS:
- advisor: analyzes code, suggests improvements, finds problems
- advisor-impact: analyzes refactor impact over the code graph/index
- operator: creates branches, applies patches, opens pull requests
- reviewer: reviews code, validates quality, checks compliance
- executor: merges pull requests and deploys (requires approval)

SUBTASK TYPES: analyze, refactor, test, security, review, deploy

Reply ONLY with a JSON object of this shape:
{
  "summary": "Plan summary",
  "subtasks": [
    {
      "id": "1",
      "type": "analyze",
      "description": "Clear description of the task",
      "agent": "advisor",
      "dependencies": [],
      "priority": "high",
      "estimatedComplexity": 3
    }
  ],
  "estimatedTime": "30 minutes",
  "riskLevel": "medium",
  "requiresApproval": false
}"""

_MODIFYING_TYPES = frozenset({SubTaskType.REFACTOR.value, SubTaskType.DEPLOY.value})
_ELEVATED_RISK = frozenset({RiskLevel.HIGH.value, RiskLevel.CRITICAL.value})
_RISKY_COMPLEXITY = 7


class PlanGenerator(Protocol):
    """Produces raw plan output for a request. Implementations may be LLM-backed or fixed."""

    def generate(
        self,
        request: str,
        context: dict[str, Any],
        repo_info: RepoInfo | None,
    ) -> GeneratedPlan | dict[str, Any]:
        ...


class FixturePlanGenerator:
    """Deterministic two-node plan (analyze -> review) for offline runs and tests."""

    def generate(
        self,
        request: str,
        context: dict[str, Any],
        repo_info: RepoInfo | None,
    ) -> GeneratedPlan:
        return GeneratedPlan(
            summary="Fixture plan for offline execution",
            subtasks=[
                GeneratedSubTask(
                    id="1",
                    type="analyze",
                    description="Analyze context and risks",
                    agent=ROLE_ADVISOR,
                    dependencies=[],
                    priority="high",
                    estimated_complexity=3,
                ),
                GeneratedSubTask(
                    id="2",
                    type="review",
                    description="Review changes before executing",
                    agent=ROLE_REVIEWER,
                    dependencies=["1"],
                    priority="medium",
                    estimated_complexity=3,
                ),
            ],
            estimated_time="15 minutes",
            risk_level="medium",
            requires_approval=False,
        )


class LLMPlanGenerator:
    """Plan generator backed by an OpenAI chat model in JSON mode."""

    def __init__(
        self,
        *,
        model_name: str = "gpt-4o",
        temperature: float = 0.3,
        repo_root: Path | None = None,
    ) -> None:
        self.model_name = model_name
        self.temperature = temperature
        self.repo_root = repo_root

    def generate(
        self,
        request: str,
        context: dict[str, Any],
        repo_info: RepoInfo | None,
    ) -> GeneratedPlan:
        try:
            planner = get_structured_planner(
                model_name=self.model_name,
                schema=GeneratedPlan,
                temperature=self.temperature,
                repo_root=self.repo_root,
            )
            return planner.invoke(
                system_prompt=PLANNER_SYSTEM_PROMPT,
                user_prompt=build_user_prompt(request, context, repo_info),
            )
        except RuntimeError as exc:
            raise PlanParseError(f"Plan generator failed or returned unusable output: {exc}") from exc


def build_user_prompt(request: str, context: dict[str, Any], repo_info: RepoInfo | None) -> str:
    sections = [f"USER REQUEST:\n{request}"]
    if context:
        sections.append("ADDITIONAL CONTEXT:\n" + json.dumps(context, indent=2, sort_keys=True, default=str))
    if repo_info is not None:
        languages = ", ".join(repo_info.languages) or "unknown"
        sections.append(f"REPOSITORY INFO:\n- Files: {repo_info.files}\n- Languages: {languages}")
    sections.append("Create a detailed execution plan for this task.")
    return "\n\n".join(sections)


class TaskGraphBuilder:
    """Turns generator output into a validated, immutable Plan.

    Missing optional fields get defaults, the structural rules are applied on
    top of whatever the generator returned, and anything that still does not
    fit the Plan shape raises PlanParseError.
    """

    def __init__(self, generator: PlanGenerator) -> None:
        self.generator = generator

    def plan(
        self,
        request: str,
        context: dict[str, Any] | None = None,
        repo_info: RepoInfo | None = None,
    ) -> Plan:
        raw = self.generator.generate(request, dict(context or {}), repo_info)
        generated = _coerce_generated(raw)

        risk_level = (generated.risk_level or RiskLevel.MEDIUM.value).strip().lower()
        tasks = [_normalize_subtask(item, index) for index, item in enumerate(generated.subtasks or [])]
        tasks = enforce_structural_rules(tasks, risk_level=risk_level)

        try:
            plan = Plan(
                id=f"plan-{uuid.uuid4().hex[:12]}",
                original_request=request,
                summary=generated.summary or "Generated plan",
                subtasks=tasks,
                estimated_time=generated.estimated_time or "unknown",
                risk_level=risk_level,
                requires_approval=bool(generated.requires_approval),
            )
        except ValidationError as exc:
            raise PlanParseError(f"Plan generator output does not form a valid plan: {exc}") from exc

        logger.info(
            "Built plan %s with %d subtasks (risk=%s, requires_approval=%s)",
            plan.id,
            len(plan.subtasks),
            plan.risk_level.value,
            plan.requires_approval,
        )
        return plan


def _coerce_generated(raw: Any) -> GeneratedPlan:
    if isinstance(raw, GeneratedPlan):
        return raw
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PlanParseError("Plan generator returned invalid JSON") from exc
    if not isinstance(raw, dict):
        raise PlanParseError(f"Plan generator returned unsupported payload type {type(raw).__name__}")
    try:
        return GeneratedPlan.model_validate(raw)
    except ValidationError as exc:
        raise PlanParseError(f"Plan generator output has the wrong shape: {exc}") from exc


def _normalize_subtask(item: GeneratedSubTask, index: int) -> dict[str, Any]:
    task_id = str(item.id).strip() if item.id is not None else ""
    complexity = item.estimated_complexity
    if not complexity:
        complexity = 5
    elif not math.isfinite(complexity):
        raise PlanParseError(f"Subtask {task_id or index + 1} has non-finite estimatedComplexity: {complexity}")
    return {
        "id": task_id or str(index + 1),
        "type": (item.type or SubTaskType.ANALYZE.value).strip().lower(),
        "description": item.description or "",
        "agent": (item.agent or ROLE_ADVISOR).strip().lower(),
        "dependencies": [str(dep) for dep in item.dependencies or []],
        "priority": (item.priority or Priority.MEDIUM.value).strip().lower(),
        "estimated_complexity": min(10, max(1, int(round(complexity)))),
    }


def enforce_structural_rules(tasks: list[dict[str, Any]], *, risk_level: str) -> list[dict[str, Any]]:
    """Add the analysis, security, test and review steps a changing plan must have.

    Only plans containing a refactor or deploy subtask are touched. New edges
    are never added when they would close a dependency cycle.
    """
    if not any(task["type"] in _MODIFYING_TYPES for task in tasks):
        return tasks

    graph = _TaskGraph(tasks)
    elevated = risk_level in _ELEVATED_RISK

    analyze_id = graph.first_of_type(SubTaskType.ANALYZE.value)
    if analyze_id is None:
        analyze_id = graph.insert(
            "analyze",
            type=SubTaskType.ANALYZE.value,
            description="Analyze affected code before modification",
            agent=ROLE_ADVISOR,
            priority=Priority.HIGH.value,
            at=0,
        )
    for task in graph.of_types(_MODIFYING_TYPES):
        if not graph.has_ancestor_of_type(task["id"], SubTaskType.ANALYZE.value):
            graph.link(task["id"], analyze_id)

    security_id = graph.first_of_type(SubTaskType.SECURITY.value)
    if security_id is None:
        security_id = graph.insert(
            "security",
            type=SubTaskType.SECURITY.value,
            description="Scan for vulnerabilities introduced or exposed by the change",
            agent=ROLE_ADVISOR,
            priority=Priority.HIGH.value,
            dependencies=[analyze_id],
            at=graph.index_of(analyze_id) + 1,
        )

    for task in graph.of_types({SubTaskType.REFACTOR.value}):
        risky = elevated or task["estimated_complexity"] >= _RISKY_COMPLEXITY
        if risky and not graph.has_ancestor_of_type(task["id"], SubTaskType.TEST.value):
            test_id = graph.insert(
                f"test-{task['id']}",
                type=SubTaskType.TEST.value,
                description=f"Generate tests covering the code touched by subtask {task['id']}",
                agent=ROLE_OPERATOR,
                priority=Priority.HIGH.value,
                dependencies=[analyze_id],
                at=graph.index_of(task["id"]),
            )
            graph.link(task["id"], test_id)

    refactor_ids = [task["id"] for task in graph.of_types({SubTaskType.REFACTOR.value})]
    needs_review = elevated and any(
        not graph.has_descendant_of_type(task_id, SubTaskType.REVIEW.value) for task_id in refactor_ids
    )
    deploys = graph.of_types({SubTaskType.DEPLOY.value})
    review_id = graph.first_of_type(SubTaskType.REVIEW.value)
    if needs_review or (deploys and review_id is None):
        last_change = max((graph.index_of(task_id) for task_id in refactor_ids), default=graph.index_of(analyze_id))
        review_id = graph.insert(
            "review",
            type=SubTaskType.REVIEW.value,
            description="Review all changes before they take effect",
            agent=ROLE_REVIEWER,
            priority=Priority.HIGH.value,
            dependencies=refactor_ids or [analyze_id],
            at=last_change + 1,
        )

    for task in deploys:
        if review_id is not None and not graph.has_ancestor_of_type(task["id"], SubTaskType.REVIEW.value):
            graph.link(task["id"], review_id)
        graph.link(task["id"], security_id)

    return graph.tasks


class _TaskGraph:
    """Mutable working view over normalized subtask dicts."""

    def __init__(self, tasks: list[dict[str, Any]]) -> None:
        self.tasks = [dict(task, dependencies=list(task["dependencies"])) for task in tasks]

    def _by_id(self) -> dict[str, dict[str, Any]]:
        return {task["id"]: task for task in self.tasks}

    def index_of(self, task_id: str) -> int:
        for index, task in enumerate(self.tasks):
            if task["id"] == task_id:
                return index
        raise KeyError(task_id)

    def first_of_type(self, task_type: str) -> str | None:
        for task in self.tasks:
            if task["type"] == task_type:
                return task["id"]
        return None

    def of_types(self, task_types: set[str] | frozenset[str]) -> list[dict[str, Any]]:
        return [task for task in self.tasks if task["type"] in task_types]

    def ancestors(self, task_id: str) -> set[str]:
        by_id = self._by_id()
        seen: set[str] = set()
        stack = list(by_id[task_id]["dependencies"]) if task_id in by_id else []
        while stack:
            current = stack.pop()
            if current in seen or current not in by_id:
                continue
            seen.add(current)
            stack.extend(by_id[current]["dependencies"])
        return seen

    def has_ancestor_of_type(self, task_id: str, task_type: str) -> bool:
        by_id = self._by_id()
        return any(by_id[ancestor]["type"] == task_type for ancestor in self.ancestors(task_id))

    def has_descendant_of_type(self, task_id: str, task_type: str) -> bool:
        return any(
            task["type"] == task_type and task_id in self.ancestors(task["id"]) for task in self.tasks
        )

    def link(self, task_id: str, dependency_id: str) -> None:
        """Make ``task_id`` depend on ``dependency_id`` unless that would close a cycle."""
        if task_id == dependency_id or task_id in self.ancestors(dependency_id):
            logger.debug("Skipping edge %s -> %s: would create a cycle", task_id, dependency_id)
            return
        task = self._by_id()[task_id]
        if dependency_id not in task["dependencies"]:
            task["dependencies"].append(dependency_id)

    def insert(
        self,
        base_id: str,
        *,
        type: str,
        description: str,
        agent: str,
        priority: str,
        at: int,
        dependencies: list[str] | None = None,
    ) -> str:
        existing = {task["id"] for task in self.tasks}
        task_id = base_id
        suffix = 2
        while task_id in existing:
            task_id = f"{base_id}-{suffix}"
            suffix += 1
        self.tasks.insert(
            at,
            {
                "id": task_id,
                "type": type,
                "description": description,
                "agent": agent,
                "dependencies": list(dependencies or []),
                "priority": priority,
                "estimated_complexity": 3,
            },
        )
        logger.info("Structural rule added %s subtask %s", type, task_id)
        return task_id
