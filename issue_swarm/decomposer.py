"""
Task decomposition for Issue Swarm.

This module handles:
- Director analysis: issue -> EM tasks (fatal on unusable output)
- EM breakdown: EM task -> worker tasks (falls back to one catch-all worker)
- Prompt construction for analysis, breakdown and worker execution
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from issue_swarm.errors import AnalysisError, TaskFallback
from issue_swarm.utils.json_extract import extract_json

if TYPE_CHECKING:
    from issue_swarm.executor import ClaudeTaskExecutor
    from issue_swarm.logger import SwarmLogger
    from issue_swarm.models import EMState, IssueInfo, WorkerState

SETUP_FOCUS_AREA = "Project Setup"


@dataclass
class EMTask:
    task: str
    focus_area: str
    must_complete_first: bool = False
    estimated_workers: int = 1

    @property
    def is_setup(self) -> bool:
        return self.must_complete_first or self.focus_area.strip().lower() == SETUP_FOCUS_AREA.lower()


@dataclass
class WorkerTask:
    worker_id: int
    task: str
    files: list[str] = field(default_factory=list)


@dataclass
class IssueAnalysis:
    """
    Director output.

    setup_task is the single "must run first" EM; em_tasks holds the rest
    in order, capped at max_ems.
    """
    summary: str
    em_tasks: list[EMTask]
    setup_task: Optional[EMTask] = None

    @property
    def needs_setup(self) -> bool:
        return self.setup_task is not None


def build_analysis_prompt(issue: IssueInfo, max_ems: int, max_workers_per_em: int) -> str:
    return f"""You are the Director of an engineering team. Analyze this GitHub issue and split it
into at most {max_ems} independent areas of work, each owned by one Engineering Manager (EM).

## Issue #{issue.number}: {issue.title}

{issue.body or "(no description)"}

## Rules
- Areas must not overlap: no two EMs may change the same files.
- Each EM will split its area into at most {max_workers_per_em} workers.
- If the repository needs scaffolding before any other work can start (dependencies,
  project layout, configuration), add ONE extra EM with focus_area "{SETUP_FOCUS_AREA}" and
  must_complete_first true. It does not count toward the {max_ems} limit.
- Do not modify any files. Only analyze.

## Output
Respond with ONLY a JSON object:
```json
{{
  "summary": "one paragraph describing the overall approach",
  "needs_setup": false,
  "ems": [
    {{
      "em_id": 1,
      "task": "what this EM must deliver",
      "focus_area": "short area name",
      "estimated_workers": 2,
      "must_complete_first": false
    }}
  ]
}}
```"""


def build_breakdown_prompt(em: EMState, issue: IssueInfo, max_workers: int) -> str:
    return f"""You are an Engineering Manager responsible for "{em.focus_area}" on issue
#{issue.number}: {issue.title}

## Your task
{em.task}

## Issue description
{issue.body or "(no description)"}

Split your task into at most {max_workers} workers. Each worker owns a disjoint set of files;
no file may appear in two workers. Do not modify any files. Only plan.

Respond with ONLY a JSON array:
```json
[
  {{"worker_id": 1, "task": "precise instructions for this worker", "files": ["path/to/file"]}}
]
```"""


def build_worker_prompt(worker: WorkerState, em: EMState, issue: IssueInfo) -> str:
    files = "\n".join(f"- {f}" for f in worker.files) or "- (choose the files your task requires)"
    return f"""You are a software engineer implementing part of GitHub issue #{issue.number}:
{issue.title}

## Area: {em.focus_area}
{em.task}

## Your task
{worker.task}

## Files you own
{files}

Implement the task completely in the working tree. Only change the files you own unless the
task cannot be done otherwise. Do not commit, push or create branches; that is handled for you.
Do not edit .orchestrator/state.json."""


class TaskDecomposer:
    """
    Director and EM planning through the AI task executor.
    """

    def __init__(
        self,
        executor: ClaudeTaskExecutor,
        logger: Optional[SwarmLogger] = None,
    ) -> None:
        self._executor = executor
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "decomposer"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    # Director

    def analyze_issue(self, issue: IssueInfo, max_ems: int, max_workers_per_em: int) -> IssueAnalysis:
        """
        Split an issue into EM tasks.

        Raises:
            AnalysisError: If the executor fails or returns no usable EM task.
        """
        result = self._executor.execute_task(
            build_analysis_prompt(issue, max_ems, max_workers_per_em)
        )
        if not result.success:
            raise AnalysisError(f"Issue analysis failed: {result.error}")

        data = extract_json(result.output)
        if isinstance(data, list):
            data = {"ems": data}
        if not isinstance(data, dict):
            raise AnalysisError(
                "Issue analysis returned no JSON object",
                context=result.output[:500],
            )

        tasks = [t for t in (self._parse_em_task(raw) for raw in data.get("ems") or []) if t]
        if not tasks:
            raise AnalysisError("Issue analysis returned no EM tasks", context=result.output[:500])

        setup_task = next((t for t in tasks if t.is_setup), None)
        em_tasks = [t for t in tasks if t is not setup_task]
        extra_setup = [t.task for t in em_tasks if t.is_setup]
        if extra_setup:
            # Only one setup EM runs first; the rest run as ordinary EMs
            self._log("extra_setup_tasks_demoted", {"tasks": extra_setup}, level="warn")
        if len(em_tasks) > max_ems:
            self._log("em_tasks_truncated", {"returned": len(em_tasks), "max_ems": max_ems}, level="warn")
            em_tasks = em_tasks[:max_ems]

        analysis = IssueAnalysis(
            summary=str(data.get("summary") or ""),
            em_tasks=em_tasks,
            setup_task=setup_task,
        )
        self._log("issue_analyzed", {
            "em_count": len(em_tasks),
            "needs_setup": analysis.needs_setup,
        })
        return analysis

    @staticmethod
    def _parse_em_task(raw: Any) -> Optional[EMTask]:
        if not isinstance(raw, dict):
            return None
        task = raw.get("task")
        if not isinstance(task, str) or not task.strip():
            return None
        estimated = raw.get("estimated_workers", 1)
        return EMTask(
            task=task.strip(),
            focus_area=str(raw.get("focus_area") or "General").strip(),
            must_complete_first=bool(raw.get("must_complete_first", False)),
            estimated_workers=estimated if isinstance(estimated, int) else 1,
        )

    # EM

    def breakdown_em(self, em: EMState, issue: IssueInfo, max_workers: int) -> list[WorkerTask]:
        """
        Split an EM task into worker tasks.

        Never raises for AI trouble: any failure yields a single worker
        carrying the EM's whole task. Worker ids are renumbered 1..n.
        """
        try:
            result = self._executor.execute_task(build_breakdown_prompt(em, issue, max_workers))
            if not result.success:
                raise TaskFallback(f"EM breakdown failed: {result.error}")
            tasks = self._parse_worker_tasks(result.output)
        except TaskFallback as e:
            self._log("task_fallback", {"em_id": em.id, "reason": e.message}, level="warn")
            return [WorkerTask(worker_id=1, task=em.task, files=[])]

        if len(tasks) > max_workers:
            self._log("worker_tasks_truncated", {
                "em_id": em.id,
                "returned": len(tasks),
                "max_workers": max_workers,
            }, level="warn")
            tasks = tasks[:max_workers]

        for index, task in enumerate(tasks, start=1):
            task.worker_id = index
        self._log("em_broken_down", {"em_id": em.id, "worker_count": len(tasks)})
        return tasks

    @staticmethod
    def _parse_worker_tasks(output: str) -> list[WorkerTask]:
        data = extract_json(output, expect=list)
        if data is None:
            wrapped = extract_json(output, expect=dict)
            data = wrapped.get("workers") if wrapped else None
        if not isinstance(data, list):
            raise TaskFallback("EM breakdown returned no JSON array")

        tasks = []
        for raw in data:
            if not isinstance(raw, dict):
                continue
            task = raw.get("task")
            if not isinstance(task, str) or not task.strip():
                continue
            files = raw.get("files") or []
            tasks.append(WorkerTask(
                worker_id=0,
                task=task.strip(),
                files=[str(f) for f in files] if isinstance(files, list) else [],
            ))
        if not tasks:
            raise TaskFallback("EM breakdown returned no worker tasks")
        return tasks
