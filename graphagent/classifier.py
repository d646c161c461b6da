import re
from dataclasses import dataclass
from typing import Optional, Protocol

WRITE_INTENT_RE = re.compile(
    r"\b(create|update|edge|append|workflow|integrate|summarize into node|link node|embed|ingest|synchronize)\b",
    re.IGNORECASE,
)
WORKFLOW_PREFIX = "execute workflow"

# Workflow that edits the graph directly instead of delegating.
DIRECT_EDIT_WORKFLOW = "integrate"

READ_ONLY_CONSTRAINT = (
    "Constraint: This is an analysis-only request. Stay strictly read-only: do not call "
    "delegate_to_worker and do not request new extractions. Work only with existing knowledge."
)


@dataclass(frozen=True)
class Classification:
    is_workflow: bool
    allow_writes: bool

    @property
    def analysis_only(self) -> bool:
        return not self.allow_writes


class TaskClassifier(Protocol):
    def classify(
        self,
        task: str,
        expected_outcome: Optional[str] = None,
        workflow_key: Optional[str] = None,
    ) -> Classification: ...


class HeuristicClassifier:
    """Keyword classifier: workflow invocations and write vocabulary unlock writes."""

    def classify(
        self,
        task: str,
        expected_outcome: Optional[str] = None,
        workflow_key: Optional[str] = None,
    ) -> Classification:
        is_workflow = bool(workflow_key) or task.strip().lower().startswith(WORKFLOW_PREFIX)
        text = f"{task}\n{expected_outcome or ''}"
        allow_writes = is_workflow or bool(WRITE_INTENT_RE.search(text))
        return Classification(is_workflow=is_workflow, allow_writes=allow_writes)


@dataclass(frozen=True)
class RunBudget:
    max_iterations: int
    max_delegations: int
    max_web_searches: int
    max_embedding_searches: int
    min_iterations_before_stop: int
    min_worker_summaries: int

    @classmethod
    def for_classification(cls, classification: Classification) -> "RunBudget":
        if classification.is_workflow:
            return cls(
                max_iterations=20,
                max_delegations=12,
                max_web_searches=6,
                max_embedding_searches=5,
                min_iterations_before_stop=2,
                min_worker_summaries=2,
            )
        return cls(
            max_iterations=5,
            max_delegations=2 if classification.allow_writes else 0,
            max_web_searches=4,
            max_embedding_searches=3,
            min_iterations_before_stop=2 if classification.allow_writes else 1,
            min_worker_summaries=2 if classification.allow_writes else 0,
        )
