"""Run state for step orchestration.

Tracks per-step status (pending, running, passed, failed, skipped) and
per-node outcome, and renders the end-of-run status table.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class StepRecord:
    """Execution record for one step.

    Attributes:
        name: Step name
        kind: Step kind value (node, global, wait-online, delay)
        status: pending, running, passed, failed or skipped
        nodes: Names of the nodes the step applied to
        started_at: Timestamp when the step started
        completed_at: Timestamp when the step completed
        message: Failure or skip reason
    """
    name: str
    kind: str
    status: str = 'pending'
    nodes: list[str] = field(default_factory=list)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    message: Optional[str] = None

    def start(self) -> None:
        self.status = 'running'
        self.started_at = time.time()

    def passed(self) -> None:
        self.status = 'passed'
        self.completed_at = time.time()

    def fail(self, message: str) -> None:
        self.status = 'failed'
        self.completed_at = time.time()
        self.message = message

    def skip(self, message: str) -> None:
        self.status = 'skipped'
        self.message = message

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'kind': self.kind,
            'status': self.status,
            'nodes': list(self.nodes),
        }
        if self.duration is not None:
            d['duration'] = round(self.duration, 2)
        if self.message is not None:
            d['message'] = self.message
        return d


@dataclass
class NodeOutcome:
    """Terminal state of one node after a run.

    Attributes:
        name: Node name
        ready: True if the node was reachable
        faulted: True if the node was faulted
        message: Fault message
        status: Last status text
        steps_completed: Names of the steps the node completed
    """
    name: str
    ready: bool = False
    faulted: bool = False
    message: Optional[str] = None
    status: str = ''
    steps_completed: list[str] = field(default_factory=list)

    @property
    def state(self) -> str:
        if self.faulted:
            return 'failed'
        return 'completed' if self.ready else 'pending'

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'state': self.state,
            'ready': self.ready,
            'faulted': self.faulted,
            'status': self.status,
            'steps_completed': list(self.steps_completed),
        }
        if self.message is not None:
            d['message'] = self.message
        return d


class RunResult:
    """Outcome of a SetupController run.

    success is True iff no node ended faulted and no global step failed.
    """

    def __init__(self, name: str, node_names: list[str]):
        self.name = name
        self.nodes: dict[str, NodeOutcome] = {n: NodeOutcome(name=n) for n in node_names}
        self.steps: list[StepRecord] = []
        self.global_error: Optional[str] = None
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        self.completed_at = time.time()

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    @property
    def aborted(self) -> bool:
        return self.global_error is not None

    @property
    def faulted_nodes(self) -> list[NodeOutcome]:
        return [n for n in self.nodes.values() if n.faulted]

    @property
    def success(self) -> bool:
        return not self.aborted and not self.faulted_nodes

    def get_step(self, name: str) -> StepRecord:
        """Get the record of the first step with this name.

        Raises:
            KeyError: If no such step ran
        """
        for record in self.steps:
            if record.name == name:
                return record
        raise KeyError(name)

    def format_table(self) -> str:
        """Render the per-node status table."""
        width = max([len('NODE')] + [len(n) for n in self.nodes])
        lines = [f"{'NODE':<{width}}  STATUS"]
        lines.append(f"{'-' * width}  {'-' * 6}")
        for outcome in self.nodes.values():
            if outcome.faulted:
                status = f'{outcome.status}: {outcome.message}'
            else:
                status = outcome.status or outcome.state
            lines.append(f"{outcome.name:<{width}}  {status}")
        return '\n'.join(lines)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'success': self.success,
            'steps': [s.to_dict() for s in self.steps],
            'nodes': {name: n.to_dict() for name, n in self.nodes.items()},
        }
        if self.duration is not None:
            d['duration'] = round(self.duration, 2)
        if self.global_error is not None:
            d['global_error'] = self.global_error
        return d
