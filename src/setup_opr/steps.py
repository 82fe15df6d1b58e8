"""Step definitions.

A step is one of four kinds, all consumed by the same controller loop:
a per-node action with an optional predicate, a global action, the
built-in wait-until-online check, or a fixed delay.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from remote.node import NodeHandle

NodeAction = Callable[[NodeHandle], None]
GlobalAction = Callable[[], None]
NodePredicate = Callable[[NodeHandle], bool]


class StepKind(Enum):
    NODE = 'node'
    GLOBAL = 'global'
    WAIT_ONLINE = 'wait-online'
    DELAY = 'delay'


@dataclass(frozen=True)
class Step:
    """An immutable, registered step.

    Attributes:
        name: Name used in logs and reports
        kind: Which variant this step is
        action: NodeAction for NODE steps, GlobalAction for GLOBAL steps
        predicate: Filters the nodes a NODE or WAIT_ONLINE step applies to
        max_parallel: Concurrency bound for this step (None = run default)
        delay: Seconds to pause (DELAY steps)
        timeout: Seconds to wait for nodes (WAIT_ONLINE steps, None = run default)
        quiet: Log the step at debug level
    """
    name: str
    kind: StepKind
    action: Optional[Callable] = None
    predicate: Optional[NodePredicate] = None
    max_parallel: Optional[int] = None
    delay: float = 0
    timeout: Optional[int] = None
    quiet: bool = False

    def __post_init__(self):
        if self.kind in (StepKind.NODE, StepKind.GLOBAL) and self.action is None:
            raise ValueError(f"Step '{self.name}' requires an action")
        if self.max_parallel is not None and self.max_parallel < 1:
            raise ValueError(f"Step '{self.name}': max_parallel must be at least 1")
        if self.delay < 0:
            raise ValueError(f"Step '{self.name}': delay can't be negative")

    @property
    def is_node_step(self) -> bool:
        return self.kind in (StepKind.NODE, StepKind.WAIT_ONLINE)

    def applies_to(self, node: NodeHandle) -> bool:
        """True if the node isn't faulted and matches the predicate."""
        if node.is_faulted:
            return False
        return self.predicate is None or bool(self.predicate(node))
