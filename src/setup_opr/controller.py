"""SetupController: runs registered steps against a set of nodes.

Steps run strictly in registration order. A node step runs its action
on every applicable node (predicate matches and not faulted) on a
thread pool bounded by the step's max_parallel, and the controller waits
for all of them before moving on. An exception from a node action or
from the step's predicate faults that node only; siblings keep running. A global step runs once;
if it raises, the run is aborted and no later step runs.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Iterable, Optional

from config import DEFAULT_MAX_PARALLEL, DEFAULT_ONLINE_INTERVAL, DEFAULT_ONLINE_TIMEOUT, ExecutionContext
from remote.errors import GlobalStepError
from remote.node import NodeHandle
from setup_opr.state import RunResult, StepRecord
from setup_opr.steps import GlobalAction, NodeAction, NodePredicate, Step, StepKind

logger = logging.getLogger(__name__)


class SetupController:
    """Orchestrates steps across a fixed set of node handles.

    Example:
        controller = SetupController('setup', cluster.nodes)
        controller.add_wait_until_online_step()
        controller.add_step('install docker', install_docker)
        controller.add_global_step('initialize vault', init_vault)
        ok = controller.run()
    """

    def __init__(
        self,
        name: str,
        nodes: Iterable[NodeHandle],
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        online_timeout: int = DEFAULT_ONLINE_TIMEOUT,
        online_interval: float = DEFAULT_ONLINE_INTERVAL,
    ):
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.name = name
        self.nodes = list(nodes)
        self.max_parallel = max_parallel
        self.online_timeout = online_timeout
        self.online_interval = online_interval
        self.result: Optional[RunResult] = None
        self._steps: list[Step] = []

    @classmethod
    def from_context(cls, name: str, nodes: Iterable[NodeHandle], context: ExecutionContext) -> 'SetupController':
        return cls(
            name,
            nodes,
            max_parallel=context.max_parallel,
            online_timeout=context.online_timeout,
            online_interval=context.online_interval,
        )

    @property
    def steps(self) -> tuple[Step, ...]:
        return tuple(self._steps)

    def _add(self, step: Step) -> Step:
        if self.result is not None:
            raise RuntimeError(f"[{self.name}] Steps can't be added after run()")
        self._steps.append(step)
        return step

    def add_step(
        self,
        name: str,
        action: NodeAction,
        predicate: Optional[NodePredicate] = None,
        max_parallel: Optional[int] = None,
        quiet: bool = False,
    ) -> Step:
        """Register a per-node step."""
        return self._add(Step(name, StepKind.NODE, action=action, predicate=predicate,
                              max_parallel=max_parallel, quiet=quiet))

    def add_global_step(self, name: str, action: GlobalAction, quiet: bool = False) -> Step:
        """Register a step that runs once, independent of any node."""
        return self._add(Step(name, StepKind.GLOBAL, action=action, quiet=quiet))

    def add_wait_until_online_step(
        self,
        name: str = 'connect',
        timeout: Optional[int] = None,
        predicate: Optional[NodePredicate] = None,
    ) -> Step:
        """Register the built-in step that waits for each node to accept a session.

        Nodes that don't come online within the timeout are faulted.
        """
        return self._add(Step(name, StepKind.WAIT_ONLINE, predicate=predicate, timeout=timeout))

    def add_delay_step(self, name: str, duration: float) -> Step:
        """Register a pause of duration seconds (e.g. to let the cluster stabilize)."""
        return self._add(Step(name, StepKind.DELAY, delay=duration))

    def run(self) -> bool:
        """Run all registered steps. Returns True if no node faulted and no global step failed."""
        result = RunResult(self.name, [n.name for n in self.nodes])
        self.result = result
        result.start()

        total = len(self._steps)
        logger.info(f"[{self.name}] Starting: {total} steps on {len(self.nodes)} node(s)")

        for index, step in enumerate(self._steps, 1):
            record = StepRecord(step.name, step.kind.value)
            result.steps.append(record)
            if result.aborted:
                record.skip('run aborted')
                continue

            log = logger.debug if step.quiet else logger.info
            log(f"[{self.name}] Step {index}/{total}: {step.name}")
            record.start()
            if step.is_node_step:
                self._run_node_step(step, record, result)
            else:
                self._run_global_step(step, record, result)
            log(f"[{self.name}] Step {step.name}: {record.status}")

        for node in self.nodes:
            outcome = result.nodes[node.name]
            outcome.ready = node.is_ready and not node.is_faulted
            outcome.faulted = node.is_faulted
            outcome.message = node.fault_message
            outcome.status = node.status
        result.finish()

        if result.success:
            logger.info(f"[{self.name}] Completed in {result.duration:.1f}s")
        else:
            logger.error(f"[{self.name}] Failed after {result.duration:.1f}s")
        for line in result.format_table().splitlines():
            logger.info(line)
        return result.success

    def _run_global_step(self, step: Step, record: StepRecord, result: RunResult) -> None:
        try:
            if step.kind is StepKind.DELAY:
                logger.info(f"[{self.name}] Waiting {step.delay}s: {step.name}")
                time.sleep(step.delay)
            else:
                step.action()  # type: ignore[misc]
        except Exception as e:
            error = GlobalStepError(step.name, e)
            logger.exception(f"[{self.name}] {error}")
            result.global_error = str(error)
            record.fail(str(error))
            return
        record.passed()

    def _run_node_step(self, step: Step, record: StepRecord, result: RunResult) -> None:
        applicable = []
        rejected = []
        for node in self.nodes:
            try:
                if step.applies_to(node):
                    applicable.append(node)
            except Exception as e:
                node.log.debug(f"[{node.name}] {step.name} predicate raised", exc_info=True)
                node.fault(f"{step.name}: {e}")
                rejected.append(node)
        record.nodes = [n.name for n in applicable + rejected]
        if not applicable and not rejected:
            record.skip('no applicable nodes')
            return

        if applicable:
            workers = min(step.max_parallel or self.max_parallel, len(applicable))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f'{self.name}-step') as pool:
                futures = {pool.submit(self._run_on_node, step, node): node for node in applicable}
                for future in as_completed(futures):
                    node = futures[future]
                    if future.result():
                        result.nodes[node.name].steps_completed.append(step.name)

        faulted = [n.name for n in applicable + rejected if n.is_faulted]
        if faulted:
            record.fail(f"{len(faulted)} node(s) faulted: {', '.join(faulted)}")
        else:
            record.passed()

    def _run_on_node(self, step: Step, node: NodeHandle) -> bool:
        """Run one step against one node. Never raises; returns False if the node faulted."""
        try:
            if step.kind is StepKind.WAIT_ONLINE:
                node.wait_for_boot(
                    timeout=step.timeout or self.online_timeout,
                    interval=self.online_interval,
                )
            else:
                step.action(node)  # type: ignore[misc]
        except Exception as e:
            node.log.debug(f"[{node.name}] {step.name} raised", exc_info=True)
            node.fault(f"{step.name}: {e}")
        return not node.is_faulted
