"""Step orchestration for cluster setup and maintenance.

A SetupController runs an ordered list of steps against a fixed set of
node handles: node steps fan out over a bounded thread pool with a
barrier between steps, global steps run once and abort the run when they
fail.

Package name uses 'setup_opr' (short for operator).
"""

from setup_opr.controller import SetupController
from setup_opr.state import NodeOutcome, RunResult, StepRecord
from setup_opr.steps import Step, StepKind

__all__ = [
    'NodeOutcome',
    'RunResult',
    'SetupController',
    'Step',
    'StepKind',
    'StepRecord',
]
