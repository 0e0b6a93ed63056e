"""Execution status, run status and execution mode enums."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """
    Per-node execution lifecycle states.

    PENDING and RUNNING are transient; every other member is terminal.
    """

    PENDING = "pending"
    """Known to the run but not started."""

    RUNNING = "running"
    """Currently executing."""

    COMPLETED = "completed"
    """Block finished and produced an output."""

    FAILED = "failed"
    """Block raised, timed out, or failed schema validation."""

    CANCELLED = "cancelled"
    """Run was aborted (errorHandling=stop) before this node finished."""

    SKIPPED = "skipped"
    """Did not execute (no usable upstream data or branch not taken)."""

    def is_pending(self) -> bool:
        """Check if execution is pending."""
        return self == ExecutionStatus.PENDING

    def is_running(self) -> bool:
        """Check if execution is running."""
        return self == ExecutionStatus.RUNNING

    def is_completed(self) -> bool:
        """Check if execution completed."""
        return self == ExecutionStatus.COMPLETED

    def is_failed(self) -> bool:
        """Check if execution failed."""
        return self == ExecutionStatus.FAILED

    def is_cancelled(self) -> bool:
        """Check if execution was cancelled."""
        return self == ExecutionStatus.CANCELLED

    def is_skipped(self) -> bool:
        """Check if execution was skipped."""
        return self == ExecutionStatus.SKIPPED

    def is_terminal(self) -> bool:
        """Check if the node has settled (no further transitions)."""
        return self not in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)


class WorkflowStatus(str, Enum):
    """
    Terminal status of a whole workflow run.

    Separate from ExecutionStatus: a run can be PARTIAL, a node cannot.
    """

    COMPLETED = "completed"
    """Every node completed."""

    PARTIAL = "partial"
    """Some nodes completed, others failed or were skipped."""

    FAILED = "failed"
    """No usable output (validation failure, setup error, or nothing completed)."""

    CANCELLED = "cancelled"
    """Run was cancelled by the caller."""

    def is_completed(self) -> bool:
        """Check if the run completed."""
        return self == WorkflowStatus.COMPLETED

    def is_partial(self) -> bool:
        """Check if the run partially completed."""
        return self == WorkflowStatus.PARTIAL

    def is_failed(self) -> bool:
        """Check if the run failed."""
        return self == WorkflowStatus.FAILED


class ExecutionMode(str, Enum):
    """Controls whether blocks call live services or return mock data."""

    PRODUCTION = "production"
    DEMO = "demo"
    TEST = "test"

    def is_mock(self) -> bool:
        """Demo and test runs must be fully simulatable."""
        return self in (ExecutionMode.DEMO, ExecutionMode.TEST)
