"""
Workflow scoping.

Every read and write against the graph store and the vector index is
parameterized by a `WorkflowScope`. The scope is a required argument of
each data-access method, so a call that forgets the tenant cannot be
written, and the scope itself refuses to be constructed from a blank id.

Rows coming back from either store are checked with `ensure_same_workflow`;
a mismatch is an invariant violation, not a recoverable error.
"""

import re
from dataclasses import dataclass

WORKFLOW_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:\-]{0,127}$")


class WorkflowIsolationViolation(RuntimeError):
    """Raised when data tagged with one workflow surfaces in another."""


@dataclass(frozen=True, slots=True)
class WorkflowScope:
    """Tenant handle carried on every graph and vector call."""

    workflow_id: str

    def __post_init__(self) -> None:
        if not isinstance(self.workflow_id, str):
            raise TypeError("workflow_id must be a string")
        if not WORKFLOW_ID_PATTERN.match(self.workflow_id):
            raise ValueError(f"Invalid workflow id: {self.workflow_id!r}")

    def __str__(self) -> str:
        return self.workflow_id

    def ensure_same_workflow(self, workflow_id: str | None, *, what: str = "row") -> None:
        """Fail hard if a store handed back data belonging to another workflow."""
        if workflow_id != self.workflow_id:
            raise WorkflowIsolationViolation(
                f"{what} tagged with workflow {workflow_id!r} surfaced in "
                f"workflow {self.workflow_id!r}"
            )
