# errors.py - Error kinds raised by the workflow engine and issue service
# Codes follow the ISS-{DOMAIN}-{NUMBER} pattern
from typing import Optional


# ============================================================
# ERROR CODE CATALOGUE
# Domains: DATE, DEP, WF, NF
# ============================================================

ERROR_CATALOGUE = {
    # Deadlines and scheduling
    "ISS-DATE-001": "Phase deadline exceeds issue deadline",
    "ISS-DATE-002": "Task start date must not be after due date",
    "ISS-DATE-003": "Task due date exceeds deadline",
    "ISS-DATE-004": "Task start date precedes dependency completion",

    # Dependencies
    "ISS-DEP-001": "Task cannot depend on itself",
    "ISS-DEP-002": "Change would push a dependency past a dependent task's start date",

    # Workflow
    "ISS-WF-001": "Issue has incomplete phases",
    "ISS-WF-002": "Issue is missing required phases",
    "ISS-WF-003": "Phase has open tasks",
    "ISS-WF-004": "Completion comment is required",
    "ISS-WF-005": "Phase is already done",

    # Lookups
    "ISS-NF-001": "Issue not found",
    "ISS-NF-002": "Phase not found",
    "ISS-NF-003": "Task not found",
    "ISS-NF-004": "Dependency target not found",
    "ISS-NF-005": "Comment not found",
}


class IssueflowError(Exception):
    """Base class for errors surfaced to the caller of the issue service"""

    def __init__(self, code: str, detail: Optional[str] = None):
        self.code = code
        self.message = ERROR_CATALOGUE.get(code, "Unknown error")
        self.detail = detail
        super().__init__(f"[{code}] {self.message}" + (f": {detail}" if detail else ""))

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "detail": self.detail}


class ValidationError(IssueflowError):
    """A caller-supplied value or transition would violate an invariant"""


class NotFoundError(IssueflowError):
    """A referenced identifier does not exist in the reachable graph"""
