# guideflow/validator/errors.py
"""Validation issue collection and formatting."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# Issue message template: [FAIL] CODE: flow/location problem -> Fix: action
ISSUE_TEMPLATE = "[{status}] {code}: {flow_id}/{location} {problem}\n  Fix: {fix_action}"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Issues at these severities block execution.
BLOCKING_SEVERITIES = frozenset({Severity.HIGH, Severity.CRITICAL})

_SEVERITY_ORDER = {Severity.CRITICAL: 0, Severity.HIGH: 1, Severity.MEDIUM: 2, Severity.LOW: 3}


class ValidationIssue:
    """Structured validation finding.

    Attributes:
        code: Stable identifier, e.g. EDGE_INVALID_TO_NODE.
        location: Node, edge or policy the issue is attached to ("flow" for
            flow-level issues).
        problem: What is wrong.
        fix_action: How to fix it.
        severity: Impact on execution.
        flow_id: Flow (or subflow) the issue was found in.
    """

    def __init__(
        self,
        code: str,
        location: str,
        problem: str,
        fix_action: str,
        severity: Severity = Severity.MEDIUM,
        flow_id: str = "",
    ):
        self.code = code
        self.location = location
        self.problem = problem
        self.fix_action = fix_action
        self.severity = Severity(severity)
        self.flow_id = flow_id

    @property
    def blocking(self) -> bool:
        return self.severity in BLOCKING_SEVERITIES

    def format(self, status: str = "FAIL") -> str:
        return ISSUE_TEMPLATE.format(
            status=status,
            code=self.code,
            flow_id=self.flow_id,
            location=self.location,
            problem=self.problem,
            fix_action=self.fix_action,
        )

    def sort_key(self) -> Tuple[str, int, str, str]:
        """Sort key for deterministic ordering."""
        return (self.flow_id, _SEVERITY_ORDER[self.severity], self.location, self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "flow_id": self.flow_id,
            "location": self.location,
            "problem": self.problem,
            "fix_action": self.fix_action,
            "severity": self.severity.value,
        }

    def __repr__(self) -> str:
        return f"ValidationIssue({self.code!r}, {self.flow_id!r}/{self.location!r}, {self.severity.value})"


class ValidationResult:
    """Collects validation errors and warnings for one or more flows."""

    def __init__(self, flow_id: str = ""):
        self.flow_id = flow_id
        self.errors: List[ValidationIssue] = []
        self.warnings: List[ValidationIssue] = []

    def add_error(
        self,
        code: str,
        location: str,
        problem: str,
        fix_action: str,
        severity: Severity = Severity.HIGH,
        flow_id: Optional[str] = None,
    ) -> None:
        self.errors.append(
            ValidationIssue(code, location, problem, fix_action, severity, flow_id or self.flow_id)
        )

    def add_warning(
        self,
        code: str,
        location: str,
        problem: str,
        fix_action: str,
        severity: Severity = Severity.LOW,
        flow_id: Optional[str] = None,
    ) -> None:
        """Add a warning (design guideline violation, not an error)."""
        self.warnings.append(
            ValidationIssue(code, location, problem, fix_action, severity, flow_id or self.flow_id)
        )

    def extend(self, other: "ValidationResult") -> None:
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def has_warnings(self) -> bool:
        return len(self.warnings) > 0

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def can_execute(self) -> bool:
        """True when no issue of high or critical severity was found."""
        return not any(issue.blocking for issue in self.errors + self.warnings)

    def codes(self) -> List[str]:
        return [issue.code for issue in self.errors + self.warnings]

    def sorted_errors(self) -> List[ValidationIssue]:
        return sorted(self.errors, key=lambda e: e.sort_key())

    def sorted_warnings(self) -> List[ValidationIssue]:
        return sorted(self.warnings, key=lambda w: w.sort_key())

    def summary(self) -> Dict[str, int]:
        counts = {severity.value: 0 for severity in Severity}
        for issue in self.errors + self.warnings:
            counts[issue.severity.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flow_id": self.flow_id,
            "errors": [e.to_dict() for e in self.sorted_errors()],
            "warnings": [w.to_dict() for w in self.sorted_warnings()],
            "error_count": len(self.errors),
            "warning_count": len(self.warnings),
            "summary": self.summary(),
            "can_execute": self.can_execute,
            "status": "FAIL" if self.has_errors() else "PASS",
        }
