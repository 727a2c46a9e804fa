"""Plan execution engine: load, lint, and run step plans against an Ops binding."""

from __future__ import annotations

from .assertions import AssertionOutcome, evaluate_assertion_spec
from .lint import LintIssue, lint_errors, lint_plan
from .loader import LoadedPlan, load_plan
from .ops import PlanOps
from .orchestrator import PlanRun, doctor_report, execute_plan, raise_on_lint_errors
from .steps import SUPPORTED_STEP_IDS, StepKind, parse_step_kind
from .templates import read_path_value, resolve_template_in_value

__all__ = [
    "SUPPORTED_STEP_IDS",
    "AssertionOutcome",
    "LintIssue",
    "LoadedPlan",
    "PlanOps",
    "PlanRun",
    "StepKind",
    "doctor_report",
    "evaluate_assertion_spec",
    "execute_plan",
    "lint_errors",
    "lint_plan",
    "load_plan",
    "parse_step_kind",
    "raise_on_lint_errors",
    "read_path_value",
    "resolve_template_in_value",
]
