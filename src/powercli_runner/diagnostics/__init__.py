from .engine import DiagnosticsEngine
from .probes import DEFAULT_PROBES, Probe, ProbeContext, ProbeFindings, evaluate_execution_policy
from .report import DiagnosticIssue, DiagnosticReport, RepairOutcome, RepairReport, Severity

__all__ = [
    "DEFAULT_PROBES",
    "DiagnosticIssue",
    "DiagnosticReport",
    "DiagnosticsEngine",
    "Probe",
    "ProbeContext",
    "ProbeFindings",
    "RepairOutcome",
    "RepairReport",
    "Severity",
    "evaluate_execution_policy",
]
