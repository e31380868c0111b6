"""
Result and report types shared by the services, the workflow and the CLI.

Everything here is plain data. Services return these; nothing in this
module talks to a host.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import SecretStr


class StepStatus(str, Enum):
    """Outcome of a workflow step."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    WARNING = "warning"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class CommandResult:
    """Result of a local command execution."""
    success: bool
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int = 0


@dataclass
class RemoteResult:
    """Result of a PowerShell script run on a node."""
    host: str
    success: bool
    output: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def text(self) -> str:
        return "\n".join(self.output).strip()


@dataclass
class NodeInfo:
    """An Azure VM acting as a nested Hyper-V / cluster node."""
    name: str
    public_ip: str
    private_ip: str


@dataclass
class TerraformOutputs:
    """Values read back from `terraform output -json`."""
    resource_group: str
    nodes: List[NodeInfo]
    witness_storage_account: Optional[str] = None
    witness_storage_key: Optional[SecretStr] = None


@dataclass
class StepResult:
    """
    Outcome of one workflow step.

    WARNING is the non-fatal failure class: the workflow asks the operator
    before continuing. FAILED stops the run.
    """
    name: str
    status: StepStatus
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
        }


@dataclass
class WorkflowReport:
    """Ordered record of every step the workflow ran."""
    steps: List[StepResult] = field(default_factory=list)
    # Step the run halted on (failure or operator refusal); None when it ran to the end
    stopped_at: Optional[str] = None
    # Status entries (create_status_dict payloads) in the order they were emitted
    events: List[Dict[str, Any]] = field(default_factory=list)

    def add(self, result: StepResult) -> None:
        self.steps.append(result)

    @property
    def succeeded(self) -> bool:
        return all(s.status != StepStatus.FAILED for s in self.steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "stopped_at": self.stopped_at,
            "steps": [s.to_dict() for s in self.steps],
            "events": self.events,
        }


# Ordered least to most severe
CHECK_SEVERITY = {"ok": 0, "warn": 1, "fail": 2}


@dataclass
class DiagnosticCheck:
    host: str
    name: str
    status: str  # "ok", "warn", "fail"
    detail: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"host": self.host, "name": self.name, "status": self.status, "detail": self.detail}


@dataclass
class DiagnosticReport:
    checks: List[DiagnosticCheck] = field(default_factory=list)

    def add(self, host: str, name: str, status: str, detail: str = "") -> DiagnosticCheck:
        if status not in CHECK_SEVERITY:
            raise ValueError(f"Unknown check status: {status}")
        check = DiagnosticCheck(host=host, name=name, status=status, detail=detail)
        self.checks.append(check)
        return check

    def extend(self, other: "DiagnosticReport") -> None:
        self.checks.extend(other.checks)

    def summary(self) -> Dict[str, int]:
        counts = {status: 0 for status in CHECK_SEVERITY}
        for check in self.checks:
            counts[check.status] += 1
        return counts

    @property
    def worst_status(self) -> str:
        if not self.checks:
            return "ok"
        return max((c.status for c in self.checks), key=CHECK_SEVERITY.__getitem__)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary(),
            "worst_status": self.worst_status,
            "checks": [c.to_dict() for c in self.checks],
        }
