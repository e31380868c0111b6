"""
Guest Provisioner - SSH into the AlmaLinux guests

Guests sit on the node's internal NAT switch; the controller reaches each
one at <node public IP>:<ssh_port_base + guest index>, forwarded by the
NetNat static mapping. Commands go through the local `ssh` binary with key
auth. Host keys are not pinned: lab guests are rebuilt with new keys.
"""

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional

from nestedlab.config import GuestSettings
from nestedlab.errors import CommandError, RetryExhaustedError
from nestedlab.schemas.models import CommandResult, DiagnosticReport, StepResult, StepStatus
from nestedlab.services.command_runner import LocalExecutor, get_local_executor
from nestedlab.services.helpers.retry import retry_async
from nestedlab.shared.logging_utils import LogCategory, LogLevel, log_message


logger = logging.getLogger("nestedlab.guest")

GUEST_TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "guest"
CLOUD_INIT_UNITS = ("cloud-init-local", "cloud-init", "cloud-config", "cloud-final")

_SECTION_RE = re.compile(r"^## (?P<name>[A-Z]+)\s*$")
_UNIT_RE = re.compile(r"^(?P<unit>\S+) enabled=(?P<enabled>\S+) active=(?P<active>\S+)$")
_FACT_RE = re.compile(r"^(?P<key>[a-z][a-z -]*)=(?P<value>.*)$")
_JOURNAL_ERROR_RE = re.compile(r"\b(error|traceback|failed)\b", re.IGNORECASE)


def load_guest_script(name: str) -> str:
    return (GUEST_TEMPLATE_DIR / name).read_text(encoding="utf-8")


def _split_sections(text: str) -> Dict[str, List[str]]:
    sections: Dict[str, List[str]] = {}
    current: Optional[str] = None
    for raw in text.splitlines():
        line = raw.rstrip()
        match = _SECTION_RE.match(line)
        if match:
            current = match.group("name")
            sections.setdefault(current, [])
        elif current and line:
            sections[current].append(line)
    return sections


def _facts(lines: List[str]) -> Dict[str, str]:
    facts = {}
    for line in lines:
        match = _FACT_RE.match(line)
        if match:
            facts[match.group("key")] = match.group("value")
    return facts


def parse_cloud_init_report(text: str, host: str) -> DiagnosticReport:
    """
    Turn diagnose-cloudinit.sh output into checks.

    - cloud-init status: disabled / not installed / not started is ok,
      "done" means it ran anyway (warn), running or error is a failure
    - disable markers: ok when at least one marker file exists
    - each unit: ok when not enabled and not active
    - generator: warns when installed and no disable marker exists
    - ds-identify: policy and check exit code, informational
    - datasource: warns when a NoCloud seed (user-data or meta-data) is on the CD-ROM
    - journal: warns on the most recent error line from the cloud-init units

    Sections missing from older script output add no checks.
    """
    report = DiagnosticReport()
    sections = _split_sections(text)
    if not sections:
        report.add(host, "cloud-init-report", "fail", "diagnostic script produced no sections")
        return report

    status_lines = [line for line in sections.get("STATUS", []) if not line.startswith("exit=")]
    status_text = " ".join(status_lines).lower()
    if any(word in status_text for word in ("disabled", "not installed", "not started", "not run")):
        report.add(host, "cloud-init-status", "ok", status_text)
    elif "done" in status_text:
        report.add(host, "cloud-init-status", "warn", f"cloud-init ran: {status_text}")
    else:
        report.add(host, "cloud-init-status", "fail", status_text or "no status output")

    found = [line[len("FOUND "):] for line in sections.get("MARKERS", []) if line.startswith("FOUND ")]
    missing = [line[len("NOT FOUND "):] for line in sections.get("MARKERS", []) if line.startswith("NOT FOUND ")]
    if found:
        report.add(host, "cloud-init-markers", "ok", "found: " + ", ".join(found))
    else:
        report.add(host, "cloud-init-markers", "warn", "none of " + ", ".join(missing) + " present")

    seen = set()
    for line in sections.get("UNITS", []):
        match = _UNIT_RE.match(line)
        if not match:
            continue
        unit = match.group("unit")
        seen.add(unit)
        enabled, active = match.group("enabled"), match.group("active")
        if active == "active":
            status = "fail"
        elif enabled in ("enabled", "enabled-runtime", "static"):
            status = "warn"
        else:
            status = "ok"
        report.add(host, f"unit:{unit}", status, f"enabled={enabled} active={active}")

    for unit in CLOUD_INIT_UNITS:
        if unit not in seen:
            report.add(host, f"unit:{unit}", "warn", "not reported")

    if "GENERATOR" in sections:
        generator = _facts(sections["GENERATOR"]).get("generator", "absent")
        if generator != "absent" and not found:
            report.add(host, "cloud-init-generator", "warn", f"{generator} will start cloud-init; no disable marker")
        else:
            report.add(host, "cloud-init-generator", "ok", generator)

    if "DSIDENTIFY" in sections:
        facts = _facts(sections["DSIDENTIFY"])
        detail = f"policy={facts.get('policy', 'absent')}"
        if "check exit" in facts:
            detail += f" check exit={facts['check exit']}"
        report.add(host, "ds-identify", "ok", detail)

    if "DATASOURCE" in sections:
        lines = sections["DATASOURCE"]
        seeds = [line.split()[1] for line in lines if line.startswith("seed ")]
        product = _facts(lines).get("product", "unknown")
        if seeds:
            report.add(host, "cloud-init-datasource", "warn", f"NoCloud seed on CD-ROM ({', '.join(seeds)}); product={product}")
        else:
            report.add(host, "cloud-init-datasource", "ok", f"no seed media; product={product}")

    if "JOURNAL" in sections:
        entries = [line for line in sections["JOURNAL"] if "-- No entries --" not in line]
        errors = [line for line in entries if _JOURNAL_ERROR_RE.search(line)]
        if errors:
            report.add(host, "cloud-init-journal", "warn", errors[-1])
        else:
            report.add(host, "cloud-init-journal", "ok", f"{len(entries)} recent line(s), no errors")
    return report


class GuestProvisioner:
    """Run post-install and diagnostics on guests over SSH."""

    def __init__(
        self,
        settings: GuestSettings,
        executor: Optional[LocalExecutor] = None,
        ssh_attempts: int = 45,
        ssh_delay: float = 20.0,
    ):
        self.settings = settings
        self.executor = executor or get_local_executor()
        self.ssh_attempts = ssh_attempts
        self.ssh_delay = ssh_delay

    def ssh_argv(self, host: str, port: int, *command: str) -> List[str]:
        return [
            "ssh",
            "-i", str(Path(self.settings.ssh_private_key_path).expanduser()),
            "-p", str(port),
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "ConnectTimeout=10",
            "-o", "LogLevel=ERROR",
            f"{self.settings.ssh_user}@{host}",
            *command,
        ]

    async def ssh(
        self,
        host: str,
        port: int,
        *command: str,
        stdin_data: Optional[str] = None,
        timeout: float = 120,
    ) -> CommandResult:
        return await self.executor.execute(
            self.ssh_argv(host, port, *command), timeout=timeout, stdin_data=stdin_data,
        )

    async def wait_for_ssh(self, host: str, port: int) -> bool:
        """Poll until `ssh ... true` succeeds (the kickstart install takes a while)."""

        async def probe() -> CommandResult:
            result = await self.ssh(host, port, "true", timeout=30)
            if not result.success:
                raise CommandError(result.stderr or f"ssh exit code {result.exit_code}", result)
            return result

        logger.info(log_message(f"Waiting for SSH on {host}:{port}", LogCategory.GUEST, LogLevel.WAITING))
        try:
            await retry_async(
                probe,
                attempts=self.ssh_attempts,
                delay=self.ssh_delay,
                retry_on=(CommandError,),
                description=f"SSH {host}:{port}",
            )
        except RetryExhaustedError:
            return False
        return True

    async def run_postinstall(self, host: str, port: int, guest: str = "") -> StepResult:
        label = guest or f"{host}:{port}"
        logger.info(log_message(f"Running post-install on {label}", LogCategory.GUEST, LogLevel.RUNNING))
        result = await self.ssh(
            host, port, "bash", "-s",
            stdin_data=load_guest_script("postinstall.sh"),
            timeout=3600,
        )
        if not result.success:
            tail = "\n".join((result.stderr or result.stdout).splitlines()[-5:])
            logger.error(log_message(f"Post-install failed on {label}", LogCategory.GUEST, LogLevel.ERROR))
            return StepResult(
                name=f"postinstall:{label}",
                status=StepStatus.FAILED,
                message=f"exit code {result.exit_code}: {tail}",
            )

        logger.info(log_message(f"Post-install finished on {label}", LogCategory.GUEST, LogLevel.SUCCESS))
        return StepResult(
            name=f"postinstall:{label}",
            status=StepStatus.SUCCESS,
            message="Post-install completed",
            details={"duration_ms": result.duration_ms},
        )

    async def diagnose_cloud_init(self, host: str, port: int, guest: str = "") -> DiagnosticReport:
        label = guest or f"{host}:{port}"
        result = await self.ssh(host, port, "bash", "-s", stdin_data=load_guest_script("diagnose-cloudinit.sh"))
        if not result.success and not result.stdout:
            report = DiagnosticReport()
            report.add(label, "ssh", "fail", result.stderr or f"exit code {result.exit_code}")
            return report
        return parse_cloud_init_report(result.stdout, label)
