"""
Firewall Rules - conditional creation on lab nodes

Rules are identified by their Name (not DisplayName) so re-running a
deploy finds the rules it created earlier and leaves them alone.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union

from nestedlab.schemas.models import StepResult, StepStatus
from nestedlab.services.helpers.powershell_utils import ps_literal, ps_script
from nestedlab.shared.logging_utils import LogCategory, LogLevel, log_message


logger = logging.getLogger("nestedlab.firewall")

PROTOCOLS = ("TCP", "UDP", "ICMPv4")
DIRECTIONS = ("Inbound", "Outbound")
ACTIONS = ("Allow", "Block")
PROFILES = ("Any", "Domain", "Private", "Public")


@dataclass
class FirewallRule:
    name: str
    display_name: str
    port: Optional[Union[int, str]] = None
    protocol: str = "TCP"
    direction: str = "Inbound"
    action: str = "Allow"
    profile: str = "Any"

    def validate(self) -> "FirewallRule":
        if not self.name:
            raise ValueError("firewall rule needs a name")
        if self.protocol not in PROTOCOLS:
            raise ValueError(f"{self.name}: unsupported protocol '{self.protocol}'")
        if self.direction not in DIRECTIONS:
            raise ValueError(f"{self.name}: direction must be one of {DIRECTIONS}")
        if self.action not in ACTIONS:
            raise ValueError(f"{self.name}: action must be one of {ACTIONS}")
        if self.profile not in PROFILES:
            raise ValueError(f"{self.name}: profile must be one of {PROFILES}")
        if self.protocol == "ICMPv4":
            if self.port is not None:
                raise ValueError(f"{self.name}: ICMPv4 rules take no port")
            return self
        if self.port is None:
            raise ValueError(f"{self.name}: {self.protocol} rules need a port")
        for bound in str(self.port).split("-", 1):
            if not bound.strip().isdigit() or not 1 <= int(bound) <= 65535:
                raise ValueError(f"{self.name}: port '{self.port}' outside 1-65535")
        if "-" in str(self.port):
            low, high = (int(b) for b in str(self.port).split("-", 1))
            if low > high:
                raise ValueError(f"{self.name}: port range '{self.port}' is reversed")
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FirewallRule":
        return cls(
            name=data["name"],
            display_name=data.get("display_name", data.get("displayName", data["name"])),
            port=data.get("port"),
            protocol=data.get("protocol", "TCP"),
            direction=data.get("direction", "Inbound"),
            action=data.get("action", "Allow"),
            profile=data.get("profile", "Any"),
        ).validate()

    def create_command(self) -> str:
        parts = [
            "New-NetFirewallRule",
            f"-Name {ps_literal(self.name)}",
            f"-DisplayName {ps_literal(self.display_name)}",
            f"-Direction {self.direction}",
            f"-Action {self.action}",
            f"-Profile {self.profile}",
            f"-Protocol {self.protocol}",
        ]
        if self.protocol == "ICMPv4":
            parts.append("-IcmpType 8")
        else:
            parts.append(f"-LocalPort {ps_literal(str(self.port))}")
        return " ".join(parts) + " | Out-Null"


LAB_FIREWALL_RULES: List[FirewallRule] = [
    FirewallRule("NestedLab-WinRM-HTTP", "NestedLab WinRM HTTP", 5985),
    FirewallRule("NestedLab-WinRM-HTTPS", "NestedLab WinRM HTTPS", 5986),
    FirewallRule("NestedLab-SMB", "NestedLab SMB", 445),
    FirewallRule("NestedLab-Cluster-TCP", "NestedLab Cluster Service TCP", 3343),
    FirewallRule("NestedLab-Cluster-UDP", "NestedLab Cluster Service UDP", 3343, protocol="UDP"),
    FirewallRule("NestedLab-RPC-EPMAP", "NestedLab RPC Endpoint Mapper", 135),
    FirewallRule("NestedLab-RPC-Dynamic", "NestedLab WMI/RPC Dynamic Ports", "49152-65535"),
    FirewallRule("NestedLab-ICMPv4-Echo", "NestedLab ICMPv4 Echo", None, protocol="ICMPv4"),
]


def _ensure_script(rules: List[FirewallRule]) -> str:
    lines = ["$results = [ordered]@{}"]
    for rule in rules:
        name = ps_literal(rule.name)
        lines += [
            f"if (Get-NetFirewallRule -Name {name} -ErrorAction SilentlyContinue) {{",
            f"    $results[{name}] = 'exists'",
            "} else {",
            f"    {rule.create_command()}",
            f"    $results[{name}] = 'created'",
            "}",
        ]
    lines.append("[pscustomobject]$results")
    return ps_script(*lines)


class FirewallManager:
    """Create lab firewall rules on nodes when missing."""

    def __init__(self, client):
        self.client = client

    async def ensure_rules(self, host: str, rules: Optional[Iterable[FirewallRule]] = None) -> StepResult:
        rules = [r.validate() for r in (rules if rules is not None else LAB_FIREWALL_RULES)]
        if not rules:
            return StepResult(name=f"firewall:{host}", status=StepStatus.SKIPPED, message="No rules requested")

        logger.info(log_message(f"Ensuring {len(rules)} firewall rules on {host}", LogCategory.FIREWALL, LogLevel.RUNNING))
        states: Dict[str, str] = await self.client.run_json(host, _ensure_script(rules)) or {}

        for name, state in states.items():
            level = LogLevel.CREATED if state == "created" else LogLevel.EXISTS
            logger.info(log_message(f"{host}: {name}", LogCategory.FIREWALL, level))

        created = sorted(n for n, s in states.items() if s == "created")
        existing = sorted(n for n, s in states.items() if s == "exists")
        return StepResult(
            name=f"firewall:{host}",
            status=StepStatus.SUCCESS,
            message=f"{len(created)} created, {len(existing)} already present",
            details={"created": created, "exists": existing},
        )

    async def remove_rules(self, host: str, names: Iterable[str]) -> StepResult:
        names = list(names)
        lines = ["$removed = @()"]
        for name in names:
            literal = ps_literal(name)
            lines += [
                f"if (Get-NetFirewallRule -Name {literal} -ErrorAction SilentlyContinue) {{",
                f"    Remove-NetFirewallRule -Name {literal}",
                f"    $removed += {literal}",
                "}",
            ]
        lines.append("$removed")
        removed = await self.client.run_json(host, ps_script(*lines)) or []
        if isinstance(removed, str):
            removed = [removed]
        return StepResult(
            name=f"firewall-remove:{host}",
            status=StepStatus.SUCCESS if removed else StepStatus.SKIPPED,
            message=f"Removed {len(removed)} of {len(names)} rule(s)",
            details={"removed": list(removed)},
        )
