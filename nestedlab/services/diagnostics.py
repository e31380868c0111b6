"""
Lab Diagnostics - read-only health checks

One inventory script per node (listeners, CredSSP, firewall rules, Hyper-V,
switch, NAT, ISO), then cluster-wide checks from the first node. Remote
failures become "fail" checks so a half-built lab still yields a full report.
"""

import logging
from typing import Any, Dict, List, Optional

from nestedlab.config import LabConfig
from nestedlab.errors import RemoteError
from nestedlab.schemas.models import DiagnosticReport, NodeInfo
from nestedlab.services.cluster import ClusterService
from nestedlab.services.firewall import LAB_FIREWALL_RULES
from nestedlab.services.helpers.powershell_utils import ps_literal, ps_script
from nestedlab.shared.logging_utils import LogCategory, LogLevel, log_message


logger = logging.getLogger("nestedlab.diagnostics")

STATUS_ICONS = {"ok": "✅", "warn": "⚠️", "fail": "❌"}


def _inventory_script(config: LabConfig, rule_names: List[str]) -> str:
    hv = config.hyperv
    return ps_script(
        "$listeners = @(Get-ChildItem WSMan:\\localhost\\Listener | ForEach-Object {",
        "    ($_.Keys | Where-Object { $_ -like 'Transport=*' }) -replace '^Transport=', ''",
        "})",
        "$credssp = (Get-Item WSMan:\\localhost\\Service\\Auth\\CredSSP).Value -eq 'true'",
        "$rules = [ordered]@{}",
        f"foreach ($name in {ps_literal(rule_names)}) {{",
        "    $rule = Get-NetFirewallRule -Name $name -ErrorAction SilentlyContinue",
        "    if ($rule) { $rules[$name] = ($rule.Enabled.ToString() -eq 'True') } else { $rules[$name] = $null }",
        "}",
        "$hyperv = [bool](Get-WindowsFeature -Name Hyper-V).Installed",
        "$switch = $false",
        "if ($hyperv) {",
        f"    $switch = [bool](Get-VMSwitch -Name {ps_literal(hv.switch_name)} -ErrorAction SilentlyContinue)",
        "}",
        f"$nat = [bool](Get-NetNat -Name {ps_literal(hv.nat_name)} -ErrorAction SilentlyContinue)",
        "[pscustomobject]@{",
        "    Listeners = $listeners",
        "    CredSSP = $credssp",
        "    Rules = [pscustomobject]$rules",
        "    HyperV = $hyperv",
        "    Switch = $switch",
        "    Nat = $nat",
        f"    Iso = (Test-Path -LiteralPath {ps_literal(hv.iso_path)})",
        "}",
    )


def add_node_checks(report: DiagnosticReport, host: str, data: Dict[str, Any], rule_names: List[str]) -> None:
    listeners = data.get("Listeners") or []
    if isinstance(listeners, str):
        listeners = [listeners]
    transports = {str(t).upper() for t in listeners}

    report.add(host, "winrm-http", "ok" if "HTTP" in transports else "fail", ", ".join(sorted(transports)))
    report.add(host, "winrm-https", "ok" if "HTTPS" in transports else "warn", "HTTPS listener")
    report.add(host, "credssp-server", "ok" if data.get("CredSSP") else "warn", "CredSSP server role")

    rules = data.get("Rules") or {}
    for name in rule_names:
        state = rules.get(name)
        if state is None:
            report.add(host, f"firewall:{name}", "fail", "missing")
        elif state:
            report.add(host, f"firewall:{name}", "ok", "enabled")
        else:
            report.add(host, f"firewall:{name}", "warn", "present but disabled")

    report.add(host, "hyperv-feature", "ok" if data.get("HyperV") else "fail", "Hyper-V role")
    report.add(host, "vm-switch", "ok" if data.get("Switch") else "fail", "internal switch")
    report.add(host, "nat", "ok" if data.get("Nat") else "fail", "NetNat")
    report.add(host, "iso", "ok" if data.get("Iso") else "fail", "AlmaLinux ISO")


def add_cluster_checks(report: DiagnosticReport, host: str, status: Dict[str, Any], config: LabConfig) -> None:
    cluster = config.cluster
    name = status.get("Name")
    report.add(host, "cluster", "ok" if name else "fail", name or "no cluster")
    if not name:
        return

    for node in status.get("Nodes") or []:
        state = node.get("State", "")
        report.add(host, f"cluster-node:{node.get('Name')}", "ok" if state == "Up" else "fail", state)

    if not cluster.enable_s2d:
        return

    s2d_state = status.get("S2DState")
    report.add(host, "s2d", "ok" if s2d_state == "Enabled" else "fail", s2d_state or "not enabled")

    health = status.get("PoolHealth")
    if health == "Healthy":
        report.add(host, "pool", "ok", cluster.effective_pool_name)
    elif health == "Warning":
        report.add(host, "pool", "warn", f"{cluster.effective_pool_name}: {health}")
    else:
        report.add(host, "pool", "fail", f"{cluster.effective_pool_name}: {health or 'missing'}")

    volumes = {v.get("Name", "").lower(): v for v in status.get("Volumes") or []}
    for spec in cluster.volumes:
        volume = volumes.get(spec.friendly_name.lower())
        if volume is None:
            report.add(host, f"volume:{spec.friendly_name}", "fail", "missing")
        elif volume.get("Health") == "Healthy":
            report.add(host, f"volume:{spec.friendly_name}", "ok", f"{volume.get('SizeGB')} GB")
        else:
            report.add(host, f"volume:{spec.friendly_name}", "warn", volume.get("Health") or "unknown")


def format_report(report: DiagnosticReport) -> str:
    """Plain-text table, one line per check, then the summary."""
    if not report.checks:
        return "No checks ran."
    host_width = max(len(c.host) for c in report.checks)
    name_width = max(len(c.name) for c in report.checks)
    lines = []
    for check in report.checks:
        icon = STATUS_ICONS.get(check.status, "?")
        lines.append(f"{icon} {check.host:<{host_width}}  {check.name:<{name_width}}  {check.detail}")
    summary = report.summary()
    lines.append("")
    lines.append(f"ok={summary['ok']} warn={summary['warn']} fail={summary['fail']}")
    return "\n".join(lines)


class DiagnosticsService:
    """Run node and cluster checks."""

    def __init__(self, client, config: LabConfig, cluster_client=None):
        self.client = client
        self.config = config
        self.cluster_client = cluster_client or client
        self.rule_names = [r.name for r in LAB_FIREWALL_RULES]

    async def check_node(self, host: str) -> DiagnosticReport:
        report = DiagnosticReport()
        try:
            data = await self.client.run_json(host, _inventory_script(self.config, self.rule_names)) or {}
        except RemoteError as e:
            report.add(host, "remoting", "fail", str(e))
            return report
        add_node_checks(report, host, data, self.rule_names)
        return report

    async def check_cluster(self, host: str) -> DiagnosticReport:
        report = DiagnosticReport()
        try:
            status = await ClusterService(self.cluster_client, self.config.cluster).status(host)
        except RemoteError as e:
            report.add(host, "cluster", "fail", str(e))
            return report
        add_cluster_checks(report, host, status, self.config)
        return report

    async def run(self, hosts: List[str], include_cluster: bool = True) -> DiagnosticReport:
        report = DiagnosticReport()
        for host in hosts:
            logger.info(log_message(f"Checking {host}", LogCategory.DIAGNOSTICS, LogLevel.RUNNING))
            report.extend(await self.check_node(host))
        if include_cluster and hosts:
            report.extend(await self.check_cluster(hosts[0]))

        level = {"ok": LogLevel.SUCCESS, "warn": LogLevel.WARNING, "fail": LogLevel.ERROR}[report.worst_status]
        logger.info(log_message(f"Diagnostics finished: {report.summary()}", LogCategory.DIAGNOSTICS, level))
        return report

    async def run_guests(self, nodes: List[NodeInfo], provisioner) -> DiagnosticReport:
        """cloud-init checks on every guest, reached through its node's NAT mapping."""
        report = DiagnosticReport()
        for index, guest in enumerate(self.config.guest_names()):
            node: Optional[NodeInfo] = nodes[self.config.guest_node_index(index)] if nodes else None
            if node is None:
                report.add(guest, "ssh", "fail", "no node outputs available")
                continue
            port = self.config.guest_ssh_port(index)
            report.extend(await provisioner.diagnose_cloud_init(node.public_ip, port, guest))
        return report
