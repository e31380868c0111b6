"""
WinRM / CredSSP Remoting Setup

Two stages:
  1. bootstrap_script(): runs once per node from the Azure Custom Script
     Extension so the controller can reach WinRM over HTTP at all.
  2. RemotingConfigurator.configure_node(): run over that first connection
     to add the HTTPS listener, TrustedHosts, CredSSP roles (the nodes
     delegate credentials to each other for cluster creation) and shell
     memory limits.

Each item is only changed when it is not already in the desired state.
"""

import logging
from typing import Any, Dict, List, Optional

from nestedlab.schemas.models import StepResult, StepStatus
from nestedlab.services.helpers.powershell_utils import ps_literal, ps_script
from nestedlab.shared.logging_utils import LogCategory, LogLevel, log_message


logger = logging.getLogger("nestedlab.remoting")

MIN_SHELL_MEMORY_MB = 2048
BOOTSTRAP_RULE_NAME = "NestedLab-WinRM-HTTP-In"


def bootstrap_script() -> str:
    """First-boot script: HTTP WinRM reachable from anywhere the NSG allows."""
    return ps_script(
        "$ErrorActionPreference = 'Stop'",
        "Enable-PSRemoting -Force -SkipNetworkProfileCheck | Out-Null",
        "Set-Item WSMan:\\localhost\\Service\\AllowUnencrypted -Value $false",
        f"if (-not (Get-NetFirewallRule -Name {ps_literal(BOOTSTRAP_RULE_NAME)} -ErrorAction SilentlyContinue)) {{",
        f"    New-NetFirewallRule -Name {ps_literal(BOOTSTRAP_RULE_NAME)} -DisplayName 'NestedLab WinRM HTTP' "
        "-Direction Inbound -Protocol TCP -LocalPort 5985 -Action Allow -Profile Any | Out-Null",
        "}",
        "New-ItemProperty -Path HKLM:\\SOFTWARE\\Microsoft\\Windows\\CurrentVersion\\Policies\\System "
        "-Name LocalAccountTokenFilterPolicy -Value 1 -PropertyType DWord -Force | Out-Null",
        "Set-Service -Name WinRM -StartupType Automatic",
        "Restart-Service -Name WinRM",
    )


def _configure_script(peers: List[str], enable_https: bool, credssp: bool) -> str:
    lines = [
        "$changes = [ordered]@{}",
        "if (Get-PSSessionConfiguration -Name 'Microsoft.PowerShell' -ErrorAction SilentlyContinue) {",
        "    $changes['psremoting'] = 'exists'",
        "} else {",
        "    Enable-PSRemoting -Force -SkipNetworkProfileCheck | Out-Null",
        "    $changes['psremoting'] = 'created'",
        "}",
    ]
    if enable_https:
        lines += [
            "$https = Get-ChildItem WSMan:\\localhost\\Listener | Where-Object { $_.Keys -contains 'Transport=HTTPS' }",
            "if ($https) {",
            "    $changes['https_listener'] = 'exists'",
            "} else {",
            "    $fqdn = [System.Net.Dns]::GetHostEntry($env:COMPUTERNAME).HostName",
            "    $cert = New-SelfSignedCertificate -DnsName $fqdn, $env:COMPUTERNAME -CertStoreLocation Cert:\\LocalMachine\\My",
            "    New-Item -Path WSMan:\\localhost\\Listener -Transport HTTPS -Address * -CertificateThumbPrint $cert.Thumbprint -Force | Out-Null",
            "    $changes['https_listener'] = 'created'",
            "}",
        ]
    if peers:
        lines += [
            f"$peers = {ps_literal(list(peers))}",
            "$current = (Get-Item WSMan:\\localhost\\Client\\TrustedHosts).Value",
            "$existing = @()",
            "if ($current) { $existing = @($current -split ',' | ForEach-Object { $_.Trim() } | Where-Object { $_ }) }",
            "$missing = @($peers | Where-Object { $existing -notcontains $_ })",
            "if ($existing -contains '*' -or $missing.Count -eq 0) {",
            "    $changes['trusted_hosts'] = 'exists'",
            "} else {",
            "    Set-Item WSMan:\\localhost\\Client\\TrustedHosts -Value (($existing + $missing) -join ',') -Force",
            "    $changes['trusted_hosts'] = 'created'",
            "}",
        ]
    if credssp:
        lines += [
            "if ((Get-Item WSMan:\\localhost\\Service\\Auth\\CredSSP).Value -eq 'true') {",
            "    $changes['credssp_server'] = 'exists'",
            "} else {",
            "    Enable-WSManCredSSP -Role Server -Force | Out-Null",
            "    $changes['credssp_server'] = 'created'",
            "}",
        ]
        if peers:
            lines += [
                "$delegationKey = 'HKLM:\\SOFTWARE\\Policies\\Microsoft\\Windows\\CredentialsDelegation\\AllowFreshCredentials'",
                "$delegated = @()",
                "if (Test-Path $delegationKey) {",
                "    $props = Get-ItemProperty -Path $delegationKey",
                "    $delegated = @($props.PSObject.Properties | Where-Object { $_.Name -match '^[0-9]+$' } | ForEach-Object { $_.Value })",
                "}",
                "$needed = @($peers | Where-Object { $delegated -notcontains ('wsman/' + $_) })",
                "$clientOn = (Get-Item WSMan:\\localhost\\Client\\Auth\\CredSSP).Value -eq 'true'",
                "if ($clientOn -and $needed.Count -eq 0) {",
                "    $changes['credssp_client'] = 'exists'",
                "} else {",
                "    Enable-WSManCredSSP -Role Client -DelegateComputer $peers -Force | Out-Null",
                "    $changes['credssp_client'] = 'created'",
                "}",
            ]
    lines += [
        "$shellMemory = [int](Get-Item WSMan:\\localhost\\Shell\\MaxMemoryPerShellMB).Value",
        f"if ($shellMemory -ge {MIN_SHELL_MEMORY_MB}) {{",
        "    $changes['shell_memory'] = 'exists'",
        "} else {",
        f"    Set-Item WSMan:\\localhost\\Shell\\MaxMemoryPerShellMB -Value {MIN_SHELL_MEMORY_MB}",
        "    $changes['shell_memory'] = 'created'",
        "}",
        "[pscustomobject]$changes",
    ]
    return ps_script(*lines)


STATUS_SCRIPT = ps_script(
    "$listeners = @(Get-ChildItem WSMan:\\localhost\\Listener | ForEach-Object {",
    "    $keys = $_.Keys",
    "    [pscustomobject]@{",
    "        Transport = ($keys | Where-Object { $_ -like 'Transport=*' }) -replace '^Transport=', ''",
    "        Address = ($keys | Where-Object { $_ -like 'Address=*' }) -replace '^Address=', ''",
    "    }",
    "})",
    "[pscustomobject]@{",
    "    Listeners = $listeners",
    "    CredSSPServer = (Get-Item WSMan:\\localhost\\Service\\Auth\\CredSSP).Value -eq 'true'",
    "    CredSSPClient = (Get-Item WSMan:\\localhost\\Client\\Auth\\CredSSP).Value -eq 'true'",
    "    TrustedHosts = (Get-Item WSMan:\\localhost\\Client\\TrustedHosts).Value",
    "    MaxMemoryPerShellMB = [int](Get-Item WSMan:\\localhost\\Shell\\MaxMemoryPerShellMB).Value",
    "}",
)


class RemotingConfigurator:
    """Bring a node's WinRM/CredSSP configuration to the lab baseline."""

    def __init__(self, client):
        self.client = client

    async def configure_node(
        self,
        host: str,
        peers: Optional[List[str]] = None,
        enable_https: bool = True,
        credssp: bool = True,
    ) -> StepResult:
        """
        Configure remoting on one node.

        Args:
            host: Address the controller uses to reach the node
            peers: Names/addresses of the other nodes (TrustedHosts, CredSSP delegation)
            enable_https: Create the HTTPS listener when missing
            credssp: Enable CredSSP server and client roles

        Returns:
            StepResult whose details map each item to 'created' or 'exists'
        """
        peers = [p for p in (peers or []) if p]
        logger.info(log_message(f"Configuring WinRM on {host}", LogCategory.REMOTING, LogLevel.RUNNING))
        changes: Dict[str, Any] = await self.client.run_json(
            host, _configure_script(peers, enable_https, credssp)
        ) or {}

        for item, state in changes.items():
            level = LogLevel.CREATED if state == "created" else LogLevel.EXISTS
            logger.info(log_message(f"{host}: {item}", LogCategory.REMOTING, level))

        created = [k for k, v in changes.items() if v == "created"]
        return StepResult(
            name=f"remoting:{host}",
            status=StepStatus.SUCCESS,
            message=f"{len(created)} change(s) on {host}" if created else f"{host} already configured",
            details=dict(changes),
        )

    async def status(self, host: str) -> Dict[str, Any]:
        data = await self.client.run_json(host, STATUS_SCRIPT) or {}
        listeners = data.get("Listeners") or []
        if isinstance(listeners, dict):
            listeners = [listeners]
        data["Listeners"] = listeners
        return data
