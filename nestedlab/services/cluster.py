"""
Failover Cluster and Storage Spaces Direct

All cluster cmdlets run on one node (the first) and reach the others from
there, which is why the workflow hands this service a CredSSP client. The
nodes are workgroup machines, so the cluster uses a DNS administrative
access point instead of an Active Directory computer object.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import SecretStr

from nestedlab.config import ClusterSettings
from nestedlab.schemas.models import StepResult, StepStatus
from nestedlab.services.helpers.powershell_utils import ps_literal, ps_script
from nestedlab.shared.logging_utils import LogCategory, LogLevel, log_message


logger = logging.getLogger("nestedlab.cluster")

CLUSTER_FEATURES = ("Failover-Clustering", "FS-FileServer")
VALIDATION_TESTS = ("Storage Spaces Direct", "Inventory", "Network", "System Configuration")

# Test-Cluster closes its warnings with "Test Result: <token>[, <token>]"
_TEST_RESULT_RE = re.compile(r"Test Result:\s*([A-Za-z, ]+)", re.IGNORECASE)
_FAILED_RE = re.compile(r"\bfail(?:ed|ure|s)?\b", re.IGNORECASE)


def classify_validation(warnings: List[str]) -> str:
    """
    Overall Test-Cluster result from the warnings it emitted.

    The "Test Result:" tokens win when present (ClusterNotApproved is a
    failure, ClusterConditionallyApproved a warning). Otherwise any warning
    with the word failed/failure is a failure; "Failover" is not.

    Returns:
        "Failed", "Warning" or "Success"
    """
    tokens = set()
    for w in warnings:
        for match in _TEST_RESULT_RE.finditer(w):
            tokens.update(t.strip().lower() for t in match.group(1).split(","))
    if "clusternotapproved" in tokens:
        return "Failed"
    if "clusterconditionallyapproved" in tokens:
        return "Warning"
    if any(_FAILED_RE.search(w) for w in warnings):
        return "Failed"
    if warnings:
        return "Warning"
    return "Success"


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


class ClusterService:
    """Create and inspect the two-node S2D cluster."""

    def __init__(self, client, settings: ClusterSettings):
        self.client = client
        self.settings = settings

    async def install_features(self, hosts: List[str]) -> StepResult:
        """Install the clustering and file server roles on each node when missing."""
        script = ps_script(
            "$changes = [ordered]@{}",
            f"foreach ($name in {ps_literal(list(CLUSTER_FEATURES))}) {{",
            "    $feature = Get-WindowsFeature -Name $name",
            "    if ($feature.Installed) {",
            "        $changes[$name] = 'exists'",
            "    } else {",
            "        $result = Install-WindowsFeature -Name $name -IncludeManagementTools",
            "        $changes[$name] = 'created'",
            "        if ($result.RestartNeeded.ToString() -eq 'Yes') { $changes['restart_needed'] = $true }",
            "    }",
            "}",
            "[pscustomobject]$changes",
        )
        per_host: Dict[str, Dict[str, Any]] = {}
        restart_hosts = []
        for host in hosts:
            logger.info(log_message(f"Cluster features on {host}", LogCategory.CLUSTER, LogLevel.RUNNING))
            changes = await self.client.run_json(host, script) or {}
            per_host[host] = changes
            for feature in CLUSTER_FEATURES:
                level = LogLevel.CREATED if changes.get(feature) == "created" else LogLevel.EXISTS
                logger.info(log_message(f"{host}: {feature}", LogCategory.CLUSTER, level))
            if changes.get("restart_needed"):
                restart_hosts.append(host)

        if restart_hosts:
            return StepResult(
                name="cluster-features",
                status=StepStatus.WARNING,
                message=f"Restart required on {', '.join(restart_hosts)}",
                details=per_host,
            )
        return StepResult(name="cluster-features", status=StepStatus.SUCCESS, message="Features present", details=per_host)

    async def validate(self, host: str, nodes: List[str]) -> StepResult:
        """
        Run Test-Cluster with the S2D test categories.

        Failed validation is FAILED. Warnings are WARNING unless
        ignore_validation_warnings is set, in which case they pass.
        """
        if not self.settings.validate_cluster:
            return StepResult(name="cluster-validate", status=StepStatus.SKIPPED, message="Validation disabled")

        script = ps_script(
            "$validationWarnings = @()",
            f"$report = Test-Cluster -Node {ps_literal(list(nodes))} -Include {ps_literal(list(VALIDATION_TESTS))} "
            "-WarningVariable validationWarnings -WarningAction SilentlyContinue",
            "[pscustomobject]@{",
            "    Report = [string]$report.FullName",
            "    Warnings = @($validationWarnings | ForEach-Object { $_.Message })",
            "}",
        )
        logger.info(log_message(f"Validating cluster nodes {', '.join(nodes)}", LogCategory.CLUSTER, LogLevel.RUNNING))
        data = await self.client.run_json(host, script) or {}
        warnings = [str(w) for w in _as_list(data.get("Warnings"))]
        outcome = classify_validation(warnings)
        details = {"report": data.get("Report"), "result": outcome, "warnings": warnings}

        if outcome == "Failed":
            logger.error(log_message(f"Cluster validation failed; see {details['report']}", LogCategory.CLUSTER, LogLevel.ERROR))
            return StepResult(name="cluster-validate", status=StepStatus.FAILED, message="Validation failed", details=details)
        if outcome == "Warning":
            logger.warning(log_message(
                f"Cluster validation reported {len(warnings)} warning(s); see {details['report']}",
                LogCategory.CLUSTER, LogLevel.WARNING,
            ))
            status = StepStatus.SUCCESS if self.settings.ignore_validation_warnings else StepStatus.WARNING
            return StepResult(name="cluster-validate", status=status, message="Validation passed with warnings", details=details)

        logger.info(log_message("Cluster validation passed", LogCategory.CLUSTER, LogLevel.SUCCESS))
        return StepResult(name="cluster-validate", status=StepStatus.SUCCESS, message="Validation passed", details=details)

    async def create(self, host: str, nodes: List[str]) -> StepResult:
        s = self.settings
        script = ps_script(
            "try { $cluster = Get-Cluster -ErrorAction Stop } catch { $cluster = $null }",
            "if ($cluster) {",
            "    [pscustomobject]@{ State = 'exists'; Name = $cluster.Name }",
            "} else {",
            f"    $new = New-Cluster -Name {ps_literal(s.name)} -Node {ps_literal(list(nodes))} "
            f"-StaticAddress {ps_literal(s.static_address)} -NoStorage -AdministrativeAccessPoint DNS",
            "    [pscustomobject]@{ State = 'created'; Name = $new.Name }",
            "}",
        )
        logger.info(log_message(f"Creating cluster {s.name}", LogCategory.CLUSTER, LogLevel.RUNNING))
        data = await self.client.run_json(host, script) or {}
        name = data.get("Name") or ""

        if data.get("State") == "exists":
            if name.lower() != s.name.lower():
                return StepResult(
                    name="cluster-create",
                    status=StepStatus.FAILED,
                    message=f"{host} already belongs to cluster '{name}'",
                    details=data,
                )
            logger.info(log_message(f"Cluster {name} already exists", LogCategory.CLUSTER, LogLevel.EXISTS))
            return StepResult(name="cluster-create", status=StepStatus.SKIPPED, message="Cluster exists", details=data)

        logger.info(log_message(f"Cluster {name or s.name} created", LogCategory.CLUSTER, LogLevel.CREATED))
        return StepResult(name="cluster-create", status=StepStatus.SUCCESS, message="Cluster created", details=data)

    async def configure_witness(
        self,
        host: str,
        storage_account: Optional[str] = None,
        key: Optional[SecretStr] = None,
    ) -> StepResult:
        mode = self.settings.witness
        if mode == "none":
            return StepResult(name="witness", status=StepStatus.SKIPPED, message="No witness configured")

        secrets = []
        if mode == "cloud":
            if not storage_account or key is None:
                return StepResult(
                    name="witness",
                    status=StepStatus.FAILED,
                    message="Cloud witness needs the witness storage account outputs from terraform",
                )
            resource_type = "Cloud Witness"
            secret = key.get_secret_value()
            secrets.append(secret)
            command = (
                f"Set-ClusterQuorum -CloudWitness -AccountName {ps_literal(storage_account)} "
                f"-AccessKey {ps_literal(secret)} | Out-Null"
            )
        else:
            resource_type = "File Share Witness"
            command = f"Set-ClusterQuorum -FileShareWitness {ps_literal(self.settings.witness_share)} | Out-Null"

        script = ps_script(
            "$resource = (Get-ClusterQuorum).QuorumResource",
            f"if ($resource -and $resource.ResourceType.Name -eq {ps_literal(resource_type)}) {{",
            "    'exists'",
            "} else {",
            f"    {command}",
            "    'created'",
            "}",
        )
        state = (await self.client.run(host, script, secrets)).text
        level = LogLevel.CREATED if state == "created" else LogLevel.EXISTS
        logger.info(log_message(f"{resource_type} quorum", LogCategory.CLUSTER, level))
        return StepResult(
            name="witness",
            status=StepStatus.SUCCESS if state == "created" else StepStatus.SKIPPED,
            message=f"{resource_type} {state}",
            details={"type": resource_type, "state": state},
        )

    async def enable_s2d(self, host: str) -> StepResult:
        if not self.settings.enable_s2d:
            return StepResult(name="s2d", status=StepStatus.SKIPPED, message="S2D disabled in config")

        pool = self.settings.effective_pool_name
        script = ps_script(
            "$s2d = Get-ClusterStorageSpacesDirect -ErrorAction SilentlyContinue",
            "if ($s2d -and $s2d.State.ToString() -eq 'Enabled') {",
            "    'exists'",
            "} else {",
            f"    Enable-ClusterStorageSpacesDirect -Confirm:$false -PoolFriendlyName {ps_literal(pool)} | Out-Null",
            "    'created'",
            "}",
        )
        logger.info(log_message(f"Enabling Storage Spaces Direct ({pool})", LogCategory.STORAGE, LogLevel.RUNNING))
        state = (await self.client.run(host, script)).text
        level = LogLevel.CREATED if state == "created" else LogLevel.EXISTS
        logger.info(log_message(f"S2D pool {pool}", LogCategory.STORAGE, level))
        return StepResult(
            name="s2d",
            status=StepStatus.SUCCESS if state == "created" else StepStatus.SKIPPED,
            message=f"S2D {'enabled' if state == 'created' else 'already enabled'}",
            details={"pool": pool},
        )

    async def create_volumes(self, host: str) -> StepResult:
        volumes = self.settings.volumes
        if not self.settings.enable_s2d or not volumes:
            return StepResult(name="volumes", status=StepStatus.SKIPPED, message="No volumes requested")

        pool = ps_literal(self.settings.effective_pool_name)
        lines = ["$results = [ordered]@{}"]
        for volume in volumes:
            name = ps_literal(volume.friendly_name)
            lines += [
                f"if (Get-VirtualDisk -FriendlyName {name} -ErrorAction SilentlyContinue) {{",
                f"    $results[{name}] = 'exists'",
                "} else {",
                f"    New-Volume -StoragePoolFriendlyName {pool} -FriendlyName {name} "
                f"-FileSystem {volume.filesystem} -Size ({volume.size_gb} * 1GB) "
                f"-ResiliencySettingName {volume.resiliency} | Out-Null",
                f"    $results[{name}] = 'created'",
                "}",
            ]
        lines.append("[pscustomobject]$results")

        states: Dict[str, str] = await self.client.run_json(host, ps_script(*lines)) or {}
        for name, state in states.items():
            level = LogLevel.CREATED if state == "created" else LogLevel.EXISTS
            logger.info(log_message(f"Volume {name}", LogCategory.STORAGE, level))

        created = [n for n, s in states.items() if s == "created"]
        return StepResult(
            name="volumes",
            status=StepStatus.SUCCESS if created else StepStatus.SKIPPED,
            message=f"{len(created)} volume(s) created",
            details=dict(states),
        )

    async def status(self, host: str) -> Dict[str, Any]:
        """Cluster name, node states, S2D state, pool health and volumes."""
        script = ps_script(
            "$cluster = Get-Cluster",
            "$nodes = @(Get-ClusterNode | ForEach-Object { [pscustomobject]@{ Name = $_.Name; State = $_.State.ToString() } })",
            "$s2d = Get-ClusterStorageSpacesDirect -ErrorAction SilentlyContinue",
            "$s2dState = $null",
            "if ($s2d) { $s2dState = $s2d.State.ToString() }",
            f"$pool = Get-StoragePool -FriendlyName {ps_literal(self.settings.effective_pool_name)} -ErrorAction SilentlyContinue",
            "$poolHealth = $null",
            "if ($pool) { $poolHealth = $pool.HealthStatus.ToString() }",
            "$volumes = @(Get-VirtualDisk -ErrorAction SilentlyContinue | ForEach-Object {",
            "    [pscustomobject]@{ Name = $_.FriendlyName; Health = $_.HealthStatus.ToString(); SizeGB = [math]::Round($_.Size / 1GB) }",
            "})",
            "[pscustomobject]@{",
            "    Name = $cluster.Name",
            "    Nodes = $nodes",
            "    S2DState = $s2dState",
            "    PoolHealth = $poolHealth",
            "    Volumes = $volumes",
            "}",
        )
        data = await self.client.run_json(host, script) or {}
        data["Nodes"] = _as_list(data.get("Nodes"))
        data["Volumes"] = _as_list(data.get("Volumes"))
        return data
