"""
Nested Hyper-V Host - feature, NAT switch, ISO and AlmaLinux guests

Each Azure node becomes a Hyper-V host with an internal switch behind a
NetNat. Guests boot the AlmaLinux ISO and pick up their kickstart from a
small FAT32 disk labelled OEMDRV, which Anaconda scans automatically, so no
boot parameters have to be typed into a console.
"""

import asyncio
import base64
import ipaddress
import logging
import re
from typing import Any, Dict, Optional

import httpx

from nestedlab.config import GuestSettings, HyperVSettings
from nestedlab.errors import RemoteExecutionError, RemoteTransportError, RetryExhaustedError
from nestedlab.schemas.models import StepResult, StepStatus
from nestedlab.services.helpers.powershell_utils import ps_literal, ps_script
from nestedlab.services.helpers.retry import retry_async
from nestedlab.shared.logging_utils import LogCategory, LogLevel, log_message


logger = logging.getLogger("nestedlab.hyperv")

# Raw bytes per upload chunk; a multiple of 3 keeps each chunk's base64 unpadded
UPLOAD_CHUNK_BYTES = 36000
OEMDRV_LABEL = "OEMDRV"
SECURE_BOOT_TEMPLATE = "MicrosoftUEFICertificateAuthority"

_CHECKSUM_LINE = re.compile(r"^SHA256 \((?P<file>[^)]+)\) = (?P<hash>[0-9a-fA-F]{64})\s*$")


async def resolve_iso_checksum(iso_url: str, timeout: float = 30.0) -> Optional[str]:
    """
    Look up the ISO's SHA-256 in the mirror's CHECKSUM file.

    The file lives beside the ISO and has BSD-style lines:
        SHA256 (AlmaLinux-9-latest-x86_64-minimal.iso) = 0a1b...

    Returns:
        Lowercase hex digest, or None when the file or the entry is missing
    """
    base, _, filename = iso_url.rpartition("/")
    checksum_url = f"{base}/CHECKSUM"
    try:
        async with httpx.AsyncClient(follow_redirects=True, timeout=timeout) as client:
            response = await client.get(checksum_url)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("Could not fetch %s: %s", checksum_url, e)
        return None

    for line in response.text.splitlines():
        match = _CHECKSUM_LINE.match(line.strip())
        if match and match.group("file") == filename:
            return match.group("hash").lower()
    logger.warning("No SHA256 entry for %s in %s", filename, checksum_url)
    return None


def _exists_or_create(check: str, create: str) -> str:
    return ps_script(
        f"if ({check}) {{",
        "    'exists'",
        "} else {",
        f"    {create}",
        "    'created'",
        "}",
    )


class HyperVHost:
    """Hyper-V host configuration on one lab node at a time."""

    def __init__(
        self,
        client,
        settings: HyperVSettings,
        guests: Optional[GuestSettings] = None,
        restart_grace: float = 30.0,
    ):
        self.client = client
        self.settings = settings
        self.guests = guests or GuestSettings()
        # Pause after scheduling a reboot so the probe does not hit the old listener
        self.restart_grace = restart_grace

    # ------------------------------------------------------------------
    # Host features and networking
    # ------------------------------------------------------------------

    async def ensure_feature(self, host: str) -> StepResult:
        """Install Hyper-V when missing, rebooting and waiting for WinRM if required."""
        script = ps_script(
            "$feature = Get-WindowsFeature -Name Hyper-V",
            "if ($feature.Installed) {",
            "    [pscustomobject]@{ State = 'exists'; RestartNeeded = $false }",
            "} else {",
            "    $result = Install-WindowsFeature -Name Hyper-V -IncludeManagementTools",
            "    [pscustomobject]@{ State = 'created'; RestartNeeded = ($result.RestartNeeded.ToString() -ne 'No') }",
            "}",
        )
        logger.info(log_message(f"Checking Hyper-V feature on {host}", LogCategory.HYPERV, LogLevel.RUNNING))
        state: Dict[str, Any] = await self.client.run_json(host, script) or {}

        if state.get("State") == "exists":
            logger.info(log_message(f"Hyper-V already installed on {host}", LogCategory.HYPERV, LogLevel.EXISTS))
            return StepResult(name=f"hyperv-feature:{host}", status=StepStatus.SKIPPED, message="Hyper-V already installed")

        details = {"restarted": False}
        if state.get("RestartNeeded"):
            logger.info(log_message(f"Restarting {host} to finish Hyper-V install", LogCategory.HYPERV, LogLevel.WAITING))
            await self.client.run(host, "shutdown.exe /r /t 5 /c 'nestedlab: Hyper-V install' /d p:2:4")
            await asyncio.sleep(self.restart_grace)
            if not await self.client.wait_until_reachable(host):
                return StepResult(
                    name=f"hyperv-feature:{host}",
                    status=StepStatus.FAILED,
                    message=f"{host} did not come back after the Hyper-V restart",
                    details=details,
                )
            details["restarted"] = True

        logger.info(log_message(f"Hyper-V installed on {host}", LogCategory.HYPERV, LogLevel.CREATED))
        return StepResult(name=f"hyperv-feature:{host}", status=StepStatus.SUCCESS, message="Hyper-V installed", details=details)

    async def ensure_switch(self, host: str) -> StepResult:
        name = ps_literal(self.settings.switch_name)
        script = _exists_or_create(
            f"Get-VMSwitch -Name {name} -ErrorAction SilentlyContinue",
            f"New-VMSwitch -Name {name} -SwitchType Internal | Out-Null",
        )
        state = (await self.client.run(host, script)).text
        level = LogLevel.CREATED if state == "created" else LogLevel.EXISTS
        logger.info(log_message(f"{host}: switch {self.settings.switch_name}", LogCategory.HYPERV, level))
        return StepResult(
            name=f"switch:{host}",
            status=StepStatus.SUCCESS if state == "created" else StepStatus.SKIPPED,
            message=f"Switch {self.settings.switch_name} {state}",
            details={"switch": state},
        )

    async def ensure_nat(self, host: str) -> StepResult:
        """
        Gateway address on the switch's vEthernet adapter plus the NetNat.

        A different NetNat already owning the prefix is reported as a
        warning in the log and left in place.
        """
        s = self.settings
        nat_name = ps_literal(s.nat_name)
        prefix = ps_literal(s.nat_prefix)
        prefix_length = ipaddress.IPv4Network(s.nat_prefix).prefixlen
        script = ps_script(
            "$changes = [ordered]@{}",
            f"$alias = {ps_literal(f'vEthernet ({s.switch_name})')}",
            f"if (Get-NetIPAddress -InterfaceAlias $alias -IPAddress {ps_literal(s.gateway_ip)} -ErrorAction SilentlyContinue) {{",
            "    $changes['gateway'] = 'exists'",
            "} else {",
            f"    New-NetIPAddress -IPAddress {ps_literal(s.gateway_ip)} -PrefixLength {prefix_length} -InterfaceAlias $alias | Out-Null",
            "    $changes['gateway'] = 'created'",
            "}",
            "$nats = @(Get-NetNat -ErrorAction SilentlyContinue)",
            f"$named = @($nats | Where-Object {{ $_.Name -eq {nat_name} }})",
            f"$conflict = @($nats | Where-Object {{ $_.Name -ne {nat_name} -and $_.InternalIPInterfaceAddressPrefix -eq {prefix} }})",
            "if ($named.Count -gt 0) {",
            "    $changes['nat'] = 'exists'",
            "} elseif ($conflict.Count -gt 0) {",
            "    $changes['nat'] = 'conflict'",
            "    $changes['conflicting_nat'] = $conflict[0].Name",
            "} else {",
            f"    New-NetNat -Name {nat_name} -InternalIPInterfaceAddressPrefix {prefix} | Out-Null",
            "    $changes['nat'] = 'created'",
            "}",
            "[pscustomobject]$changes",
        )
        changes: Dict[str, Any] = await self.client.run_json(host, script) or {}

        if changes.get("nat") == "conflict":
            logger.warning(log_message(
                f"{host}: NAT '{changes.get('conflicting_nat')}' already owns {s.nat_prefix}; leaving it in place",
                LogCategory.HYPERV, LogLevel.WARNING,
            ))
        for item in ("gateway", "nat"):
            if changes.get(item) in ("created", "exists"):
                level = LogLevel.CREATED if changes[item] == "created" else LogLevel.EXISTS
                logger.info(log_message(f"{host}: {item}", LogCategory.HYPERV, level))

        created = [k for k, v in changes.items() if v == "created"]
        return StepResult(
            name=f"nat:{host}",
            status=StepStatus.SUCCESS if created else StepStatus.SKIPPED,
            message=f"NAT {s.nat_name} on {s.nat_prefix}",
            details=dict(changes),
        )

    async def ensure_port_mapping(
        self,
        host: str,
        external_port: int,
        internal_ip: str,
        internal_port: int = 22,
    ) -> str:
        """Static TCP mapping host:external_port -> internal_ip:internal_port. Returns 'created' or 'exists'."""
        nat_name = ps_literal(self.settings.nat_name)
        script = ps_script(
            f"$existing = @(Get-NetNatStaticMapping -NatName {nat_name} -ErrorAction SilentlyContinue | "
            f"Where-Object {{ $_.ExternalPort -eq {external_port} -and $_.Protocol -eq 'TCP' }})",
            f"$matching = @($existing | Where-Object {{ $_.InternalIPAddress -eq {ps_literal(internal_ip)} -and $_.InternalPort -eq {internal_port} }})",
            "if ($matching.Count -gt 0) {",
            "    'exists'",
            "} else {",
            "    $existing | ForEach-Object { Remove-NetNatStaticMapping -StaticMappingID $_.StaticMappingID -Confirm:$false }",
            f"    Add-NetNatStaticMapping -NatName {nat_name} -Protocol TCP -ExternalIPAddress '0.0.0.0' "
            f"-ExternalPort {external_port} -InternalIPAddress {ps_literal(internal_ip)} -InternalPort {internal_port} | Out-Null",
            "    'created'",
            "}",
        )
        state = (await self.client.run(host, script)).text
        level = LogLevel.CREATED if state == "created" else LogLevel.EXISTS
        logger.info(log_message(f"{host}:{external_port} -> {internal_ip}:{internal_port}", LogCategory.HYPERV, level))
        return state

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def upload_file(self, host: str, remote_path: str, content: str) -> None:
        """Write text to a file on the node in base64 chunks (UTF-8, no BOM)."""
        data = content.encode("utf-8")
        chunks = [data[i:i + UPLOAD_CHUNK_BYTES] for i in range(0, len(data), UPLOAD_CHUNK_BYTES)] or [b""]
        path = ps_literal(remote_path)
        for index, chunk in enumerate(chunks):
            encoded = ps_literal(base64.b64encode(chunk).decode("ascii"))
            if index == 0:
                script = ps_script(
                    f"$bytes = [Convert]::FromBase64String({encoded})",
                    f"New-Item -ItemType Directory -Force -Path (Split-Path -Parent {path}) | Out-Null",
                    f"[IO.File]::WriteAllBytes({path}, $bytes)",
                )
            else:
                script = ps_script(
                    f"$bytes = [Convert]::FromBase64String({encoded})",
                    f"$stream = [IO.File]::Open({path}, 'Append')",
                    "try { $stream.Write($bytes, 0, $bytes.Length) } finally { $stream.Close() }",
                )
            await self.client.run(host, script)
        logger.debug("Uploaded %d bytes to %s:%s in %d chunk(s)", len(data), host, remote_path, len(chunks))

    async def _iso_hash(self, host: str) -> Optional[str]:
        path = ps_literal(self.settings.iso_path)
        script = ps_script(
            f"if (Test-Path -LiteralPath {path}) {{",
            f"    (Get-FileHash -LiteralPath {path} -Algorithm SHA256).Hash.ToLower()",
            "}",
        )
        text = (await self.client.run(host, script)).text
        return text or None

    async def download_iso(self, host: str) -> StepResult:
        """
        Make sure the AlmaLinux ISO is on the node.

        The download runs on the node itself (the controller never holds the
        image). A checksum mismatch deletes the file and counts as a failed
        attempt of the bounded retry.
        """
        s = self.settings
        expected = s.iso_sha256 or await resolve_iso_checksum(s.iso_url)
        if expected is None:
            logger.warning("No SHA-256 known for %s; the ISO will not be verified", s.iso_url)

        current = await self._iso_hash(host)
        if current and (expected is None or current == expected):
            logger.info(log_message(f"ISO already present on {host}", LogCategory.HYPERV, LogLevel.EXISTS))
            return StepResult(
                name=f"iso:{host}", status=StepStatus.SKIPPED,
                message="ISO already present", details={"sha256": current},
            )

        path = ps_literal(s.iso_path)
        download_script = ps_script(
            f"New-Item -ItemType Directory -Force -Path (Split-Path -Parent {path}) | Out-Null",
            f"if (Test-Path -LiteralPath {path}) {{ Remove-Item -LiteralPath {path} -Force }}",
            "[Net.ServicePointManager]::SecurityProtocol = [Net.SecurityProtocolType]::Tls12",
            f"Invoke-WebRequest -Uri {ps_literal(s.iso_url)} -OutFile {path} -UseBasicParsing",
            f"(Get-FileHash -LiteralPath {path} -Algorithm SHA256).Hash.ToLower()",
        )

        async def attempt() -> str:
            digest = (await self.client.run(host, download_script)).text
            if expected is not None and digest != expected:
                await self.client.run(host, f"Remove-Item -LiteralPath {path} -Force")
                raise RemoteExecutionError(
                    f"{host}: ISO checksum mismatch (expected {expected}, got {digest})", host=host,
                )
            return digest

        logger.info(log_message(f"Downloading {s.iso_url} on {host}", LogCategory.HYPERV, LogLevel.RUNNING))
        try:
            digest = await retry_async(
                attempt,
                attempts=s.download_attempts,
                delay=s.download_delay,
                retry_on=(RemoteExecutionError, RemoteTransportError),
                description=f"ISO download on {host}",
            )
        except RetryExhaustedError as e:
            return StepResult(name=f"iso:{host}", status=StepStatus.FAILED, message=str(e))

        logger.info(log_message(f"ISO downloaded on {host}", LogCategory.HYPERV, LogLevel.CREATED))
        return StepResult(
            name=f"iso:{host}", status=StepStatus.SUCCESS,
            message="ISO downloaded", details={"sha256": digest, "verified": expected is not None},
        )

    # ------------------------------------------------------------------
    # Guests
    # ------------------------------------------------------------------

    def vm_dir(self, name: str) -> str:
        return self.settings.vm_root.rstrip("\\") + "\\" + name

    async def guest_state(self, host: str, name: str) -> Optional[str]:
        script = ps_script(
            f"$vm = Get-VM -Name {ps_literal(name)} -ErrorAction SilentlyContinue",
            "if ($vm) { $vm.State.ToString() }",
        )
        return (await self.client.run(host, script)).text or None

    def _oemdrv_script(self, vm_dir: str) -> str:
        return ps_script(
            f"$vmDir = {ps_literal(vm_dir)}",
            "$oemPath = Join-Path $vmDir 'oemdrv.vhdx'",
            "if (Test-Path -LiteralPath $oemPath) { Remove-Item -LiteralPath $oemPath -Force }",
            "New-VHD -Path $oemPath -SizeBytes 64MB -Dynamic | Out-Null",
            "try {",
            "    $disk = Mount-VHD -Path $oemPath -Passthru | Get-Disk",
            "    Initialize-Disk -Number $disk.Number -PartitionStyle MBR",
            "    $partition = New-Partition -DiskNumber $disk.Number -UseMaximumSize -AssignDriveLetter",
            f"    Format-Volume -Partition $partition -FileSystem FAT32 -NewFileSystemLabel '{OEMDRV_LABEL}' -Confirm:$false | Out-Null",
            "    $letter = (Get-Partition -DiskNumber $disk.Number -PartitionNumber $partition.PartitionNumber).DriveLetter",
            "    Copy-Item -LiteralPath (Join-Path $vmDir 'ks.cfg') -Destination ($letter + ':\\ks.cfg')",
            "} finally {",
            "    Dismount-VHD -Path $oemPath",
            "}",
        )

    def _vm_script(self, name: str, vm_dir: str) -> str:
        g = self.guests
        vm = ps_literal(name)
        return ps_script(
            f"$vmDir = {ps_literal(vm_dir)}",
            f"$vhdPath = Join-Path $vmDir {ps_literal(name + '.vhdx')}",
            f"New-VHD -Path $vhdPath -SizeBytes ({g.disk_gb} * 1GB) -Dynamic | Out-Null",
            f"New-VM -Name {vm} -Generation 2 -MemoryStartupBytes ({g.memory_mb} * 1MB) -VHDPath $vhdPath "
            f"-SwitchName {ps_literal(self.settings.switch_name)} -Path {ps_literal(self.settings.vm_root)} | Out-Null",
            f"Set-VMProcessor -VMName {vm} -Count {g.cpu_count} -ExposeVirtualizationExtensions $true",
            f"Set-VMMemory -VMName {vm} -DynamicMemoryEnabled $false",
            f"Get-VMNetworkAdapter -VMName {vm} | Set-VMNetworkAdapter -MacAddressSpoofing On",
            f"Set-VMFirmware -VMName {vm} -EnableSecureBoot On -SecureBootTemplate '{SECURE_BOOT_TEMPLATE}'",
            f"Add-VMDvdDrive -VMName {vm} -Path {ps_literal(self.settings.iso_path)}",
            f"Add-VMHardDiskDrive -VMName {vm} -Path (Join-Path $vmDir 'oemdrv.vhdx')",
            f"Set-VMFirmware -VMName {vm} -FirstBootDevice (Get-VMDvdDrive -VMName {vm})",
            f"Start-VM -Name {vm}",
        )

    async def create_guest(self, host: str, name: str, kickstart_text: str) -> StepResult:
        """
        Create and start an AlmaLinux guest that installs itself unattended.

        Returns:
            SKIPPED when a VM with that name already exists, SUCCESS otherwise
        """
        existing = await self.guest_state(host, name)
        if existing:
            logger.info(log_message(f"{name} already exists on {host} ({existing})", LogCategory.GUEST, LogLevel.EXISTS))
            return StepResult(
                name=f"guest:{name}", status=StepStatus.SKIPPED,
                message=f"VM exists ({existing})", details={"host": host, "state": existing},
            )

        vm_dir = self.vm_dir(name)
        logger.info(log_message(f"Creating {name} on {host}", LogCategory.GUEST, LogLevel.RUNNING))
        await self.upload_file(host, vm_dir + "\\ks.cfg", kickstart_text)
        await self.client.run(host, self._oemdrv_script(vm_dir))
        await self.client.run(host, self._vm_script(name, vm_dir))

        logger.info(log_message(f"{name} started on {host}; kickstart install running", LogCategory.GUEST, LogLevel.CREATED))
        return StepResult(
            name=f"guest:{name}", status=StepStatus.SUCCESS,
            message="VM created and started", details={"host": host, "vm_dir": vm_dir},
        )
