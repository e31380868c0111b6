"""
WMI Namespace Permissions

Grants or revokes access on a WMI namespace (e.g. root/cimv2 for remote
monitoring, root/MSCluster for cluster tooling) by reading the namespace
security descriptor as SDDL, editing the DACL locally and writing it back.
Nothing is written when the edit is a no-op.
"""

import logging
import re
from typing import Iterable, Optional

from nestedlab.errors import RemoteExecutionError
from nestedlab.schemas.models import StepResult, StepStatus
from nestedlab.services.helpers import sddl as sddl_edit
from nestedlab.services.helpers.powershell_utils import ps_literal, ps_script
from nestedlab.shared.logging_utils import LogCategory, LogLevel, log_message


logger = logging.getLogger("nestedlab.wmi")

_SID_RE = re.compile(r"^S-1-\d+(-\d+)+$", re.IGNORECASE)
# Two-letter SDDL aliases (BA, AU, NS, ...) are used as-is
_ALIAS_RE = re.compile(r"^[A-Z]{2}$")
_HELPER = "[wmiclass]'root\\cimv2:Win32_SecurityDescriptorHelper'"


def normalize_namespace(namespace: str) -> str:
    """root/cimv2 -> root\\cimv2"""
    cleaned = namespace.strip().replace("/", "\\").strip("\\")
    if not cleaned.lower().startswith("root"):
        raise ValueError(f"WMI namespace must start with 'root': '{namespace}'")
    return cleaned


class WmiPermissionService:
    """Edit WMI namespace DACLs on a node."""

    def __init__(self, client):
        self.client = client

    async def resolve_sid(self, host: str, account: str) -> str:
        if _SID_RE.match(account.strip()):
            return account.strip().upper()
        if _ALIAS_RE.match(account.strip()):
            return account.strip()
        script = ps_script(
            f"$account = New-Object System.Security.Principal.NTAccount({ps_literal(account)})",
            "$account.Translate([System.Security.Principal.SecurityIdentifier]).Value",
        )
        result = await self.client.run(host, script)
        sid = result.text.strip()
        if not _SID_RE.match(sid):
            raise RemoteExecutionError(f"{host}: could not resolve SID for '{account}' (got '{sid}')", host=host)
        return sid

    async def get_sddl(self, host: str, namespace: str) -> str:
        ns = normalize_namespace(namespace)
        script = ps_script(
            f"$sd = Invoke-WmiMethod -Namespace {ps_literal(ns)} -Path '__systemsecurity=@' -Name GetSecurityDescriptor",
            "if ($sd.ReturnValue -ne 0) { throw \"GetSecurityDescriptor returned $($sd.ReturnValue)\" }",
            f"$converted = ({_HELPER}).Win32SDToSDDL($sd.Descriptor)",
            "if ($converted.ReturnValue -ne 0) { throw \"Win32SDToSDDL returned $($converted.ReturnValue)\" }",
            "$converted.SDDL",
        )
        result = await self.client.run(host, script)
        return result.text.strip()

    async def set_sddl(self, host: str, namespace: str, sddl: str) -> None:
        ns = normalize_namespace(namespace)
        script = ps_script(
            f"$converted = ({_HELPER}).SDDLToWin32SD({ps_literal(sddl)})",
            "if ($converted.ReturnValue -ne 0) { throw \"SDDLToWin32SD returned $($converted.ReturnValue)\" }",
            f"$result = Invoke-WmiMethod -Namespace {ps_literal(ns)} -Path '__systemsecurity=@' "
            "-Name SetSecurityDescriptor -ArgumentList $converted.Descriptor",
            "if ($result.ReturnValue -ne 0) { throw \"SetSecurityDescriptor returned $($result.ReturnValue)\" }",
        )
        await self.client.run(host, script)

    async def grant(
        self,
        host: str,
        namespace: str,
        account: str,
        permissions: Iterable[str],
        allow: bool = True,
        inherit: bool = True,
    ) -> StepResult:
        """
        Grant (or deny) WMI permissions on a namespace.

        Args:
            host: Node address
            namespace: e.g. "root/cimv2"
            account: "DOMAIN\\user", "user", a well-known name or a SID
            permissions: Names from sddl.WMI_PERMISSIONS
            allow: False writes a deny ACE instead
            inherit: Apply to child namespaces (CI flag)

        Returns:
            StepResult: SUCCESS when the DACL was written, SKIPPED when already in place
        """
        mask = sddl_edit.permissions_to_mask(permissions)
        step_name = f"wmi:{host}:{namespace}:{account}"
        verb = "Granting" if allow else "Denying"
        logger.info(log_message(
            f"{verb} {', '.join(permissions)} on {namespace} to {account} ({host})",
            LogCategory.WMI, LogLevel.RUNNING,
        ))

        sid = await self.resolve_sid(host, account)
        before = await self.get_sddl(host, namespace)
        after = sddl_edit.grant(before, sid, mask, allow=allow, inherit=inherit)

        details = {
            "namespace": namespace,
            "account": account,
            "sid": sid,
            "mask": f"0x{mask:x}",
            "allow": allow,
            "before": before,
            "after": after,
        }
        if after == before:
            logger.info(log_message(f"{account} already has 0x{mask:x} on {namespace}", LogCategory.WMI, LogLevel.EXISTS))
            return StepResult(name=step_name, status=StepStatus.SKIPPED, message="Permissions already present", details=details)

        await self.set_sddl(host, namespace, after)
        logger.info(log_message(f"Updated DACL on {namespace} ({host})", LogCategory.WMI, LogLevel.CREATED))
        return StepResult(name=step_name, status=StepStatus.SUCCESS, message=f"ACE written for {account}", details=details)

    async def revoke(self, host: str, namespace: str, account: str) -> StepResult:
        step_name = f"wmi-revoke:{host}:{namespace}:{account}"
        sid = await self.resolve_sid(host, account)
        before = await self.get_sddl(host, namespace)
        after = sddl_edit.revoke(before, sid)
        details = {"namespace": namespace, "account": account, "sid": sid, "before": before, "after": after}
        if after == before:
            return StepResult(name=step_name, status=StepStatus.SKIPPED, message="No explicit ACE to remove", details=details)

        await self.set_sddl(host, namespace, after)
        logger.info(log_message(f"Removed ACEs for {account} on {namespace} ({host})", LogCategory.WMI, LogLevel.SUCCESS))
        return StepResult(name=step_name, status=StepStatus.SUCCESS, message=f"ACEs removed for {account}", details=details)

    async def ensure_grants(self, host: str, grants) -> Optional[StepResult]:
        """Apply a list of WmiGrantSpec; returns a combined step result."""
        results = []
        for spec in grants:
            results.append(await self.grant(
                host, spec.namespace, spec.account, spec.permissions, allow=spec.allow, inherit=spec.inherit,
            ))
        if not results:
            return None
        changed = [r for r in results if r.status == StepStatus.SUCCESS]
        return StepResult(
            name=f"wmi:{host}",
            status=StepStatus.SUCCESS if changed else StepStatus.SKIPPED,
            message=f"{len(changed)} of {len(results)} grant(s) changed on {host}",
            details={"grants": [r.details for r in results]},
        )
