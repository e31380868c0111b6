"""
Terraform Runner - Azure side of the lab

Drives the HCL in terraform/: renders terraform.tfvars.json from the lab
config, runs init/plan/apply/destroy and reads the outputs back into typed
values. The admin password reaches terraform only through TF_VAR_admin_password.
"""

import json
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import SecretStr

from nestedlab.config import LabConfig
from nestedlab.errors import TerraformError
from nestedlab.schemas.models import CommandResult, NodeInfo, TerraformOutputs
from nestedlab.services.command_runner import LocalExecutor, get_local_executor
from nestedlab.services.helpers.powershell_utils import encode_command
from nestedlab.services.winrm_setup import bootstrap_script


logger = logging.getLogger("nestedlab.terraform")

REQUIRED_OUTPUTS = ("resource_group", "node_names", "node_public_ips", "node_private_ips")


class TerraformRunner:
    """
    Thin wrapper over the terraform CLI.

    Usage:
        runner = TerraformRunner(config)
        await runner.init()
        await runner.apply()
        outputs = await runner.outputs()
    """

    def __init__(self, config: LabConfig, executor: Optional[LocalExecutor] = None):
        self.config = config
        self.settings = config.terraform
        self.executor = executor or get_local_executor()

    @property
    def working_dir(self) -> Path:
        return self.config.terraform_dir

    @property
    def vars_path(self) -> Path:
        return self.working_dir / self.settings.vars_file

    def ensure_binary(self) -> str:
        path = shutil.which(self.settings.binary)
        if not path:
            raise TerraformError(
                f"terraform binary '{self.settings.binary}' not found on PATH"
            )
        return path

    def build_vars(self) -> Dict[str, Any]:
        """Terraform input variables derived from the lab config (no secrets)."""
        azure = self.config.azure
        return {
            "subscription_id": azure.subscription_id,
            "resource_group_name": azure.resource_group,
            "location": azure.location,
            "prefix": azure.prefix,
            "vm_size": azure.vm_size,
            "node_count": azure.node_count,
            "admin_username": azure.admin_username,
            "vnet_cidr": azure.vnet_cidr,
            "subnet_cidr": azure.subnet_cidr,
            "node_private_ips": [self.config.node_private_ip(i) for i in range(azure.node_count)],
            "allowed_source_cidr": azure.allowed_source_cidr,
            "data_disk_count": azure.data_disk_count,
            "data_disk_size_gb": azure.data_disk_size_gb,
            "image": azure.image.model_dump(),
            "guest_ssh_port_base": self.config.guests.ssh_port_base,
            "guest_count": self.config.guests.count,
            "create_witness_storage": self.config.cluster.witness == "cloud",
            "bootstrap_command": (
                "powershell.exe -NoProfile -ExecutionPolicy Bypass -EncodedCommand "
                + encode_command(bootstrap_script())
            ),
        }

    def write_vars(self) -> Path:
        if not self.working_dir.is_dir():
            raise TerraformError(f"Terraform directory not found: {self.working_dir}")
        variables = {k: v for k, v in self.build_vars().items() if v is not None}
        self.vars_path.write_text(json.dumps(variables, indent=2) + "\n", encoding="utf-8")
        logger.info("Wrote %s", self.vars_path)
        return self.vars_path

    def _env(self) -> Dict[str, str]:
        env = {
            "TF_VAR_admin_password": self.config.admin_password.get_secret_value(),
            "TF_IN_AUTOMATION": "1",
        }
        if self.config.azure.subscription_id:
            env["ARM_SUBSCRIPTION_ID"] = self.config.azure.subscription_id
        return env

    async def _run(self, *args: str, check: bool = True) -> CommandResult:
        argv = [self.settings.binary, *args]
        logger.info("terraform %s", " ".join(args))
        result = await self.executor.execute(
            argv,
            timeout=self.settings.timeout,
            cwd=str(self.working_dir),
            env=self._env(),
        )
        if check and not result.success:
            detail = result.stderr or result.stdout or f"exit code {result.exit_code}"
            raise TerraformError(f"terraform {args[0]} failed: {detail}", result)
        return result

    async def init(self) -> CommandResult:
        self.ensure_binary()
        args = ["init", "-input=false", "-no-color"]
        if self.settings.init_upgrade:
            args.append("-upgrade")
        return await self._run(*args)

    async def validate(self) -> CommandResult:
        return await self._run("validate", "-no-color")

    async def plan(self, out: Optional[str] = "lab.tfplan") -> CommandResult:
        self.write_vars()
        args = ["plan", "-input=false", "-no-color", f"-var-file={self.settings.vars_file}"]
        if out:
            args.append(f"-out={out}")
        return await self._run(*args)

    async def apply(self, plan_file: Optional[str] = None) -> CommandResult:
        if plan_file:
            return await self._run("apply", "-input=false", "-no-color", plan_file)
        self.write_vars()
        args = ["apply", "-input=false", "-no-color", f"-var-file={self.settings.vars_file}"]
        if self.settings.auto_approve:
            args.append("-auto-approve")
        return await self._run(*args)

    async def destroy(self, auto_approve: Optional[bool] = None) -> CommandResult:
        self.write_vars()
        args = ["destroy", "-input=false", "-no-color", f"-var-file={self.settings.vars_file}"]
        approve = self.settings.auto_approve if auto_approve is None else auto_approve
        if approve:
            args.append("-auto-approve")
        return await self._run(*args)

    async def outputs(self) -> TerraformOutputs:
        result = await self._run("output", "-json", "-no-color")
        return parse_outputs(result.stdout)


def _value(raw: Dict[str, Any], name: str) -> Any:
    entry = raw.get(name)
    if isinstance(entry, dict) and "value" in entry:
        return entry["value"]
    return entry


def parse_outputs(text: str) -> TerraformOutputs:
    """
    Parse `terraform output -json`.

    Raises:
        TerraformError: invalid JSON, missing required outputs or mismatched node lists
    """
    try:
        raw = json.loads(text or "{}")
    except json.JSONDecodeError as e:
        raise TerraformError(f"terraform output is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise TerraformError("terraform output JSON must be an object")

    missing = [name for name in REQUIRED_OUTPUTS if _value(raw, name) in (None, "", [])]
    if missing:
        raise TerraformError(
            f"terraform outputs missing: {', '.join(missing)} (has the lab been applied?)"
        )

    names: List[str] = list(_value(raw, "node_names"))
    public_ips: List[str] = list(_value(raw, "node_public_ips"))
    private_ips: List[str] = list(_value(raw, "node_private_ips"))
    if not len(names) == len(public_ips) == len(private_ips):
        raise TerraformError(
            f"node output lengths differ: names={len(names)} public={len(public_ips)} private={len(private_ips)}"
        )

    key = _value(raw, "witness_storage_key")
    return TerraformOutputs(
        resource_group=_value(raw, "resource_group"),
        nodes=[
            NodeInfo(name=n, public_ip=pub, private_ip=priv)
            for n, pub, priv in zip(names, public_ips, private_ips)
        ],
        witness_storage_account=_value(raw, "witness_storage_account") or None,
        witness_storage_key=SecretStr(key) if key else None,
    )
