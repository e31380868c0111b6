"""
Lab Workflow - the ordered deploy recipe

Each step is a named coroutine returning a StepResult; steps touching
several nodes do them one after another and fold the per-node results into
one. The run stops at the first FAILED step (or exception) and asks the
operator before continuing past a WARNING.

Usage:
    workflow = LabWorkflow(config)
    report = await workflow.run(start_at="hyperv", confirm=ask_operator)
"""

import logging
import re
import time
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from nestedlab.config import LabConfig
from nestedlab.errors import StepFailedError
from nestedlab.schemas.models import StepResult, StepStatus, TerraformOutputs, WorkflowReport
from nestedlab.services.cluster import ClusterService
from nestedlab.services.firewall import LAB_FIREWALL_RULES, FirewallManager, FirewallRule
from nestedlab.services.guest_provisioner import GuestProvisioner
from nestedlab.services.hyperv import HyperVHost
from nestedlab.services.kickstart import read_public_key, render_guest_kickstart
from nestedlab.services.remote_client import PSRemoteClient, get_remote_client
from nestedlab.services.terraform import TerraformRunner
from nestedlab.services.winrm_setup import RemotingConfigurator
from nestedlab.services.wmi_permissions import WmiPermissionService
from nestedlab.shared.logging_utils import (
    LogCategory,
    LogLevel,
    create_error_dict,
    create_status_dict,
    create_success_dict,
    log_message,
)


logger = logging.getLogger("nestedlab.workflow")

STEP_NAMES = (
    "provision",
    "wait-remoting",
    "firewall",
    "remoting",
    "wmi-permissions",
    "hyperv",
    "nat",
    "iso",
    "guests",
    "guest-postinstall",
    "cluster-features",
    "cluster-validate",
    "cluster-create",
    "witness",
    "s2d",
    "volumes",
)

# Worst first
_STATUS_ORDER = (StepStatus.FAILED, StepStatus.WARNING, StepStatus.SUCCESS, StepStatus.SKIPPED)

ConfirmCallback = Callable[[StepResult], bool]

PLAN_FILE = "lab.tfplan"

_PLAN_SUMMARY_RE = re.compile(r"^Plan: .*$|^No changes\..*$", re.MULTILINE)


def combine_results(name: str, results: Sequence[StepResult]) -> StepResult:
    """Fold per-node results into one step result carrying the worst status."""
    if not results:
        return StepResult(name=name, status=StepStatus.SKIPPED, message="Nothing to do")
    statuses = {r.status for r in results}
    status = next((s for s in _STATUS_ORDER if s in statuses), StepStatus.SUCCESS)
    failing = [r for r in results if r.status == status and status in (StepStatus.FAILED, StepStatus.WARNING)]
    message = "; ".join(r.message for r in failing) if failing else f"{len(results)} item(s) {status.value}"
    return StepResult(
        name=name,
        status=status,
        message=message,
        details={r.name: {"status": r.status.value, "message": r.message, "details": r.details} for r in results},
    )


def cluster_client_for(config: LabConfig) -> PSRemoteClient:
    """
    Client for cluster cmdlets.

    Test-Cluster and New-Cluster reach the other node from the node they run
    on, which needs delegated credentials, so these calls go over CredSSP.
    """
    remoting = config.remoting
    if remoting.auth != "credssp":
        remoting = remoting.model_copy(update={"auth": "credssp"})
    return PSRemoteClient(remoting, config.azure.admin_username, config.admin_password.get_secret_value())


class LabWorkflow:
    """Ordered, resumable deploy of the nested lab."""

    def __init__(
        self,
        config: LabConfig,
        client=None,
        cluster_client=None,
        terraform: Optional[TerraformRunner] = None,
        provisioner: Optional[GuestProvisioner] = None,
        outputs: Optional[TerraformOutputs] = None,
    ):
        self.config = config
        self.client = client or get_remote_client(config)
        self.cluster_client = cluster_client or cluster_client_for(config)
        self.terraform = terraform or TerraformRunner(config)
        self.provisioner = provisioner or GuestProvisioner(config.guests)
        self.hyperv = HyperVHost(self.client, config.hyperv, config.guests)
        self.firewall = FirewallManager(self.client)
        self.cluster = ClusterService(self.cluster_client, config.cluster)
        self._outputs = outputs
        self._confirm: Optional[ConfirmCallback] = None

        self.steps: Dict[str, Callable[[], Awaitable[StepResult]]] = {
            "provision": self.step_provision,
            "wait-remoting": self.step_wait_remoting,
            "firewall": self.step_firewall,
            "remoting": self.step_remoting,
            "wmi-permissions": self.step_wmi_permissions,
            "hyperv": self.step_hyperv,
            "nat": self.step_nat,
            "iso": self.step_iso,
            "guests": self.step_guests,
            "guest-postinstall": self.step_guest_postinstall,
            "cluster-features": self.step_cluster_features,
            "cluster-validate": self.step_cluster_validate,
            "cluster-create": self.step_cluster_create,
            "witness": self.step_witness,
            "s2d": self.step_s2d,
            "volumes": self.step_volumes,
        }

    # ------------------------------------------------------------------
    # Node information
    # ------------------------------------------------------------------

    async def outputs(self) -> TerraformOutputs:
        """Terraform outputs, read on first use when provision was skipped."""
        if self._outputs is None:
            self._outputs = await self.terraform.outputs()
        if not self._outputs.nodes:
            raise StepFailedError("provision", "terraform outputs list no nodes; run the provision step first")
        return self._outputs

    async def hosts(self) -> List[str]:
        return [n.public_ip for n in (await self.outputs()).nodes]

    async def node_names(self) -> List[str]:
        return [n.name for n in (await self.outputs()).nodes]

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def step_provision(self) -> StepResult:
        """
        terraform init + apply.

        With auto_approve off the plan is saved first and shown to the
        operator through the confirm callback; the saved plan is what gets
        applied. Without a callback (deploy --yes) the saved plan is applied
        directly.
        """
        await self.terraform.init()
        if self.config.terraform.auto_approve:
            await self.terraform.apply()
        else:
            plan = await self.terraform.plan(out=PLAN_FILE)
            match = _PLAN_SUMMARY_RE.search(plan.stdout or "")
            summary = match.group(0).strip() if match else "plan saved"
            review = StepResult(
                name="provision",
                status=StepStatus.WARNING,
                message=f"Terraform {summary} (saved to {PLAN_FILE}); apply it?",
            )
            if self._confirm is not None and not self._confirm(review):
                return StepResult(
                    name="provision",
                    status=StepStatus.FAILED,
                    message=f"Terraform plan not approved; nothing applied ({summary})",
                )
            await self.terraform.apply(plan_file=PLAN_FILE)
        self._outputs = await self.terraform.outputs()
        nodes = ", ".join(f"{n.name}={n.public_ip}" for n in self._outputs.nodes)
        return StepResult(
            name="provision",
            status=StepStatus.SUCCESS,
            message=f"Resource group {self._outputs.resource_group}: {nodes}",
            details={"nodes": [vars(n) for n in self._outputs.nodes]},
        )

    async def step_wait_remoting(self) -> StepResult:
        results = []
        for host in await self.hosts():
            reachable = await self.client.wait_until_reachable(host)
            results.append(StepResult(
                name=f"wait:{host}",
                status=StepStatus.SUCCESS if reachable else StepStatus.FAILED,
                message="WinRM reachable" if reachable else f"WinRM on {host} never answered",
            ))
        return combine_results("wait-remoting", results)

    async def step_firewall(self) -> StepResult:
        rules = list(LAB_FIREWALL_RULES)
        rules += [FirewallRule.from_dict(extra) for extra in self.config.firewall.extra_rules]
        results = [await self.firewall.ensure_rules(host, rules) for host in await self.hosts()]
        return combine_results("firewall", results)

    async def step_remoting(self) -> StepResult:
        nodes = (await self.outputs()).nodes
        configurator = RemotingConfigurator(self.client)
        results = []
        for node in nodes:
            peers = []
            for other in nodes:
                if other.name != node.name:
                    peers += [other.name, other.private_ip]
            results.append(await configurator.configure_node(node.public_ip, peers=peers))
        return combine_results("remoting", results)

    async def step_wmi_permissions(self) -> StepResult:
        grants = self.config.wmi_grants
        if not grants:
            return StepResult(name="wmi-permissions", status=StepStatus.SKIPPED, message="No WMI grants configured")
        service = WmiPermissionService(self.client)
        results = [await service.ensure_grants(host, grants) for host in await self.hosts()]
        return combine_results("wmi-permissions", [r for r in results if r is not None])

    async def step_hyperv(self) -> StepResult:
        results = []
        for host in await self.hosts():
            feature = await self.hyperv.ensure_feature(host)
            results.append(feature)
            if feature.status == StepStatus.FAILED:
                break
            results.append(await self.hyperv.ensure_switch(host))
        return combine_results("hyperv", results)

    async def step_nat(self) -> StepResult:
        hosts = await self.hosts()
        results = [await self.hyperv.ensure_nat(host) for host in hosts]

        for index in range(self.config.guests.count):
            host = hosts[self.config.guest_node_index(index)]
            port = self.config.guest_ssh_port(index)
            rule = FirewallRule(f"NestedLab-Guest-SSH-{port}", f"NestedLab Guest SSH {port}", port)
            results.append(await self.firewall.ensure_rules(host, [rule]))
            state = await self.hyperv.ensure_port_mapping(host, port, self.config.guest_ip(index))
            results.append(StepResult(
                name=f"port-mapping:{host}:{port}",
                status=StepStatus.SUCCESS if state == "created" else StepStatus.SKIPPED,
                message=f"{port} -> {self.config.guest_ip(index)}:22 {state}",
            ))
        return combine_results("nat", results)

    async def step_iso(self) -> StepResult:
        results = [await self.hyperv.download_iso(host) for host in await self.hosts()]
        return combine_results("iso", results)

    async def step_guests(self) -> StepResult:
        if self.config.guests.count == 0:
            return StepResult(name="guests", status=StepStatus.SKIPPED, message="No guests configured")
        hosts = await self.hosts()
        key = read_public_key(self.config.guests.ssh_public_key_path)
        results = []
        for index, name in enumerate(self.config.guest_names()):
            host = hosts[self.config.guest_node_index(index)]
            kickstart = render_guest_kickstart(self.config, index, ssh_public_key=key)
            results.append(await self.hyperv.create_guest(host, name, kickstart))
        return combine_results("guests", results)

    async def step_guest_postinstall(self) -> StepResult:
        if not self.config.guests.run_postinstall or self.config.guests.count == 0:
            return StepResult(name="guest-postinstall", status=StepStatus.SKIPPED, message="Post-install disabled")
        hosts = await self.hosts()
        results = []
        for index, name in enumerate(self.config.guest_names()):
            host = hosts[self.config.guest_node_index(index)]
            port = self.config.guest_ssh_port(index)
            if not await self.provisioner.wait_for_ssh(host, port):
                results.append(StepResult(
                    name=f"postinstall:{name}",
                    status=StepStatus.FAILED,
                    message=f"SSH to {name} via {host}:{port} never came up",
                ))
                break
            results.append(await self.provisioner.run_postinstall(host, port, name))
        return combine_results("guest-postinstall", results)

    async def step_cluster_features(self) -> StepResult:
        return await self.cluster.install_features(await self.hosts())

    async def step_cluster_validate(self) -> StepResult:
        return await self.cluster.validate((await self.hosts())[0], await self.node_names())

    async def step_cluster_create(self) -> StepResult:
        return await self.cluster.create((await self.hosts())[0], await self.node_names())

    async def step_witness(self) -> StepResult:
        outputs = await self.outputs()
        return await self.cluster.configure_witness(
            outputs.nodes[0].public_ip, outputs.witness_storage_account, outputs.witness_storage_key,
        )

    async def step_s2d(self) -> StepResult:
        return await self.cluster.enable_s2d((await self.hosts())[0])

    async def step_volumes(self) -> StepResult:
        return await self.cluster.create_volumes((await self.hosts())[0])

    # ------------------------------------------------------------------
    # Runner
    # ------------------------------------------------------------------

    def select_steps(self, only: Optional[Sequence[str]] = None, start_at: Optional[str] = None) -> List[str]:
        unknown = [n for n in list(only or []) + ([start_at] if start_at else []) if n not in self.steps]
        if unknown:
            raise ValueError(f"Unknown step(s): {', '.join(unknown)}. Valid steps: {', '.join(STEP_NAMES)}")
        if only:
            return [n for n in STEP_NAMES if n in only]
        if start_at:
            return list(STEP_NAMES[STEP_NAMES.index(start_at):])
        return list(STEP_NAMES)

    async def run(
        self,
        only: Optional[Sequence[str]] = None,
        start_at: Optional[str] = None,
        confirm: Optional[ConfirmCallback] = None,
    ) -> WorkflowReport:
        """
        Run the selected steps strictly in order.

        Args:
            only: Run just these steps (still in workflow order)
            start_at: Skip everything before this step
            confirm: Called with a WARNING result; returning False stops the run

        Returns:
            WorkflowReport with one entry per step that ran
        """
        selected = self.select_steps(only, start_at)
        report = WorkflowReport()
        self._confirm = confirm

        for position, name in enumerate(selected, start=1):
            logger.info(log_message(
                f"[{position}/{len(selected)}] {name}", LogCategory.WORKFLOW, LogLevel.RUNNING,
            ))
            start = time.monotonic()
            try:
                result = await self.steps[name]()
            except Exception as e:
                logger.error("Step %s raised %s: %s", name, type(e).__name__, e,
                             exc_info=logger.isEnabledFor(logging.DEBUG))
                result = StepResult(name=name, status=StepStatus.FAILED, message=str(e) or type(e).__name__)
            result.name = name
            result.duration_ms = int((time.monotonic() - start) * 1000)
            report.add(result)

            if result.status == StepStatus.FAILED:
                logger.error(log_message(f"{name} failed: {result.message}", LogCategory.WORKFLOW, LogLevel.ERROR))
                report.events.append(create_error_dict(f"{name} failed: {result.message}", LogCategory.WORKFLOW))
                report.stopped_at = name
                break
            if result.status == StepStatus.WARNING:
                logger.warning(log_message(f"{name}: {result.message}", LogCategory.WORKFLOW, LogLevel.WARNING))
                report.events.append(create_status_dict(f"{name}: {result.message}", LogCategory.WORKFLOW, LogLevel.WARNING, done=True))
                if confirm is not None and not confirm(result):
                    logger.info(log_message(f"Stopped after {name} at operator request", LogCategory.WORKFLOW, LogLevel.SKIPPED))
                    report.stopped_at = name
                    break
                continue

            level = LogLevel.SKIPPED if result.status == StepStatus.SKIPPED else LogLevel.SUCCESS
            logger.info(log_message(f"{name}: {result.message}", LogCategory.WORKFLOW, level))
            report.events.append(create_status_dict(f"{name}: {result.message}", LogCategory.WORKFLOW, level, done=True))

        if report.stopped_at is None and report.steps:
            report.events.append(create_success_dict(f"{len(report.steps)} step(s) completed", LogCategory.WORKFLOW))

        return report

    async def destroy(self) -> StepResult:
        start = time.monotonic()
        logger.info(log_message("Destroying lab resources", LogCategory.TERRAFORM, LogLevel.RUNNING))
        await self.terraform.destroy(auto_approve=True)
        self._outputs = None
        return StepResult(
            name="destroy",
            status=StepStatus.SUCCESS,
            message="terraform destroy completed",
            duration_ms=int((time.monotonic() - start) * 1000),
        )
