"""
nestedlab - command line entry point

Deploys and inspects the two-node nested Hyper-V / S2D lab in Azure.

Commands:
  deploy          Run the full workflow (or --only / --start-at a step)
  destroy         terraform destroy
  plan            terraform plan
  outputs         Show terraform outputs (nodes, witness account)
  remoting        Configure WinRM/CredSSP on given hosts
  wmi-permission  Grant, deny or revoke WMI namespace access
  firewall        Create (or --remove) the lab firewall rules
  cluster         Cluster status / validation
  diagnose        Read-only health report
  kickstart       Render a guest kickstart file

Exit codes: 0 ok, 1 failure, 2 configuration or usage error, 130 interrupted.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from nestedlab.config import LabConfig, load_config
from nestedlab.errors import ConfigError, LabError
from nestedlab.schemas.models import StepResult, StepStatus
from nestedlab.services.cluster import ClusterService
from nestedlab.services.diagnostics import DiagnosticsService, format_report
from nestedlab.services.firewall import LAB_FIREWALL_RULES, FirewallManager
from nestedlab.services.guest_provisioner import GuestProvisioner
from nestedlab.services.kickstart import render_guest_kickstart
from nestedlab.services.lab_workflow import STEP_NAMES, LabWorkflow, cluster_client_for
from nestedlab.services.remote_client import get_remote_client
from nestedlab.services.terraform import TerraformRunner
from nestedlab.services.winrm_setup import RemotingConfigurator
from nestedlab.services.wmi_permissions import WmiPermissionService


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

logger = logging.getLogger("nestedlab.cli")


# ============================================================================
# Logging
# ============================================================================

def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Configure the nestedlab namespace logger without touching the root logger."""
    formatter = logging.Formatter("[%(asctime)s] %(name)s - %(levelname)s - %(message)s", datefmt="%H:%M:%S")

    lab_logger = logging.getLogger("nestedlab")
    if not lab_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        lab_logger.addHandler(handler)
        lab_logger.propagate = False
    if log_file:
        path = os.path.abspath(log_file)
        if not any(isinstance(h, logging.FileHandler) and h.baseFilename == path for h in lab_logger.handlers):
            file_handler = logging.FileHandler(path, encoding="utf-8")
            file_handler.setFormatter(formatter)
            file_handler.setLevel(logging.DEBUG)
            lab_logger.addHandler(file_handler)
    lab_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Silence noisy transport logs
    for noisy in ("httpx", "pypsrp", "requests_credssp", "spnego", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ============================================================================
# Arguments
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nestedlab", description="Nested Hyper-V S2D lab in Azure")
    parser.add_argument("--config", help="Lab config YAML (default: $NESTEDLAB_CONFIG or ./config.yaml)")
    parser.add_argument("--env-file", help="dotenv file with secrets (default: .env.secret beside the config)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--log-file", help="Also write a debug log to this file")

    sub = parser.add_subparsers(dest="command", required=True)

    deploy = sub.add_parser("deploy", help="Run the deploy workflow")
    deploy.add_argument("--only", nargs="+", metavar="STEP", choices=STEP_NAMES, help="Run only these steps")
    deploy.add_argument("--start-at", metavar="STEP", choices=STEP_NAMES, help="Resume from this step")
    deploy.add_argument("--yes", action="store_true", help="Continue past warnings without asking")
    deploy.add_argument("--report", help="Write the step report as JSON to this file")

    destroy = sub.add_parser("destroy", help="Destroy all lab resources")
    destroy.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    sub.add_parser("plan", help="terraform plan")
    sub.add_parser("outputs", help="Show terraform outputs")

    remoting = sub.add_parser("remoting", help="Configure WinRM/CredSSP on hosts")
    remoting.add_argument("hosts", nargs="+", metavar="HOST")
    remoting.add_argument("--no-https", action="store_true", help="Skip the HTTPS listener")
    remoting.add_argument("--no-credssp", action="store_true", help="Skip CredSSP roles")

    wmi = sub.add_parser("wmi-permission", help="Edit a WMI namespace DACL")
    wmi.add_argument("host", metavar="HOST")
    wmi.add_argument("--account", required=True, help="Account or SID")
    wmi.add_argument("--namespace", default="root/cimv2")
    wmi.add_argument("--permission", nargs="+", default=["Enable", "RemoteAccess"], metavar="NAME")
    wmi.add_argument("--deny", action="store_true", help="Write a deny ACE")
    wmi.add_argument("--no-inherit", action="store_true", help="Do not apply to child namespaces")
    wmi.add_argument("--revoke", action="store_true", help="Remove the account's explicit ACEs")

    firewall = sub.add_parser("firewall", help="Create the lab firewall rules")
    firewall.add_argument("hosts", nargs="+", metavar="HOST")
    firewall.add_argument("--remove", action="store_true", help="Remove the rules instead")

    cluster = sub.add_parser("cluster", help="Cluster status and validation")
    cluster.add_argument("action", choices=("status", "validate"))

    diagnose = sub.add_parser("diagnose", help="Health report")
    diagnose.add_argument("--guests", action="store_true", help="Also check cloud-init on the guests")
    diagnose.add_argument("--json", action="store_true", help="Emit JSON instead of a table")

    kickstart = sub.add_parser("kickstart", help="Render a guest kickstart")
    kickstart.add_argument("--version", choices=("v1", "v2"), help="Template version (default: from config)")
    kickstart.add_argument("--index", type=int, default=0, help="Guest index, 0-based")
    kickstart.add_argument("--output", help="Write to this file instead of stdout")

    return parser


# ============================================================================
# Helpers
# ============================================================================

def prompt_continue(result: StepResult) -> bool:
    try:
        answer = input(f"\n⚠️  {result.name}: {result.message}\nContinue? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def print_step(result: StepResult) -> None:
    print(json.dumps(result.to_dict(), indent=2, default=str))


def exit_code_for(results: List[StepResult]) -> int:
    return EXIT_FAILED if any(r.status == StepStatus.FAILED for r in results) else EXIT_OK


# ============================================================================
# Commands
# ============================================================================

async def cmd_deploy(args: argparse.Namespace, config: LabConfig) -> int:
    workflow = LabWorkflow(config)
    report = await workflow.run(
        only=args.only,
        start_at=args.start_at,
        confirm=None if args.yes else prompt_continue,
    )
    if args.report:
        Path(args.report).write_text(json.dumps(report.to_dict(), indent=2, default=str), encoding="utf-8")
        logger.info("Report written to %s", args.report)

    for step in report.steps:
        print(f"{step.status.value:<8} {step.name:<18} {step.message}")
    if report.stopped_at:
        print(f"Stopped at {report.stopped_at}; resume with --start-at {report.stopped_at}")
        return EXIT_FAILED
    return EXIT_OK


async def cmd_destroy(args: argparse.Namespace, config: LabConfig) -> int:
    if not args.yes:
        try:
            answer = input(f"Destroy resource group '{config.azure.resource_group}' and everything in it? [y/N] ")
        except EOFError:
            answer = ""
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted.")
            return EXIT_FAILED
    runner = TerraformRunner(config)
    await runner.init()
    result = await LabWorkflow(config, terraform=runner).destroy()
    print(result.message)
    return EXIT_OK


async def cmd_plan(args: argparse.Namespace, config: LabConfig) -> int:
    runner = TerraformRunner(config)
    await runner.init()
    result = await runner.plan()
    print(result.stdout)
    return EXIT_OK


async def cmd_outputs(args: argparse.Namespace, config: LabConfig) -> int:
    outputs = await TerraformRunner(config).outputs()
    print(json.dumps({
        "resource_group": outputs.resource_group,
        "nodes": [vars(n) for n in outputs.nodes],
        "witness_storage_account": outputs.witness_storage_account,
    }, indent=2))
    return EXIT_OK


async def cmd_remoting(args: argparse.Namespace, config: LabConfig) -> int:
    configurator = RemotingConfigurator(get_remote_client(config))
    results = []
    for host in args.hosts:
        peers = [h for h in args.hosts if h != host]
        result = await configurator.configure_node(
            host, peers=peers, enable_https=not args.no_https, credssp=not args.no_credssp,
        )
        print_step(result)
        results.append(result)
    return exit_code_for(results)


async def cmd_wmi_permission(args: argparse.Namespace, config: LabConfig) -> int:
    service = WmiPermissionService(get_remote_client(config))
    if args.revoke:
        result = await service.revoke(args.host, args.namespace, args.account)
    else:
        result = await service.grant(
            args.host, args.namespace, args.account, args.permission,
            allow=not args.deny, inherit=not args.no_inherit,
        )
    print_step(result)
    return exit_code_for([result])


async def cmd_firewall(args: argparse.Namespace, config: LabConfig) -> int:
    manager = FirewallManager(get_remote_client(config))
    results = []
    for host in args.hosts:
        if args.remove:
            result = await manager.remove_rules(host, [r.name for r in LAB_FIREWALL_RULES])
        else:
            result = await manager.ensure_rules(host)
        print_step(result)
        results.append(result)
    return exit_code_for(results)


async def cmd_cluster(args: argparse.Namespace, config: LabConfig) -> int:
    outputs = await TerraformRunner(config).outputs()
    service = ClusterService(cluster_client_for(config), config.cluster)
    host = outputs.nodes[0].public_ip
    if args.action == "status":
        print(json.dumps(await service.status(host), indent=2))
        return EXIT_OK
    result = await service.validate(host, [n.name for n in outputs.nodes])
    print_step(result)
    return exit_code_for([result])


async def cmd_diagnose(args: argparse.Namespace, config: LabConfig) -> int:
    outputs = await TerraformRunner(config).outputs()
    service = DiagnosticsService(get_remote_client(config), config, cluster_client_for(config))
    report = await service.run([n.public_ip for n in outputs.nodes])
    if args.guests:
        report.extend(await service.run_guests(outputs.nodes, GuestProvisioner(config.guests)))

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(format_report(report))
    return EXIT_FAILED if report.worst_status == "fail" else EXIT_OK


async def cmd_kickstart(args: argparse.Namespace, config: LabConfig) -> int:
    try:
        text = render_guest_kickstart(config, args.index, version=args.version)
    except IndexError as e:
        print(f"❌ {e}", file=sys.stderr)
        return EXIT_USAGE
    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
        logger.info("Kickstart for guest %d written to %s", args.index, args.output)
    else:
        print(text)
    return EXIT_OK


COMMANDS = {
    "deploy": cmd_deploy,
    "destroy": cmd_destroy,
    "plan": cmd_plan,
    "outputs": cmd_outputs,
    "remoting": cmd_remoting,
    "wmi-permission": cmd_wmi_permission,
    "firewall": cmd_firewall,
    "cluster": cmd_cluster,
    "diagnose": cmd_diagnose,
    "kickstart": cmd_kickstart,
}


# ============================================================================
# Entry point
# ============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return EXIT_OK if e.code == 0 else EXIT_USAGE

    setup_logging(args.verbose, args.log_file)

    try:
        config = load_config(args.config, args.env_file)
        return asyncio.run(COMMANDS[args.command](args, config))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_USAGE
    except ValueError as e:
        logger.error("%s", e)
        return EXIT_USAGE
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED
    except LabError as e:
        logger.error("%s", e)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
