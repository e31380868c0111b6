"""
Tests for the read-only diagnostics.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import remote_failure
from nestedlab.errors import RemoteAuthenticationError
from nestedlab.schemas.models import DiagnosticReport, NodeInfo
from nestedlab.services.diagnostics import (
    DiagnosticsService,
    _inventory_script,
    add_cluster_checks,
    add_node_checks,
    format_report,
)
from nestedlab.services.firewall import LAB_FIREWALL_RULES
from nestedlab.services.helpers.powershell_utils import PowerShellValidator

RULES = [r.name for r in LAB_FIREWALL_RULES]


def healthy_node():
    return {
        "Listeners": ["HTTP", "HTTPS"],
        "CredSSP": True,
        "Rules": {name: True for name in RULES},
        "HyperV": True,
        "Switch": True,
        "Nat": True,
        "Iso": True,
    }


def healthy_cluster():
    return {
        "Name": "s2dlab-clu",
        "Nodes": [{"Name": "nestedlab-node1", "State": "Up"}, {"Name": "nestedlab-node2", "State": "Up"}],
        "S2DState": "Enabled",
        "PoolHealth": "Healthy",
        "Volumes": [{"Name": "Volume01", "Health": "Healthy", "SizeGB": 100}],
    }


def statuses(report):
    return {c.name: c.status for c in report.checks}


class TestNodeChecks:
    def test_healthy(self):
        report = DiagnosticReport()
        add_node_checks(report, "h", healthy_node(), RULES)
        assert report.worst_status == "ok"
        assert len(report.checks) == 7 + len(RULES)

    def test_single_listener_string(self):
        data = healthy_node()
        data["Listeners"] = "HTTP"
        report = DiagnosticReport()
        add_node_checks(report, "h", data, RULES)
        checks = statuses(report)
        assert checks["winrm-http"] == "ok"
        assert checks["winrm-https"] == "warn"

    def test_missing_and_disabled_rules(self):
        data = healthy_node()
        data["Rules"]["NestedLab-SMB"] = None
        data["Rules"]["NestedLab-RPC-EPMAP"] = False
        report = DiagnosticReport()
        add_node_checks(report, "h", data, RULES)
        checks = statuses(report)
        assert checks["firewall:NestedLab-SMB"] == "fail"
        assert checks["firewall:NestedLab-RPC-EPMAP"] == "warn"

    def test_empty_inventory(self):
        report = DiagnosticReport()
        add_node_checks(report, "h", {}, RULES)
        checks = statuses(report)
        assert checks["winrm-http"] == "fail"
        assert checks["hyperv-feature"] == "fail"
        assert checks["credssp-server"] == "warn"

    def test_inventory_script_is_balanced(self, lab_config):
        assert PowerShellValidator.validate_syntax(_inventory_script(lab_config, RULES)) == []


class TestClusterChecks:
    def test_healthy(self, lab_config):
        report = DiagnosticReport()
        add_cluster_checks(report, "h", healthy_cluster(), lab_config)
        assert report.worst_status == "ok"
        assert statuses(report)["volume:Volume01"] == "ok"

    def test_no_cluster(self, lab_config):
        report = DiagnosticReport()
        add_cluster_checks(report, "h", {"Name": None}, lab_config)
        assert [(c.name, c.status) for c in report.checks] == [("cluster", "fail")]

    def test_degraded(self, lab_config):
        status = healthy_cluster()
        status["Nodes"][1]["State"] = "Down"
        status["PoolHealth"] = "Warning"
        status["Volumes"] = []
        report = DiagnosticReport()
        add_cluster_checks(report, "h", status, lab_config)
        checks = statuses(report)
        assert checks["cluster-node:nestedlab-node2"] == "fail"
        assert checks["pool"] == "warn"
        assert checks["volume:Volume01"] == "fail"

    def test_s2d_disabled_skips_storage(self, lab_config):
        lab_config.cluster.enable_s2d = False
        report = DiagnosticReport()
        add_cluster_checks(report, "h", healthy_cluster(), lab_config)
        assert "s2d" not in statuses(report)


class TestFormatReport:
    def test_empty(self):
        assert format_report(DiagnosticReport()) == "No checks ran."

    def test_table(self):
        report = DiagnosticReport()
        report.add("20.1.1.1", "winrm-http", "ok", "HTTP")
        report.add("20.1.1.1", "nat", "fail", "NetNat")
        lines = format_report(report).splitlines()
        assert lines[0].startswith("✅ 20.1.1.1")
        assert lines[1].startswith("❌ 20.1.1.1")
        assert lines[-1] == "ok=1 warn=0 fail=1"


class TestDiagnosticsService:
    @pytest.mark.asyncio
    async def test_run(self, fake_client, lab_config):
        fake_client.queue_json(healthy_node(), healthy_node(), healthy_cluster())
        report = await DiagnosticsService(fake_client, lab_config).run(["h1", "h2"])

        assert report.worst_status == "ok"
        assert [host for host, _, _ in fake_client.calls] == ["h1", "h2", "h1"]

    @pytest.mark.asyncio
    async def test_unreachable_node_is_a_check(self, fake_client, lab_config):
        fake_client.queue_json(remote_failure("WinRM timeout", "h1"))
        report = await DiagnosticsService(fake_client, lab_config).run(["h1"], include_cluster=False)
        assert [(c.name, c.status) for c in report.checks] == [("remoting", "fail")]

    @pytest.mark.asyncio
    async def test_cluster_failure_is_a_check(self, fake_client, lab_config):
        fake_client.queue_json(healthy_node(), remote_failure("The cluster service is not running", "h1"))
        report = await DiagnosticsService(fake_client, lab_config).run(["h1"])
        assert statuses(report)["cluster"] == "fail"

    @pytest.mark.asyncio
    async def test_cluster_checks_use_cluster_client(self, fake_client, lab_config):
        cluster_client = MagicMock()
        cluster_client.run_json = AsyncMock(return_value=healthy_cluster())
        service = DiagnosticsService(fake_client, lab_config, cluster_client)
        report = await service.check_cluster("h1")
        assert report.worst_status == "ok"
        cluster_client.run_json.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cluster_authentication_failure_is_a_check(self, fake_client, lab_config):
        cluster_client = MagicMock()
        cluster_client.run_json = AsyncMock(
            side_effect=RemoteAuthenticationError("CredSSP TSRequest error 0xC000006D", "h1")
        )
        service = DiagnosticsService(fake_client, lab_config, cluster_client)
        report = await service.check_cluster("h1")

        assert [(c.name, c.status) for c in report.checks] == [("cluster", "fail")]
        assert "0xC000006D" in report.checks[0].detail

    @pytest.mark.asyncio
    async def test_run_guests(self, fake_client, lab_config):
        provisioner = MagicMock()
        provisioner.diagnose_cloud_init = AsyncMock(return_value=DiagnosticReport())
        nodes = [NodeInfo("n1", "20.1.1.1", "10.10.1.10"), NodeInfo("n2", "20.1.1.2", "10.10.1.11")]

        await DiagnosticsService(fake_client, lab_config).run_guests(nodes, provisioner)

        calls = [c.args for c in provisioner.diagnose_cloud_init.await_args_list]
        assert calls == [("20.1.1.1", 2200, "alma01"), ("20.1.1.2", 2201, "alma02")]

    @pytest.mark.asyncio
    async def test_run_guests_without_nodes(self, fake_client, lab_config):
        report = await DiagnosticsService(fake_client, lab_config).run_guests([], MagicMock())
        assert [(c.host, c.status) for c in report.checks] == [("alma01", "fail"), ("alma02", "fail")]
