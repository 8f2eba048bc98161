"""
Tests for the entctl command line interface.
"""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from entitlement_engine.cli import entctl
from entitlement_engine.cli.entctl import cli
from entitlement_engine.connectors.procurement import MockProcurementGateway
from entitlement_engine.errors import UpstreamError

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


@pytest.fixture
def config_file(tmp_path):
    state_file = tmp_path / "accounts.json"
    state_file.write_text(json.dumps({"projects": {"demo-provider": {
        "acc-1": {
            "email": "analyst@example.com",
            "policies": [],
            "marketplace": [{"accountName": "providers/demo-provider/accounts/acct-001"}],
        }
    }}}))
    path = tmp_path / "engine.yaml"
    path.write_text("\n".join([
        f"state_file: {state_file}",
        f"policy_file: {CONFIG_DIR / 'policies.yaml'}",
        f"mock_entitlements_file: {CONFIG_DIR / 'entitlements.json'}",
        f"audit_dir: {tmp_path / 'audit'}",
    ]))
    return path


@pytest.fixture
def runner(monkeypatch):
    # wide enough that table cells are not wrapped
    monkeypatch.setattr(entctl.console, "width", 250)
    return CliRunner()


class TestEntctl:
    """Tests for entctl commands."""

    def test_list(self, runner, config_file):
        result = runner.invoke(cli, ["--config", str(config_file), "list", "demo-provider"])

        assert result.exit_code == 0
        assert "pol-basic" in result.output

    def test_approve(self, runner, config_file):
        result = runner.invoke(cli, [
            "--config", str(config_file), "approve", "demo-provider",
            "providers/demo-provider/entitlements/ent-001",
            "--account-id", "acc-1", "--policy-id", "pol-basic",
        ])

        assert result.exit_code == 0
        assert "APPROVED" in result.output

    def test_approve_unknown_account_fails(self, runner, config_file):
        result = runner.invoke(cli, [
            "--config", str(config_file), "approve", "demo-provider",
            "providers/demo-provider/entitlements/ent-001",
            "--account-id", "ghost", "--policy-id", "pol-basic",
        ])

        assert result.exit_code == 1
        assert "Failed to approve entitlement" in result.output

    def test_auto_approve_and_audit_trail(self, runner, config_file):
        result = runner.invoke(cli, ["--config", str(config_file), "auto-approve",
                                     "demo-provider", "ent-001"])
        assert result.exit_code == 0
        assert "APPROVED" in result.output

        result = runner.invoke(cli, ["--config", str(config_file), "audit-trail", "demo-provider"])
        assert result.exit_code == 0
        assert "approve" in result.output

    def test_auto_approve_failure_exits_non_zero(self, runner, config_file, monkeypatch):
        async def reject_approval(gateway, name):
            raise UpstreamError("procurement unavailable")

        monkeypatch.setattr(MockProcurementGateway, "approve_entitlement", reject_approval)

        result = runner.invoke(cli, ["--config", str(config_file), "auto-approve",
                                     "demo-provider", "ent-001"])

        assert result.exit_code == 1
        assert "APPROVAL_FAILED" in result.output

    def test_remove_unknown_account(self, runner, config_file):
        result = runner.invoke(cli, ["--config", str(config_file), "remove",
                                     "demo-provider", "ghost", "pol-basic"])

        assert result.exit_code == 0
        assert "ACCOUNT_NOT_FOUND" in result.output
