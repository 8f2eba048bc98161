"""
Tests for the account store, policy catalog, settings and audit trail.
"""

import json
import os

import pytest

from entitlement_engine.audit import AuditLogger
from entitlement_engine.config import load_settings
from entitlement_engine.errors import UpstreamError
from entitlement_engine.models import Account
from entitlement_engine.stores import AccountStateStore, PolicyCatalog

PROJECT_ID = "p1"


class TestAccountModel:
    """Tests for policy list normalization."""

    def test_legacy_policy_entries_are_normalized(self):
        account = Account.model_validate({
            "accountId": "a1",
            "policies": [{"policyId": "P"}, "Q", "", "  ", None, "P", {"name": "no id"}],
        })
        assert account.policies == ["P", "Q"]

    def test_missing_policies(self):
        assert Account.model_validate({"accountId": "a1", "policies": None}).policies == []
        assert Account(account_id="a1").policies == []

    def test_camel_case_round_trip(self):
        account = Account(account_id="a1", created_by="u@x.com",
                          marketplace=[{"accountName": "acct-1"}])
        dumped = account.model_dump(by_alias=True)
        assert dumped["accountId"] == "a1"
        assert dumped["createdBy"] == "u@x.com"
        assert account.marketplace_account_names() == ["acct-1"]


class TestAccountStateStore:
    """Tests for AccountStateStore."""

    @pytest.mark.asyncio
    async def test_reads_return_copies(self):
        store = AccountStateStore()
        store.add_account(PROJECT_ID, {"accountId": "a1", "policies": ["P"]})

        account = (await store.get_account(PROJECT_ID, "a1")).data
        account.policies.append("Q")

        stored = (await store.get_account(PROJECT_ID, "a1")).data
        assert stored.policies == ["P"]

    @pytest.mark.asyncio
    async def test_missing_account(self):
        result = await AccountStateStore().get_account(PROJECT_ID, "ghost")
        assert not result
        assert result.data is None

    @pytest.mark.asyncio
    async def test_find_marketplace_account(self):
        store = AccountStateStore()
        store.add_account(PROJECT_ID, {"accountId": "a1", "marketplace": [{"accountName": "acct-1"}]})
        store.add_account("p2", {"accountId": "a2", "marketplace": [{"accountName": "acct-2"}]})

        found = await store.find_marketplace_account(PROJECT_ID, "acct-1")
        assert found.data.account_id == "a1"
        assert not await store.find_marketplace_account(PROJECT_ID, "acct-2")

    @pytest.mark.asyncio
    async def test_state_is_persisted(self, tmp_path):
        state_file = tmp_path / "accounts.json"
        store = AccountStateStore(state_file)
        store.add_account(PROJECT_ID, {"accountId": "a1", "email": "u@x.com"})
        account = (await store.get_account(PROJECT_ID, "a1")).data
        account.policies.append("P")
        await store.create_or_update_account(PROJECT_ID, "a1", account)

        reloaded = AccountStateStore(state_file)

        stored = (await reloaded.get_account(PROJECT_ID, "a1")).data
        assert stored.policies == ["P"]
        assert stored.email == "u@x.com"
        assert "last_updated" in json.loads(state_file.read_text())

    def test_legacy_state_file_is_normalized(self, tmp_path):
        state_file = tmp_path / "accounts.json"
        state_file.write_text(json.dumps({
            "projects": {PROJECT_ID: {"a1": {"policies": [{"policyId": "P"}, "", None]}}}
        }))

        store = AccountStateStore(state_file)

        assert store.get_all_accounts(PROJECT_ID)[0].policies == ["P"]

    def test_accounts_summary(self):
        store = AccountStateStore()
        store.add_account(PROJECT_ID, {"accountId": "a1", "policies": ["P"]})
        store.add_account(PROJECT_ID, {"accountId": "a2", "policies": ["P", "Q"]})

        summary = store.get_accounts_summary()["projects"][PROJECT_ID]

        assert summary["total_accounts"] == 2
        assert summary["accounts_by_policy"] == {"P": 2, "Q": 1}

    def test_invalid_state_file_is_not_overwritten(self, tmp_path):
        """A record that fails validation stops the load and leaves the file intact."""
        state_file = tmp_path / "accounts.json"
        original = json.dumps({"projects": {
            "good": {"a1": {"policies": ["P"]}},
            "bad": {"a2": {"marketplace": [{"notAnAccountName": "x"}]}},
        }})
        state_file.write_text(original)

        with pytest.raises(UpstreamError, match="Failed to load account state"):
            AccountStateStore(state_file)

        assert state_file.read_text() == original

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_record(self, tmp_path, mocker):
        store = AccountStateStore(tmp_path / "accounts.json")
        store.add_account(PROJECT_ID, {"accountId": "a1", "policies": ["P"]})
        account = (await store.get_account(PROJECT_ID, "a1")).data
        account.policies.append("Q")
        mocker.patch.object(store, "_save_state", side_effect=UpstreamError("disk full"))

        with pytest.raises(UpstreamError):
            await store.create_or_update_account(PROJECT_ID, "a1", account)

        stored = (await store.get_account(PROJECT_ID, "a1")).data
        assert stored.policies == ["P"]

    def test_failed_write_drops_new_record(self, tmp_path, mocker):
        store = AccountStateStore(tmp_path / "accounts.json")
        mocker.patch.object(store, "_save_state", side_effect=UpstreamError("disk full"))

        with pytest.raises(UpstreamError):
            store.add_account(PROJECT_ID, {"accountId": "a1"})

        assert store.get_all_accounts(PROJECT_ID) == []


class TestPolicyCatalog:
    """Tests for PolicyCatalog."""

    @pytest.fixture
    def policy_file(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text("""
projects:
  p1:
    policies:
      - policyId: pol-basic
        name: Basic
        marketplace:
          solutionId: X
          planId: basic
          enableAutoApprove: true
      - policyId: pol-basic-dup
        marketplace:
          solutionId: X
          planId: basic
      - policyId: pol-internal
        name: Internal
""")
        return path

    @pytest.mark.asyncio
    async def test_loads_yaml_catalog(self, policy_file):
        catalog = PolicyCatalog(policy_file)

        assert [p.policy_id for p in catalog.get_policies(PROJECT_ID)] == [
            "pol-basic", "pol-basic-dup", "pol-internal"
        ]
        policy = (await catalog.get_policy(PROJECT_ID, "pol-internal")).data
        assert policy.marketplace is None

    @pytest.mark.asyncio
    async def test_first_marketplace_policy_wins(self, policy_file):
        catalog = PolicyCatalog(policy_file)

        result = await catalog.find_marketplace_policy(PROJECT_ID, "X", "basic")

        assert result.data.policy_id == "pol-basic"
        assert result.data.marketplace.enable_auto_approve is True

    @pytest.mark.asyncio
    async def test_unknown_sku_and_project(self, policy_file):
        catalog = PolicyCatalog(policy_file)

        assert not await catalog.find_marketplace_policy(PROJECT_ID, "X", "gold")
        assert not await catalog.find_marketplace_policy("p2", "X", "basic")

    def test_missing_file_gives_empty_catalog(self, tmp_path):
        catalog = PolicyCatalog(tmp_path / "missing.yaml")
        assert catalog.get_policies(PROJECT_ID) == []

    def test_reload_picks_up_changes(self, policy_file):
        catalog = PolicyCatalog(policy_file)
        policy_file.write_text("projects:\n  p1:\n    policies:\n      - policyId: only\n")

        catalog.reload_config()

        assert [p.policy_id for p in catalog.get_policies(PROJECT_ID)] == ["only"]


class TestSettings:
    """Tests for load_settings."""

    @pytest.fixture(autouse=True)
    def clean_environment(self, monkeypatch):
        for key in list(os.environ):
            if key.startswith("ENTITLEMENT_ENGINE_"):
                monkeypatch.delenv(key)

    def test_defaults(self):
        settings = load_settings()

        assert settings.dataset_id == "datashare"
        assert settings.policy_view_id == "currentPolicy"
        assert settings.account_view_id == "currentAccount"
        assert settings.mock_mode is True

    def test_yaml_and_environment_overrides(self, tmp_path, monkeypatch):
        config_file = tmp_path / "engine.yaml"
        config_file.write_text("dataset_id: analytics\nprocurement:\n  timeout_seconds: 5\n")
        monkeypatch.setenv("ENTITLEMENT_ENGINE_POLICY_VIEW_ID", "policiesView")
        monkeypatch.setenv("ENTITLEMENT_ENGINE_MOCK_MODE", "false")
        monkeypatch.setenv("ENTITLEMENT_ENGINE_PROCUREMENT__ACCESS_TOKEN", "token")

        settings = load_settings(config_file)

        assert settings.dataset_id == "analytics"
        assert settings.policy_view_id == "policiesView"
        assert settings.mock_mode is False
        assert settings.procurement.timeout_seconds == 5
        assert settings.procurement.access_token == "token"

    def test_environment_wins_over_yaml(self, tmp_path, monkeypatch):
        config_file = tmp_path / "engine.yaml"
        config_file.write_text("dataset_id: analytics\n")
        monkeypatch.setenv("ENTITLEMENT_ENGINE_DATASET_ID", "fromenv")

        assert load_settings(config_file).dataset_id == "fromenv"

    def test_empty_section_with_environment_override(self, tmp_path, monkeypatch):
        """A bare ``procurement:`` key falls back to defaults plus the environment."""
        config_file = tmp_path / "engine.yaml"
        config_file.write_text("procurement:\n")
        monkeypatch.setenv("ENTITLEMENT_ENGINE_PROCUREMENT__ACCESS_TOKEN", "t")

        settings = load_settings(config_file)

        assert settings.procurement.access_token == "t"
        assert settings.procurement.timeout_seconds == 30

    def test_missing_file_uses_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "missing.yaml")
        assert settings.dataset_id == "datashare"


class TestAuditLogger:
    """Tests for AuditLogger."""

    def test_filters_and_order(self, tmp_path):
        audit_logger = AuditLogger(tmp_path / "audit")
        audit_logger.record(PROJECT_ID, "approve", True, account_id="a1", policy_id="P")
        audit_logger.record(PROJECT_ID, "remove", True, account_id="a1", policy_id="P")
        audit_logger.record("p2", "approve", False, account_id="a2", error_message="boom")

        assert [r.operation for r in audit_logger.get_events(project_id=PROJECT_ID)] == [
            "remove", "approve"
        ]
        assert len(audit_logger.get_events(operation="approve")) == 2
        assert audit_logger.get_events(account_id="a2")[0].error_message == "boom"
        assert len(audit_logger.get_events(limit=1)) == 1

    def test_records_are_json_lines(self, tmp_path):
        audit_logger = AuditLogger(tmp_path / "audit")
        record = audit_logger.record(PROJECT_ID, "reject", True, entitlement_name="E",
                                     metadata={"reason": "no"})

        lines = next((tmp_path / "audit").glob("audit_*.jsonl")).read_text().splitlines()

        assert json.loads(lines[0])["id"] == record.id
        assert json.loads(lines[0])["metadata"] == {"reason": "no"}
