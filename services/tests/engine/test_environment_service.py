"""Tests for environment provisioning: tier rules, idempotency, linked resources and error codes."""

import pytest

from secretsync.config import LinkedResourceMode, ProtectionBoundsConfig
from secretsync.context import SyncContext
from secretsync.errors import (
    LinkedResourceMissingError,
    ProtectionRuleValidationError,
    QuotaExhaustedError,
    RemoteRejectedError,
)
from secretsync.services import audit_service as audit
from secretsync.services.environment_service import (
    CODE_INVALID_NAME,
    CODE_LINKED_RESOURCE_NOT_FOUND,
    CODE_PERMISSION_DENIED,
    CODE_PROTECTION_RULE_CONFLICT,
    CODE_RATE_LIMIT_EXHAUSTED,
    CODE_REVIEWER_COUNT_INVALID,
    CODE_REVIEWER_NOT_FOUND,
    CODE_SECRET_CREATION_FAILED,
    CODE_WAIT_TIMER_INVALID,
    RESULT_CREATED,
    RESULT_UPDATED,
    STEP_CREATE_ENVIRONMENT,
    STEP_SECRETS,
    EnvironmentRequest,
    EnvironmentSecret,
    EnvironmentService,
    LinkedResources,
    ProtectionRules,
    environment_payload,
    error_code_for,
    validate_protection_rules,
)

from conftest import FAST_RETRY, rejected

BOUNDS = ProtectionBoundsConfig()
PROD_RULES = ProtectionRules(reviewer_ids=(101,))


class TestValidateProtectionRules:
    def test_dev_without_rules(self):
        validate_protection_rules("dev", ProtectionRules(), BOUNDS)

    def test_dev_drops_requested_rules(self):
        rules = ProtectionRules(reviewer_ids=(1,), required_reviewers=1, wait_timer_minutes=5)
        assert validate_protection_rules("dev", rules, BOUNDS) == ProtectionRules()

    def test_required_reviewers_within_given_ids(self):
        rules = ProtectionRules(reviewer_ids=(1, 2, 3), required_reviewers=2)
        assert validate_protection_rules("production", rules, BOUNDS) == rules

    def test_required_reviewers_exceeding_ids(self):
        with pytest.raises(ProtectionRuleValidationError) as exc_info:
            validate_protection_rules(
                "production", ProtectionRules(reviewer_ids=(1,), required_reviewers=2), BOUNDS
            )
        assert exc_info.value.code == CODE_REVIEWER_COUNT_INVALID

    @pytest.mark.parametrize("count", [-1, 7])
    def test_required_reviewers_out_of_bounds(self, count):
        rules = ProtectionRules(reviewer_ids=tuple(range(1, 7)), required_reviewers=count)
        with pytest.raises(ProtectionRuleValidationError) as exc_info:
            validate_protection_rules("production", rules, BOUNDS)
        assert exc_info.value.code == CODE_REVIEWER_COUNT_INVALID

    def test_staging_allows_one_reviewer(self):
        validate_protection_rules("staging", ProtectionRules(reviewer_ids=(1,)), BOUNDS)

    def test_staging_rejects_two_reviewers(self):
        with pytest.raises(ProtectionRuleValidationError):
            validate_protection_rules("staging", ProtectionRules(reviewer_ids=(1, 2)), BOUNDS)

    def test_staging_rejects_branch_restriction(self):
        with pytest.raises(ProtectionRuleValidationError):
            validate_protection_rules(
                "staging", ProtectionRules(restrict_to_main_branch=True), BOUNDS
            )

    def test_production_requires_reviewer(self):
        with pytest.raises(ProtectionRuleValidationError) as exc_info:
            validate_protection_rules("production", ProtectionRules(), BOUNDS)
        assert exc_info.value.code == CODE_REVIEWER_COUNT_INVALID

    def test_production_reviewer_upper_bound(self):
        validate_protection_rules("production", ProtectionRules(reviewer_ids=tuple(range(1, 7))), BOUNDS)
        with pytest.raises(ProtectionRuleValidationError) as exc_info:
            validate_protection_rules(
                "production", ProtectionRules(reviewer_ids=tuple(range(1, 8))), BOUNDS
            )
        assert exc_info.value.code == CODE_REVIEWER_COUNT_INVALID

    def test_duplicate_reviewers(self):
        with pytest.raises(ProtectionRuleValidationError, match="unique"):
            validate_protection_rules("production", ProtectionRules(reviewer_ids=(5, 5)), BOUNDS)

    def test_wait_timer_bound(self):
        validate_protection_rules(
            "production", ProtectionRules(reviewer_ids=(1,), wait_timer_minutes=43200), BOUNDS
        )
        with pytest.raises(ProtectionRuleValidationError) as exc_info:
            validate_protection_rules(
                "production", ProtectionRules(reviewer_ids=(1,), wait_timer_minutes=43201), BOUNDS
            )
        assert exc_info.value.code == CODE_WAIT_TIMER_INVALID

    def test_unknown_environment_name(self):
        with pytest.raises(ProtectionRuleValidationError) as exc_info:
            validate_protection_rules("qa", ProtectionRules(), BOUNDS)
        assert exc_info.value.code == CODE_INVALID_NAME


class TestEnvironmentPayload:
    def test_production_limits_to_protected_branches(self):
        payload = environment_payload("production", ProtectionRules(reviewer_ids=(7, 8), wait_timer_minutes=5))
        assert payload == {
            "wait_timer": 5,
            "reviewers": [{"type": "User", "id": 7}, {"type": "User", "id": 8}],
            "deployment_branch_policy": {"protected_branches": True, "custom_branch_policies": False},
        }

    def test_dev_clears_everything(self):
        payload = environment_payload("dev", ProtectionRules())
        assert payload == {"wait_timer": 0, "reviewers": [], "deployment_branch_policy": None}


class TestRulesSerialization:
    def test_protection_rules_from_dict(self):
        rules = ProtectionRules.from_dict({"reviewer_ids": ["12"], "wait_timer_minutes": "3"})
        assert rules == ProtectionRules(reviewer_ids=(12,), wait_timer_minutes=3)
        assert ProtectionRules.from_dict(None) == ProtectionRules()

    def test_required_reviewers_persisted(self):
        rules = ProtectionRules(reviewer_ids=(4, 5), required_reviewers=1)
        assert rules.to_dict()["required_reviewers"] == 1
        assert ProtectionRules.from_dict(rules.to_dict()) == rules

    def test_linked_resources_to_dict_drops_empty(self):
        linked = LinkedResources(neon_branch_id="br-1")
        assert linked.to_dict() == {"neon_branch_id": "br-1"}

    def test_secret_value_not_in_repr(self):
        assert "hunter2" not in repr(EnvironmentSecret("DB_URL", "hunter2"))


class TestErrorCodes:
    def test_forbidden(self):
        assert error_code_for(rejected(403), STEP_CREATE_ENVIRONMENT) == CODE_PERMISSION_DENIED

    def test_unknown_reviewer(self):
        exc = rejected(422, "Reviewer 99 not found")
        assert error_code_for(exc, STEP_CREATE_ENVIRONMENT) == CODE_REVIEWER_NOT_FOUND

    def test_other_unprocessable_on_create(self):
        assert error_code_for(rejected(422), STEP_CREATE_ENVIRONMENT) == CODE_PROTECTION_RULE_CONFLICT

    def test_secret_step(self):
        assert error_code_for(rejected(400), STEP_SECRETS) == CODE_SECRET_CREATION_FAILED


class TestProvisionEnvironment:
    async def test_create_then_update_is_idempotent(self, ctx, github, store, env_service):
        first = await env_service.provision_environment(ctx, "production", PROD_RULES)
        second = await env_service.provision_environment(ctx, "production", PROD_RULES)

        assert first.status == RESULT_CREATED
        assert second.status == RESULT_UPDATED
        assert first.remote_environment_id == second.remote_environment_id
        assert len(github.environments) == 1
        assert len(store.environments) == 1
        record = store.environments[("proj-1", "production")]
        assert record.status == "active"
        assert record.protection_rules["reviewer_ids"] == [101]

    async def test_dev_ignores_protection_rules(self, ctx, github, store, env_service):
        result = await env_service.provision_environment(
            ctx, "dev", ProtectionRules(reviewer_ids=(9,), wait_timer_minutes=10)
        )

        assert result.status == RESULT_CREATED
        assert github.environments["dev"]["payload"] == {
            "wait_timer": 0,
            "reviewers": [],
            "deployment_branch_policy": None,
        }
        assert store.environments[("proj-1", "dev")].protection_rules == ProtectionRules().to_dict()

    async def test_required_reviewer_count_stored(self, ctx, store, env_service):
        rules = ProtectionRules(reviewer_ids=(101, 102), required_reviewers=2)

        await env_service.provision_environment(ctx, "production", rules)

        record = store.environments[("proj-1", "production")]
        assert record.protection_rules["required_reviewers"] == 2

    async def test_payload_sent_to_github(self, ctx, github, env_service):
        await env_service.provision_environment(
            ctx, "staging", ProtectionRules(reviewer_ids=(9,), wait_timer_minutes=10)
        )
        payload = github.environments["staging"]["payload"]
        assert payload["reviewers"] == [{"type": "User", "id": 9}]
        assert payload["wait_timer"] == 10
        assert payload["deployment_branch_policy"] is None

    async def test_writes_environment_secrets_sealed(self, ctx, github, store, env_service):
        result = await env_service.provision_environment(
            ctx,
            "staging",
            secrets=[EnvironmentSecret("DATABASE_URL", "postgres://x"), EnvironmentSecret("API_KEY", "k")],
        )

        assert result.secrets_written == ("DATABASE_URL", "API_KEY")
        assert github.decrypt("environment:staging", "DATABASE_URL") == "postgres://x"
        entries = store.environments[("proj-1", "staging")].secrets
        assert [e["name"] for e in entries] == ["API_KEY", "DATABASE_URL"]
        assert all("value" not in e for e in entries)

    async def test_secret_entries_merge_across_runs(self, ctx, store, env_service):
        await env_service.provision_environment(ctx, "dev", secrets=[EnvironmentSecret("A_KEY", "1")])
        await env_service.provision_environment(ctx, "dev", secrets=[EnvironmentSecret("B_KEY", "2")])

        entries = store.environments[("proj-1", "dev")].secrets
        assert [e["name"] for e in entries] == ["A_KEY", "B_KEY"]

    async def test_invalid_rules_touch_nothing_remote(self, ctx, github, store, audit_sink, env_service):
        with pytest.raises(ProtectionRuleValidationError):
            await env_service.provision_environment(ctx, "production", ProtectionRules())

        assert github.calls == []
        assert store.environments == {}
        [entry] = audit_sink.by_operation(audit.OP_PROVISION)
        assert entry.status == audit.STATUS_FAILURE
        assert entry.metadata["failed_step"] == "validate"

    async def test_invalid_secret_name_rejected_before_writes(self, ctx, github, env_service):
        with pytest.raises(ValueError, match="Invalid secret name"):
            await env_service.provision_environment(
                ctx, "dev", secrets=[EnvironmentSecret("not-valid", "x")]
            )
        assert github.calls == []

    async def test_quota_refusal_before_create(self, ctx, github, env_service):
        github.remaining = 20
        with pytest.raises(QuotaExhaustedError):
            await env_service.provision_environment(ctx, "dev")
        assert "environment" not in [c[0] for c in github.calls]

    async def test_failed_secret_marks_environment_error(self, ctx, github, store, audit_sink, env_service):
        github.put_failures["environment:staging"] = [rejected(403, "Forbidden")]

        with pytest.raises(RemoteRejectedError):
            await env_service.provision_environment(
                ctx, "staging", secrets=[EnvironmentSecret("API_KEY", "k")]
            )

        record = store.environments[("proj-1", "staging")]
        assert record.status == "error"
        assert record.remote_environment_id == github.environments["staging"]["id"]
        entry = audit_sink.by_operation(audit.OP_PROVISION)[-1]
        assert entry.metadata["failed_step"] == "secrets"

        # Retrying with the same input converges
        result = await env_service.provision_environment(
            ctx, "staging", secrets=[EnvironmentSecret("API_KEY", "k")]
        )
        assert result.status == RESULT_UPDATED
        assert store.environments[("proj-1", "staging")].status == "active"

    async def test_success_audit_entry(self, ctx, audit_sink, env_service):
        await env_service.provision_environment(ctx, "production", PROD_RULES)

        [entry] = audit_sink.by_operation(audit.OP_PROVISION)
        assert entry.status == audit.STATUS_SUCCESS
        assert entry.affected_scopes == ["environment:production"]
        assert entry.metadata["result"] == RESULT_CREATED
        assert entry.metadata["reviewer_ids"] == [101]


class TestLinkedResources:
    async def test_existing_resources_pass(self, ctx, neon, env_service):
        linked = LinkedResources(
            neon_branch_id="br-main-123", cloudflare_worker_name="api-worker", cloudflare_pages_project="web"
        )
        result = await env_service.provision_environment(ctx, "dev", linked_resources=linked)

        assert result.status == RESULT_CREATED
        assert neon.lookups == 1

    async def test_missing_resources_block_before_any_write(self, ctx, github, store, env_service):
        linked = LinkedResources(neon_branch_id="br-gone", cloudflare_worker_name="old-worker")

        with pytest.raises(LinkedResourceMissingError) as exc_info:
            await env_service.provision_environment(ctx, "dev", linked_resources=linked)

        assert exc_info.value.missing == [
            "Neon branch br-gone not found",
            "Cloudflare Worker old-worker not found",
        ]
        assert github.calls == []
        assert store.environments == {}

    async def test_unconfigured_providers_count_as_missing(self, github, env_service):
        ctx = SyncContext(
            project_id="proj-1", actor_id="user-1", owner="acme", repo="widgets", github=github
        )
        linked = LinkedResources(neon_branch_id="br-1", cloudflare_pages_project="web")

        with pytest.raises(LinkedResourceMissingError) as exc_info:
            await env_service.check_linked_resources(ctx, linked)

        assert len(exc_info.value.missing) == 2

    async def test_skip_mode_does_not_call_providers(self, ctx, neon, store, audit_sink, quota, encryption):
        service = EnvironmentService(
            store,
            audit_sink,
            quota,
            encryption,
            linked_resource_mode=LinkedResourceMode.SKIP,
            retry_policy=FAST_RETRY,
        )

        await service.check_linked_resources(ctx, LinkedResources(neon_branch_id="br-gone"))
        await service.check_linked_resources(ctx, LinkedResources(neon_branch_id="br-gone"))

        assert neon.lookups == 0

    async def test_no_linked_resources_is_a_no_op(self, ctx, neon, env_service):
        await env_service.check_linked_resources(ctx, LinkedResources())
        assert neon.lookups == 0


class TestProvisionEnvironments:
    async def test_batch_collects_results_and_codes(self, ctx, github, env_service):
        github.put_failures["create:staging"] = [rejected(403, "Must have admin rights")]
        requests = [
            EnvironmentRequest(name="dev"),
            EnvironmentRequest(name="staging"),
            EnvironmentRequest(name="production"),
            EnvironmentRequest(name="dev", linked_resources=LinkedResources(neon_branch_id="br-gone")),
        ]

        summary = await env_service.provision_environments(ctx, requests)

        assert [r.environment_name for r in summary.created] == ["dev"]
        assert summary.updated == []
        codes = [(e.environment_name, e.code) for e in summary.errors]
        assert codes == [
            ("staging", CODE_PERMISSION_DENIED),
            ("production", CODE_REVIEWER_COUNT_INVALID),
            ("dev", CODE_LINKED_RESOURCE_NOT_FOUND),
        ]

    async def test_batch_reports_quota_code(self, ctx, github, env_service):
        github.remaining = 0
        summary = await env_service.provision_environments(ctx, [EnvironmentRequest(name="dev")])
        assert summary.errors[0].code == CODE_RATE_LIMIT_EXHAUSTED

    async def test_rerun_reports_updated(self, ctx, env_service):
        await env_service.provision_environments(ctx, [EnvironmentRequest(name="dev")])
        summary = await env_service.provision_environments(ctx, [EnvironmentRequest(name="dev")])
        assert [r.environment_name for r in summary.updated] == ["dev"]
