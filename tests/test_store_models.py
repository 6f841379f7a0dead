"""
Tests for converting domain records to and from their stored rows.
"""

from datetime import datetime, timezone

from gatehouse.store.models import (
    GLOBAL_SCOPE,
    from_api_key_model,
    from_role_assignment_model,
    to_api_key_model,
    to_role_assignment_model,
)
from gatehouse.store.ommi_store import serialize_changes
from gatehouse.types import ApiKey, PrincipalStatus, RoleAssignment

NOW = datetime(2030, 1, 15, 9, 0, tzinfo=timezone.utc)


class TestApiKeyRows:
    def test_structured_fields_are_json(self):
        key = ApiKey(
            id="key-1",
            owner_id="p-1",
            name="ci",
            key_hash="digest",
            key_prefix="xapi-01234...",
            expires_at=NOW,
            allowed_ips=["10.0.0.1"],
            metadata={"team": "platform"},
            created_at=NOW,
        )

        model = to_api_key_model(key)

        assert model.allowed_ips == '["10.0.0.1"]'
        assert model.expires_at == NOW.isoformat()
        assert from_api_key_model(model) == key


class TestRoleAssignmentRows:
    def test_global_scope_is_stored_as_sentinel(self):
        model = to_role_assignment_model(RoleAssignment("p-1", "super_admin"), NOW)

        assert model.organization_id == GLOBAL_SCOPE
        assert from_role_assignment_model(model).organization_id is None

    def test_tenant_scope_is_kept(self):
        model = to_role_assignment_model(RoleAssignment("p-1", "hr_manager", "org-1"), NOW)

        assert from_role_assignment_model(model) == RoleAssignment("p-1", "hr_manager", "org-1")


class TestSerializeChanges:
    def test_column_representation(self):
        changes = serialize_changes(
            {
                "last_login_at": NOW,
                "status": PrincipalStatus.INACTIVE,
                "metadata": {"a": 1},
                "allowed_ips": [],
                "name": "ci",
            }
        )

        assert changes == {
            "last_login_at": NOW.isoformat(),
            "status": "inactive",
            "metadata": '{"a": 1}',
            "allowed_ips": "[]",
            "name": "ci",
        }
