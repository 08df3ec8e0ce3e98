# Overview: Pytest coverage for role guards, permission/profile changes and the audit trail.

"""
Role management and audit trail tests.

Verifies:
- The last active admin can never be demoted, by the service or the procedure
- Role changes per user are rate limited within the window
- Bulk updates are validated per entry and applied atomically
- Every privileged change leaves an immutable audit entry
- Audit reads are paginated and restricted to admins
"""

from datetime import timedelta

import pytest

from opscore.authorization import PermissionDeniedError
from opscore.models import AuditLogEntry, ImmutableRecordError, SystemNotification, User
from opscore.services import audit_service, role_service
from opscore.services.storage_errors import ErrorKind, StorageError
from opscore.services.storage_gateway import get_gateway
from opscore.time_utils import utcnow
from opscore.validation import ConflictError, ValidationError


def _role(session, user_id):
    session.expire_all()
    return session.get(User, user_id).role


# =============================================================================
# LAST ADMIN PROTECTION
# =============================================================================


class TestLastAdmin:

    def test_service_refuses_to_demote_last_admin(self, db_session, admin):
        check = role_service.validate_role_change(admin.id, "viewer")
        assert not check
        assert check.reason == "Cannot demote the last admin user. At least one admin must remain."

        with pytest.raises(ConflictError, match="Cannot demote the last admin user"):
            role_service.change_user_role(admin.id, "viewer", admin.id)
        assert _role(db_session, admin.id) == "admin"
        assert db_session.query(AuditLogEntry).count() == 0

    def test_procedure_refuses_to_demote_last_admin(self, db_session, admin):
        # Called directly, skipping the service-level check.
        with pytest.raises(StorageError) as exc_info:
            get_gateway().rpc(
                "change_user_role",
                {"user_id": admin.id, "new_role": "viewer", "actor_id": admin.id},
                notify=False,
            )
        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert exc_info.value.attempts == 1
        assert _role(db_session, admin.id) == "admin"
        assert db_session.query(AuditLogEntry).count() == 0

    def test_inactive_admins_do_not_count(self, db_session, admin, second_admin):
        second_admin.is_active = False
        db_session.commit()
        assert not role_service.validate_role_change(admin.id, "viewer")

    def test_one_of_two_admins_can_step_down(self, db_session, admin, second_admin):
        result = role_service.change_user_role(second_admin.id, "viewer", admin.id, reason="Moved teams")
        assert result["user"]["role"] == "viewer"
        assert result["audit_log"]["old_values"] == {"role": "admin"}
        assert result["audit_log"]["new_values"] == {"role": "viewer"}
        assert result["audit_log"]["metadata"] == {"reason": "Moved teams"}
        assert role_service.get_user_count_by_role()["admin"] == 1


# =============================================================================
# SINGLE ROLE CHANGES
# =============================================================================


class TestChangeUserRole:

    def test_change_records_audit_and_notifies_user(self, db_session, admin, viewer, notifications):
        result = role_service.change_user_role(
            viewer.id, "production", admin.id, ip_address="10.0.0.8", user_agent="pytest",
        )

        entry = result["audit_log"]
        assert entry["action"] == "role_change"
        assert entry["performed_by"] == admin.id
        assert entry["user_id"] == viewer.id
        assert entry["ip_address"] == "10.0.0.8"
        assert _role(db_session, viewer.id) == "production"

        note = db_session.query(SystemNotification).filter_by(target_user_id=viewer.id).one()
        assert note.type == "role_change"
        assert note.details == {"oldRole": "viewer", "newRole": "production"}
        assert notifications("success")[-1]["message"] == "Role updated to production"

    def test_non_admin_cannot_change_roles(self, db_session, admin, sales_manager, viewer):
        with pytest.raises(PermissionDeniedError):
            role_service.change_user_role(viewer.id, "production", sales_manager.id)
        assert _role(db_session, viewer.id) == "viewer"

    def test_same_role_rejected(self, db_session, admin, viewer):
        with pytest.raises(ConflictError, match="already has role viewer"):
            role_service.change_user_role(viewer.id, "viewer", admin.id)

    def test_unknown_role(self, db_session, admin, viewer):
        with pytest.raises(ValidationError):
            role_service.change_user_role(viewer.id, "superuser", admin.id)
        assert role_service.validate_role_change(viewer.id, "superuser").reason == "Invalid role: superuser"

    def test_unknown_user(self, db_session, admin):
        with pytest.raises(ValidationError):
            role_service.change_user_role(987654, "viewer", admin.id)


class TestRoleChangeRateLimit:

    ROTATION = ["production", "sales_manager", "finance", "viewer", "production", "sales_manager"]

    def test_fourth_change_in_a_day_rejected(self, db_session, admin, viewer):
        for role in self.ROTATION[:3]:
            role_service.change_user_role(viewer.id, role, admin.id)

        with pytest.raises(ConflictError, match="Too many role changes"):
            role_service.change_user_role(viewer.id, self.ROTATION[3], admin.id)
        assert _role(db_session, viewer.id) == "finance"
        assert audit_service.get_recent_role_changes(viewer.id) == 3

    def test_sixth_change_rejected_with_limit_of_five(self, db_session, app, admin, viewer, monkeypatch):
        monkeypatch.setitem(app.config, "ROLE_CHANGE_LIMIT", 5)
        for role in self.ROTATION[:5]:
            role_service.change_user_role(viewer.id, role, admin.id)

        with pytest.raises(ConflictError, match="Too many role changes"):
            role_service.change_user_role(viewer.id, self.ROTATION[5], admin.id)
        assert _role(db_session, viewer.id) == "production"

    def test_old_changes_fall_out_of_the_window(self, db_session, admin, viewer):
        for _ in range(3):
            db_session.add(AuditLogEntry(
                user_id=viewer.id,
                action="role_change",
                old_values={"role": "viewer"},
                new_values={"role": "viewer"},
                performed_by=admin.id,
                timestamp=utcnow() - timedelta(hours=25),
            ))
        db_session.commit()

        assert role_service.validate_role_change(viewer.id, "production")

    def test_limit_is_per_user(self, db_session, admin, viewer, production_user):
        for role in self.ROTATION[:3]:
            role_service.change_user_role(viewer.id, role, admin.id)
        assert role_service.validate_role_change(production_user.id, "viewer")


# =============================================================================
# BULK CHANGES
# =============================================================================


class TestBulkRoleUpdate:

    def test_mixed_batch_reports_each_entry(self, db_session, admin, viewer, production_user):
        result = role_service.bulk_role_update(
            [
                {"user_id": viewer.id, "new_role": "sales_manager"},
                {"user_id": viewer.id, "new_role": "finance"},
                {"user_id": 987654, "new_role": "viewer"},
                {"user_id": production_user.id, "new_role": "production"},
            ],
            admin.id,
        )

        assert result["success"] is False
        messages = [r["message"] for r in result["results"]]
        assert messages[0] == "Role updated successfully"
        assert messages[1] == "Duplicate user in request"
        assert messages[2] == "User 987654 not found"
        assert "already has role production" in messages[3]

        assert _role(db_session, viewer.id) == "sales_manager"
        assert db_session.query(AuditLogEntry).count() == 1
        assert db_session.query(SystemNotification).filter_by(target_user_id=viewer.id).count() == 1

    def test_all_valid(self, db_session, admin, viewer, production_user):
        result = role_service.bulk_role_update(
            [
                {"user_id": viewer.id, "new_role": "finance", "reason": "Quarter close"},
                {"user_id": production_user.id, "role": "viewer"},
            ],
            admin.id,
            notify_users=False,
        )
        assert result["success"] is True
        assert _role(db_session, production_user.id) == "viewer"
        assert db_session.query(SystemNotification).count() == 0

    def test_demoting_every_admin_keeps_the_last_one(self, db_session, admin, second_admin, viewer):
        result = role_service.bulk_role_update(
            [
                {"user_id": admin.id, "new_role": "viewer"},
                {"user_id": second_admin.id, "new_role": "viewer"},
                {"user_id": viewer.id, "new_role": "finance"},
            ],
            admin.id,
        )

        assert result["success"] is False
        assert [r["success"] for r in result["results"]] == [True, False, True]
        assert "Cannot demote the last admin" in result["results"][1]["message"]
        assert _role(db_session, admin.id) == "viewer"
        assert _role(db_session, second_admin.id) == "admin"
        assert _role(db_session, viewer.id) == "finance"
        assert db_session.query(AuditLogEntry).count() == 2

    def test_promotion_in_same_request_frees_a_demotion(self, db_session, admin, viewer):
        result = role_service.bulk_role_update(
            [
                {"user_id": viewer.id, "new_role": "admin"},
                {"user_id": admin.id, "new_role": "viewer"},
            ],
            admin.id,
        )
        assert result["success"] is True
        assert _role(db_session, viewer.id) == "admin"
        assert _role(db_session, admin.id) == "viewer"

    def test_bulk_procedure_rechecks_admins(self, db_session, admin, second_admin):
        with pytest.raises(StorageError) as exc_info:
            get_gateway().rpc(
                "bulk_change_user_roles",
                {
                    "changes": [
                        {"user_id": admin.id, "new_role": "viewer"},
                        {"user_id": second_admin.id, "new_role": "viewer"},
                    ],
                    "actor_id": admin.id,
                },
            )

        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert _role(db_session, admin.id) == "admin"
        assert _role(db_session, second_admin.id) == "admin"
        assert db_session.query(AuditLogEntry).count() == 0

    def test_nothing_valid_writes_nothing(self, db_session, admin):
        result = role_service.bulk_role_update([{"user_id": admin.id, "new_role": "viewer"}], admin.id)
        assert result["success"] is False
        assert "Cannot demote the last admin" in result["results"][0]["message"]
        assert db_session.query(AuditLogEntry).count() == 0

    def test_requires_admin(self, db_session, sales_manager, viewer):
        with pytest.raises(PermissionDeniedError):
            role_service.bulk_role_update([{"user_id": viewer.id, "new_role": "finance"}], sales_manager.id)

    def test_requires_changes(self, db_session, admin):
        with pytest.raises(ValidationError):
            role_service.bulk_role_update([], admin.id)


# =============================================================================
# PERMISSIONS AND PROFILE
# =============================================================================


class TestPermissions:

    def test_add_remove_replace(self, db_session, admin, viewer):
        added = role_service.manage_user_permissions(viewer.id, ["orders:read", "orders:write"], admin.id, "add")
        assert added["user"]["custom_permissions"] == ["orders:read", "orders:write"]
        assert added["audit_log"]["action"] == "permission_change"
        assert added["audit_log"]["metadata"] == {"operation": "add"}

        removed = role_service.manage_user_permissions(viewer.id, ["orders:write"], admin.id, "remove")
        assert removed["user"]["custom_permissions"] == ["orders:read"]

        replaced = role_service.manage_user_permissions(viewer.id, ["production:read"], admin.id)
        assert replaced["audit_log"]["old_values"] == {"permissions": ["orders:read"]}
        assert replaced["audit_log"]["new_values"] == {"permissions": ["production:read"]}

    def test_no_change_no_audit(self, db_session, admin, viewer):
        role_service.manage_user_permissions(viewer.id, ["orders:read"], admin.id, "add")
        again = role_service.manage_user_permissions(viewer.id, ["orders:read"], admin.id, "add")
        assert again["audit_log"] is None
        assert db_session.query(AuditLogEntry).count() == 1

    def test_format_enforced(self, db_session, admin, viewer):
        with pytest.raises(ValidationError, match="resource:action"):
            role_service.manage_user_permissions(viewer.id, ["orders"], admin.id, "add")
        with pytest.raises(ValidationError):
            role_service.manage_user_permissions(viewer.id, ["orders:read"], admin.id, "merge")

    def test_requires_admin(self, db_session, sales_manager, viewer):
        with pytest.raises(PermissionDeniedError):
            role_service.manage_user_permissions(viewer.id, ["orders:read"], sales_manager.id)


class TestProfile:

    def test_user_edits_own_profile(self, db_session, viewer):
        result = role_service.update_user_profile(viewer.id, {"name": "Vera Viewer"}, viewer.id)
        [entry] = result["audit_logs"]
        assert entry["action"] == "profile_update"
        assert entry["old_values"] == {"name": "Viewer"}
        assert entry["new_values"] == {"name": "Vera Viewer"}
        assert result["user"]["name"] == "Vera Viewer"

    def test_admin_changes_designation_separately(self, db_session, admin, viewer):
        result = role_service.update_user_profile(
            viewer.id, {"designation": "Shift lead", "email": "vera@opscore.test"}, admin.id,
        )
        assert [e["action"] for e in result["audit_logs"]] == ["designation_change", "profile_update"]

    def test_designation_is_admin_only(self, db_session, viewer):
        with pytest.raises(PermissionDeniedError, match="designation"):
            role_service.update_user_profile(viewer.id, {"designation": "Boss"}, viewer.id)

    def test_cannot_edit_someone_else(self, db_session, viewer, production_user):
        with pytest.raises(PermissionDeniedError):
            role_service.update_user_profile(production_user.id, {"name": "X"}, viewer.id)

    def test_unchanged_values_write_no_audit(self, db_session, viewer):
        result = role_service.update_user_profile(viewer.id, {"name": "Viewer"}, viewer.id)
        assert result["audit_logs"] == []

    def test_role_is_not_a_profile_field(self, db_session, viewer):
        with pytest.raises(ValidationError, match="Fields not editable: role"):
            role_service.update_user_profile(viewer.id, {"role": "admin"}, viewer.id)


# =============================================================================
# AUDIT TRAIL
# =============================================================================


class TestAuditTrail:

    @pytest.fixture
    def five_entries(self, db_session, admin, viewer):
        return [
            audit_service.create_audit_log(
                viewer.id, "profile_update", {"name": f"n{i}"}, {"name": f"n{i + 1}"}, admin.id,
            )
            for i in range(5)
        ]

    def test_pagination(self, db_session, admin, five_entries):
        page = audit_service.get_audit_logs({"limit": 2, "offset": 2}, admin.id)
        assert page["total"] == 5
        assert page["page"] == 2
        assert page["page_size"] == 2
        assert page["total_pages"] == 3
        assert [log["id"] for log in page["logs"]] == [five_entries[2]["id"], five_entries[1]["id"]]

    def test_filters(self, db_session, admin, viewer, five_entries):
        role_service.change_user_role(viewer.id, "finance", admin.id)

        page = audit_service.get_audit_logs({"action": "role_change"}, admin.id)
        assert page["total"] == 1
        assert page["logs"][0]["user_name"] == "Viewer"
        assert page["logs"][0]["performed_by_name"] == "Admin One"

        both = audit_service.get_audit_logs(
            audit_service.AuditLogFilter(action=["role_change", "profile_update"], user_id=viewer.id), admin.id,
        )
        assert both["total"] == 6

    def test_date_filters(self, db_session, admin, five_entries):
        today = utcnow().date()
        assert audit_service.get_audit_logs({"from_date": today.isoformat()}, admin.id)["total"] == 5
        yesterday = (today - timedelta(days=1)).isoformat()
        assert audit_service.get_audit_logs({"to_date": yesterday}, admin.id)["total"] == 0

    def test_admin_only(self, db_session, viewer, five_entries):
        with pytest.raises(PermissionDeniedError):
            audit_service.get_audit_logs({}, viewer.id)
        with pytest.raises(PermissionDeniedError):
            audit_service.get_audit_stats(viewer.id)

    @pytest.mark.parametrize("bad", [{"limit": 500}, {"offset": -1}, {"page": 2}, {"action": "login"}])
    def test_bad_filters(self, db_session, admin, bad):
        with pytest.raises(ValidationError):
            audit_service.get_audit_logs(bad, admin.id)

    def test_own_logs_only(self, db_session, admin, viewer, five_entries):
        assert len(audit_service.get_user_audit_logs(viewer.id, viewer.id)) == 5
        with pytest.raises(PermissionDeniedError):
            audit_service.get_user_audit_logs(admin.id, viewer.id)
        assert len(audit_service.get_user_audit_logs(viewer.id, admin.id, limit=3)) == 3

    def test_recent_activity_includes_actor_side(self, db_session, admin, five_entries):
        activity = audit_service.get_user_recent_activity(admin.id, limit=10)
        assert len(activity) == 5
        assert activity[0]["id"] == five_entries[-1]["id"]

    def test_stats(self, db_session, admin, five_entries):
        stats = audit_service.get_audit_stats(admin.id)
        assert stats["action_counts"]["profile_update"] == 5
        assert stats["action_counts"]["role_change"] == 0
        assert stats["recent_activity_count"] == 5
        assert stats["top_users"] == [{"performed_by": admin.id, "performed_by_name": "Admin One", "count": 5}]

    def test_unknown_action_rejected(self, db_session, admin, viewer):
        with pytest.raises(ValidationError):
            audit_service.create_audit_log(viewer.id, "login", {}, {}, admin.id)

    def test_entries_are_immutable(self, db_session, five_entries):
        entry = db_session.get(AuditLogEntry, five_entries[0]["id"])
        entry.new_values = {"name": "tampered"}
        with pytest.raises(ImmutableRecordError):
            db_session.commit()
        db_session.rollback()

        db_session.delete(db_session.get(AuditLogEntry, five_entries[0]["id"]))
        with pytest.raises(ImmutableRecordError):
            db_session.commit()
        db_session.rollback()

    def test_rewrite_through_gateway_is_not_retried(self, db_session, five_entries):
        with pytest.raises(StorageError) as exc_info:
            get_gateway().update("audit_log_entries", {"new_values": {"name": "tampered"}}, {"id": five_entries[0]["id"]})

        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert exc_info.value.attempts == 1

    def test_role_change_history_and_formatting(self, db_session, admin, viewer):
        role_service.change_user_role(viewer.id, "production", admin.id)

        [entry] = role_service.get_role_change_history(viewer.id, admin.id)
        assert audit_service.format_audit_log_entry(entry).endswith(
            ": Admin One changed role from viewer to production for Viewer"
        )
        assert audit_service.get_detailed_changes(entry) == [
            {"field": "role", "old_value": "viewer", "new_value": "production"},
        ]

    def test_format_other_actions(self):
        entry = {
            "timestamp": "2026-03-04T05:06:07Z",
            "action": "designation_change",
            "old_values": {},
            "new_values": {"designation": "Lead"},
            "user_name": "Vera",
            "performed_by_name": None,
        }
        assert audit_service.format_audit_log_entry(entry) == (
            '2026-03-04 05:06: Unknown User changed designation from "none" to "Lead" for Vera'
        )
