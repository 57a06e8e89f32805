"""
HTTP API tests.

Verifies:
- Unauthenticated requests return 401
- Global permission checks return 403 and stage checks map to error codes
- The QC -> warehouse flow works end to end over HTTP
- Auto transition candidates, notifications and the record audit trail
- Workflow administration endpoints
"""

import pytest


# =============================================================================
# UNAUTHENTICATED ACCESS (401)
# =============================================================================


class TestUnauthenticatedAccess:

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/approvals"),
            ("GET", "/api/approvals/1"),
            ("POST", "/api/approvals/invoices"),
            ("POST", "/api/approvals/quality-control"),
            ("POST", "/api/approvals/1/submit"),
            ("POST", "/api/approvals/1/manager-actions"),
            ("GET", "/api/workflow/stages"),
            ("POST", "/api/workflow/stages"),
            ("GET", "/api/workflow/graph"),
            ("POST", "/api/workflow/validate"),
        ],
    )
    def test_requires_auth(self, client, setup_roles, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401, f"{method} {path} returned {resp.status_code}"

    def test_garbage_token(self, client, setup_roles):
        resp = client.get("/api/approvals", headers={"Authorization": "Bearer not-a-token"})
        assert resp.status_code == 401


# =============================================================================
# AUTH AND SYSTEM
# =============================================================================


class TestAuthEndpoints:

    def test_login_returns_token_and_permissions(self, client, inspector):
        resp = client.post("/api/auth/login", json={"username": "inspector", "password": "Password123!"})
        assert resp.status_code == 200
        assert resp.json["token"]
        assert resp.json["roles"] == ["qc_inspector"]
        assert "VIEW_APPROVALS" in resp.json["permissions"]

    def test_bad_password(self, client, inspector):
        resp = client.post("/api/auth/login", json={"username": "inspector", "password": "wrong"})
        assert resp.status_code == 401

    def test_logout_revokes_token(self, client, inspector_headers):
        assert client.post("/api/auth/validate", headers=inspector_headers).status_code == 200
        assert client.post("/api/auth/logout", headers=inspector_headers).status_code == 200
        assert client.get("/api/approvals", headers=inspector_headers).status_code == 401

    def test_health(self, client, db_session):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json["database"]["status"] == "healthy"


# =============================================================================
# PERMISSION DENIALS (403)
# =============================================================================


class TestPermissionDenials:

    def test_inspector_cannot_manage_workflow(self, client, inspector_headers):
        resp = client.post(
            "/api/workflow/stages",
            json={"name": "Rogue", "code": "ROGUE", "sequence": 99},
            headers=inspector_headers,
        )
        assert resp.status_code == 403
        assert resp.json["required_permission"] == "MANAGE_WORKFLOW"

    def test_inspector_cannot_generate_records(self, client, invoice, inspector_headers):
        resp = client.post(
            "/api/approvals/quality-control",
            json={"invoice_receiving_id": invoice.id},
            headers=inspector_headers,
        )
        assert resp.status_code == 403

    def test_stage_denial_uses_error_code(self, client, qc_record, outsider_headers):
        item_id = qc_record.items[0].id
        resp = client.post(
            f"/api/approvals/{qc_record.id}/items/{item_id}/decision",
            json={"decision": "approved"},
            headers=outsider_headers,
        )
        assert resp.status_code == 403
        assert resp.json["code"] == "PERMISSION_DENIED"
        assert resp.json["details"]["missing_permissions"] == ["DECIDE_LINE_ITEMS"]


# =============================================================================
# APPROVAL FLOW OVER HTTP
# =============================================================================


class TestApprovalFlow:

    def test_qc_flow(self, client, invoice, inspector, manager_headers, inspector_headers):
        resp = client.post(
            "/api/approvals/quality-control",
            json={"invoice_receiving_id": invoice.id, "priority": "high"},
            headers=manager_headers,
        )
        assert resp.status_code == 201
        record = resp.json["record"]
        assert record["current_stage_code"] == "QC_PENDING"
        assert record["priority"] == "high"
        items = record["items"]

        # Submitting early names the pending items
        resp = client.post(f"/api/approvals/{record['id']}/submit", json={}, headers=inspector_headers)
        assert resp.status_code == 409
        assert resp.json["code"] == "INCOMPLETE_DECISIONS"

        resp = client.post(
            f"/api/approvals/{record['id']}/items/{items[0]['id']}/decision",
            json={"decision": "partial", "decided_qty": 101},
            headers=inspector_headers,
        )
        assert resp.status_code == 422
        assert resp.json["code"] == "QUANTITY_OUT_OF_RANGE"

        resp = client.post(
            f"/api/approvals/{record['id']}/items/bulk",
            json={"item_ids": [i["id"] for i in items], "decision": "approved"},
            headers=inspector_headers,
        )
        assert resp.status_code == 200
        assert resp.json["updated_items"] == 3

        resp = client.post(f"/api/approvals/{record['id']}/submit", json={"remarks": "ok"}, headers=inspector_headers)
        assert resp.status_code == 200
        assert resp.json["record"]["status"] == "submitted"

        resp = client.post(
            f"/api/approvals/{record['id']}/manager-actions",
            json={"level": 1, "action": "approve"},
            headers=manager_headers,
        )
        assert resp.status_code == 200
        assert resp.json["record"]["status"] == "approved"
        wa_id = resp.json["warehouse_approval_id"]
        assert wa_id is not None

        resp = client.get(f"/api/approvals/{wa_id}", headers=inspector_headers)
        assert resp.status_code == 200
        assert resp.json["record"]["record_type"] == "warehouse_approval"
        assert resp.json["record"]["current_stage_code"] == "WAREHOUSE_REVIEW"

        resp = client.get(f"/api/approvals/{record['id']}/history", headers=inspector_headers)
        actions = [h["action"] for h in resp.json["history"]]
        assert actions == ["create", "complete", "approve"]

    def test_stale_expected_version_conflicts(self, client, qc_record, inspector_headers):
        item_id = qc_record.items[0].id
        resp = client.post(
            f"/api/approvals/{qc_record.id}/items/{item_id}/decision",
            json={"decision": "approved", "expected_version": qc_record.version_id + 7},
            headers=inspector_headers,
        )
        assert resp.status_code == 409
        assert resp.json["code"] == "CONCURRENT_MODIFICATION"

    def test_manager_action_needs_level_and_action(self, client, qc_record, manager_headers):
        resp = client.post(f"/api/approvals/{qc_record.id}/manager-actions", json={}, headers=manager_headers)
        assert resp.status_code == 400

    def test_list_and_filter(self, client, qc_record, inspector_headers):
        resp = client.get("/api/approvals?record_type=quality_control&status=pending", headers=inspector_headers)
        assert resp.status_code == 200
        assert resp.json["count"] == 1
        assert "items" not in resp.json["items"][0]

        resp = client.get("/api/approvals?status=approved", headers=inspector_headers)
        assert resp.json["count"] == 0

    def test_unknown_record(self, client, stages, inspector_headers):
        resp = client.get("/api/approvals/424242", headers=inspector_headers)
        assert resp.status_code == 404
        assert resp.json["code"] == "NOT_FOUND"

    def test_bulk_assign(self, client, qc_record, inspector, manager_headers):
        resp = client.post(
            "/api/approvals/assign",
            json={"record_ids": [qc_record.id], "assigned_to_user_id": inspector.id, "priority": "urgent"},
            headers=manager_headers,
        )
        assert resp.status_code == 200
        assert resp.json["modified"] == 1


class TestAuxiliaryEndpoints:

    def test_auto_transitions_endpoint(self, client, qc_record, stages, admin_headers, inspector_headers):
        item_ids = [i.id for i in qc_record.items]
        resp = client.get(f"/api/workflow/stages/{stages['QC_PENDING'].id}", headers=admin_headers)
        complete = next(t for t in resp.json["transitions"] if t["action"] == "complete")
        resp = client.put(
            f"/api/workflow/transitions/{complete['id']}",
            json={"auto_transition": True, "conditions": {"pending_items": 0}},
            headers=admin_headers,
        )
        assert resp.status_code == 200

        resp = client.get(f"/api/approvals/{qc_record.id}/auto-transitions", headers=inspector_headers)
        assert resp.json["auto_transitions"] == []

        resp = client.post(
            f"/api/approvals/{qc_record.id}/items/bulk",
            json={"item_ids": item_ids, "decision": "approved"},
            headers=inspector_headers,
        )
        assert resp.status_code == 200

        resp = client.get(f"/api/approvals/{qc_record.id}/auto-transitions", headers=inspector_headers)
        assert [t["to_stage_code"] for t in resp.json["auto_transitions"]] == ["QC_MANAGER_REVIEW"]

        resp = client.get(f"/api/approvals/{qc_record.id}", headers=inspector_headers)
        assert [t["id"] for t in resp.json["auto_transitions"]] == [complete["id"]]

    def test_notifications_list_and_mark_read(self, client, qc_record, manager_headers, inspector_headers):
        resp = client.post(
            f"/api/approvals/{qc_record.id}/items/{qc_record.items[0].id}/decision",
            json={"decision": "approved"},
            headers=inspector_headers,
        )
        assert resp.status_code == 200

        resp = client.get("/api/approvals/notifications?unread_only=true", headers=manager_headers)
        assert resp.status_code == 200
        assert resp.json["count"] == 1
        notification = resp.json["notifications"][0]
        assert notification["record_id"] == qc_record.id
        assert notification["status"] == "in_progress"

        # The acting inspector is never told about their own change
        resp = client.get("/api/approvals/notifications", headers=inspector_headers)
        assert resp.json["count"] == 0

        resp = client.post(
            "/api/approvals/notifications/read",
            json={"notification_ids": [notification["id"]]},
            headers=inspector_headers,
        )
        assert resp.json["marked_read"] == 0

        resp = client.post(
            "/api/approvals/notifications/read",
            json={"notification_ids": [notification["id"]]},
            headers=manager_headers,
        )
        assert resp.json["marked_read"] == 1

        resp = client.get("/api/approvals/notifications?unread_only=true", headers=manager_headers)
        assert resp.json["count"] == 0

    def test_mark_read_rejects_bad_ids(self, client, setup_roles, manager_headers):
        resp = client.post(
            "/api/approvals/notifications/read",
            json={"notification_ids": ["first"]},
            headers=manager_headers,
        )
        assert resp.status_code == 400
        assert resp.json["code"] == "VALIDATION_ERROR"

    def test_record_audit_trail(self, client, qc_record, inspector_headers):
        client.post(
            f"/api/approvals/{qc_record.id}/items/{qc_record.items[0].id}/decision",
            json={"decision": "rejected", "remarks": "damaged"},
            headers=inspector_headers,
        )

        resp = client.get(f"/api/approvals/{qc_record.id}/audit", headers=inspector_headers)
        assert resp.status_code == 200
        events = [e["event_type"] for e in resp.json["events"]]
        assert events == ["RECORD_CREATED", "ITEM_DECIDED"]

    def test_audit_of_unknown_record(self, client, stages, inspector_headers):
        resp = client.get("/api/approvals/424242/audit", headers=inspector_headers)
        assert resp.status_code == 404

    def test_storage_placement_refused_on_qc(self, client, qc_record, inspector_headers):
        resp = client.post(
            f"/api/approvals/{qc_record.id}/items/{qc_record.items[0].id}/decision",
            json={"decision": "approved", "storage_location": {"zone": "A"}},
            headers=inspector_headers,
        )
        assert resp.status_code == 400
        assert resp.json["code"] == "VALIDATION_ERROR"


# =============================================================================
# WORKFLOW ADMINISTRATION
# =============================================================================


class TestWorkflowEndpoints:

    def test_stage_crud(self, client, stages, admin_headers):
        resp = client.post(
            "/api/workflow/stages",
            json={
                "name": "Lab Test",
                "code": "qc_lab_test",
                "sequence": 15,
                "allowed_actions": ["qc_check"],
                "next_stages": [{"stage_id": stages["QC_MANAGER_REVIEW"].id}],
            },
            headers=admin_headers,
        )
        assert resp.status_code == 201
        stage = resp.json["stage"]
        assert stage["code"] == "QC_LAB_TEST"

        resp = client.put(f"/api/workflow/stages/{stage['id']}", json={"name": "Lab Testing"}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json["stage"]["name"] == "Lab Testing"

        resp = client.delete(f"/api/workflow/stages/{stage['id']}", headers=admin_headers)
        assert resp.status_code == 200

        resp = client.get(f"/api/workflow/stages/{stage['id']}", headers=admin_headers)
        assert resp.status_code == 404

    def test_sequence_violation_is_config_error(self, client, stages, admin_headers):
        resp = client.put(
            f"/api/workflow/stages/{stages['QC_COMPLETED'].id}/next-stages",
            json={"next_stages": [stages["QC_PENDING"].id]},
            headers=admin_headers,
        )
        assert resp.status_code == 422
        assert resp.json["code"] == "WORKFLOW_CONFIG_ERROR"

    def test_stage_requires_sequence(self, client, stages, admin_headers):
        resp = client.post("/api/workflow/stages", json={"name": "X", "code": "X"}, headers=admin_headers)
        assert resp.status_code == 400

    @pytest.mark.parametrize("body", [{"actor_user_id": 1}, {"sequence": "abc"}])
    def test_bad_stage_update_is_validation_error(self, client, stages, admin_headers, body):
        resp = client.put(f"/api/workflow/stages/{stages['QC_PENDING'].id}", json=body, headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json["code"] == "VALIDATION_ERROR"

    def test_transition_update_refuses_body_actor(self, client, stages, admin_headers):
        stage_id = stages["QC_PENDING"].id
        resp = client.get(f"/api/workflow/stages/{stage_id}", headers=admin_headers)
        complete = next(t for t in resp.json["transitions"] if t["action"] == "complete")

        resp = client.put(
            f"/api/workflow/transitions/{complete['id']}",
            json={"actor_user_id": 1, "required_fields": ["remarks"]},
            headers=admin_headers,
        )
        assert resp.status_code == 400
        assert resp.json["code"] == "VALIDATION_ERROR"

    def test_stage_users(self, client, stages, admin_headers, outsider):
        stage_id = stages["QC_PENDING"].id
        resp = client.put(
            f"/api/workflow/stages/{stage_id}/users",
            json={"user_ids": [outsider.id], "permissions": ["DECIDE_LINE_ITEMS"]},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        assert resp.json == {"assigned": [outsider.id], "revoked": []}

        resp = client.get(f"/api/workflow/stages/{stage_id}/users", headers=admin_headers)
        assert [u["user_id"] for u in resp.json["users"]] == [outsider.id]

    def test_bad_expiry_is_validation_error(self, client, stages, admin_headers, outsider):
        resp = client.post(
            f"/api/workflow/stages/{stages['QC_PENDING'].id}/permissions",
            json={"user_id": outsider.id, "permissions": ["DECIDE_LINE_ITEMS"], "expires_at": "next tuesday"},
            headers=admin_headers,
        )
        assert resp.status_code == 400
        assert resp.json["code"] == "VALIDATION_ERROR"

    def test_graph_formats(self, client, stages, inspector_headers):
        resp = client.get("/api/workflow/graph", headers=inspector_headers)
        assert resp.status_code == 200
        assert len(resp.json["nodes"]) == 8

        resp = client.get("/api/workflow/graph?format=mermaid", headers=inspector_headers)
        assert resp.status_code == 200
        assert resp.mimetype == "text/plain"
        assert resp.get_data(as_text=True).startswith("flowchart TD")

    def test_validate_action(self, client, stages, inspector_headers, manager_headers):
        resp = client.post(
            "/api/workflow/validate",
            json={"stage_id": stages["QC_PENDING"].id, "action": "complete"},
            headers=inspector_headers,
        )
        assert resp.status_code == 200
        assert resp.json["next_stage"]["code"] == "QC_MANAGER_REVIEW"

        resp = client.post(
            "/api/workflow/validate",
            json={"stage_id": stages["QC_MANAGER_REVIEW"].id, "action": "return"},
            headers=manager_headers,
        )
        assert resp.status_code == 400
        assert resp.json["details"]["missing_fields"] == ["remarks"]
