"""
Pytest fixtures for PharmaFlow backend tests.

Provides test database setup, seeded roles/workflow, users with stage grants,
actor contexts and the test client.
"""

import pytest
from pharmaflow import create_app
from pharmaflow.extensions import db
from pharmaflow.services.auth_service import create_user, create_default_roles, assign_role
from pharmaflow.services import permission_service, upstream_service, workflow_service


TEST_PASSWORD = "Password123!"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'APPROVAL_CONFLICT_RETRIES': 2,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def setup_roles(db_session):
    """Setup default roles and permissions."""
    create_default_roles()
    permission_service.initialize_permissions()
    permission_service.assign_default_role_permissions()
    db_session.commit()


@pytest.fixture(scope='function')
def stages(db_session, setup_roles):
    """Seed the default QC -> warehouse workflow; returns stages by code."""
    workflow_service.seed_default_workflow()
    return {s.code: s for s in workflow_service.list_stages(include_inactive=True)}


def make_user(username: str, role_name: str):
    user = create_user(
        username=username,
        email=f"{username}@pharmaflow.test",
        password=TEST_PASSWORD,
        rounds=4,
    )
    assign_role(user.id, role_name)
    return user


@pytest.fixture(scope='function')
def admin(setup_roles):
    return make_user("admin", "admin")


@pytest.fixture(scope='function')
def manager(setup_roles):
    return make_user("manager", "manager")


@pytest.fixture(scope='function')
def second_manager(setup_roles):
    return make_user("manager2", "manager")


@pytest.fixture(scope='function')
def inspector(stages, admin):
    """QC inspector holding decide/submit rights on QC_PENDING only."""
    user = make_user("inspector", "qc_inspector")
    permission_service.assign_stage_permission(
        user_id=user.id,
        stage_id=stages["QC_PENDING"].id,
        permission_codes=["DECIDE_LINE_ITEMS", "SUBMIT_RECORD"],
        assigned_by_user_id=admin.id,
    )
    return user


@pytest.fixture(scope='function')
def storekeeper(stages, admin):
    """Warehouse staff holding decide/submit rights on WAREHOUSE_REVIEW only."""
    user = make_user("storekeeper", "warehouse_staff")
    permission_service.assign_stage_permission(
        user_id=user.id,
        stage_id=stages["WAREHOUSE_REVIEW"].id,
        permission_codes=["DECIDE_LINE_ITEMS", "SUBMIT_RECORD"],
        assigned_by_user_id=admin.id,
    )
    return user


@pytest.fixture(scope='function')
def outsider(setup_roles):
    """Inspector role with no stage grants."""
    return make_user("outsider", "qc_inspector")


@pytest.fixture(scope='function')
def admin_actor(admin):
    return permission_service.actor_for_user(admin)


@pytest.fixture(scope='function')
def manager_actor(manager):
    return permission_service.actor_for_user(manager)


@pytest.fixture(scope='function')
def second_manager_actor(second_manager):
    return permission_service.actor_for_user(second_manager)


@pytest.fixture(scope='function')
def inspector_actor(inspector):
    return permission_service.actor_for_user(inspector)


@pytest.fixture(scope='function')
def storekeeper_actor(storekeeper):
    return permission_service.actor_for_user(storekeeper)


@pytest.fixture(scope='function')
def outsider_actor(outsider):
    return permission_service.actor_for_user(outsider)


@pytest.fixture(scope='function')
def invoice(stages, admin):
    """Invoice receiving with three received lines (100, 50, 20 units)."""
    return upstream_service.create_invoice_receiving(
        invoice_number="INV-1001",
        principal_id=7,
        received_by_user_id=admin.id,
        lines=[
            {"product_name": "Amoxicillin 500mg", "product_code": "AMX500", "batch_no": "B-01", "received_qty": 100},
            {"product_name": "Paracetamol 1g", "product_code": "PCM1G", "batch_no": "B-02", "received_qty": 50},
            {"product_name": "Ibuprofen 400mg", "product_code": "IBU400", "batch_no": "B-03", "received_qty": 20},
        ],
    )


@pytest.fixture(scope='function')
def qc_record(invoice, manager_actor, inspector):
    """QC record generated from the invoice, sitting on QC_PENDING."""
    return upstream_service.create_quality_control_from_invoice(invoice.id, actor=manager_actor)


def get_auth_token(client, username: str, password: str = TEST_PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'username': username,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers(client, admin):
    return auth_headers(get_auth_token(client, "admin"))


@pytest.fixture(scope='function')
def manager_headers(client, manager):
    return auth_headers(get_auth_token(client, "manager"))


@pytest.fixture(scope='function')
def inspector_headers(client, inspector):
    return auth_headers(get_auth_token(client, "inspector"))


@pytest.fixture(scope='function')
def outsider_headers(client, outsider):
    return auth_headers(get_auth_token(client, "outsider"))
