"""
Shared fixtures: an app over in-memory SQLite with a temporary upload
directory, seeded accounts, bearer tokens and a work order factory.
"""
import io
import os

import pytest

from mfg_tracker import create_app
from mfg_tracker.auth.permissions import resolve_operator_context
from mfg_tracker.auth.utils import CallerIdentity, hash_password, issue_token
from mfg_tracker.models import WORK_ORDER_MODELS, User, db
from mfg_tracker.workorders.engine import WorkOrderClass, rules_for

OPERATOR_PERMISSIONS = ["traveler:read", "traveler:release", "qc:hold"]


@pytest.fixture
def upload_dir(tmp_path):
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def app(upload_dir):
    """Create Flask application for testing."""
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "SECRET_KEY": "test-secret-key",
        "UPLOAD_DIR": str(upload_dir),
        "API_BASE_URL": "http://testserver",
        "LOG_LEVEL": "WARNING",
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def admin_user(app):
    user = User(
        name="Admin",
        email="admin@example.com",
        password_hash=hash_password("admin123"),
        role="admin",
    )
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def operator(app):
    user = User(
        name="Floor Operator",
        email="operator1@example.com",
        password_hash=hash_password("operator123"),
        role="mfg",
        login_id="operator1",
        work_center="assembly_store",
        permissions=list(OPERATOR_PERMISSIONS),
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin_headers(admin_user):
    return {"Authorization": f"Bearer {issue_token(admin_user.id, 'admin')}"}


@pytest.fixture
def operator_headers(operator):
    return {"Authorization": f"Bearer {issue_token(operator.id, 'mfg')}"}


@pytest.fixture
def admin_ctx(admin_user):
    return resolve_operator_context(CallerIdentity(admin_user.id, "admin"))


@pytest.fixture
def operator_ctx(operator):
    return resolve_operator_context(CallerIdentity(operator.id, "mfg"))


@pytest.fixture
def make_work_order(app):
    """Factory: make_work_order("assembly", woNumber="WO-1", stage="stencil")."""
    counter = {"n": 0}

    def _make(work_order_class="pcb", wo_number=None, **fields):
        counter["n"] += 1
        work_order_class = WorkOrderClass(work_order_class)
        rules = rules_for(work_order_class)
        model = WORK_ORDER_MODELS[work_order_class]
        work_order = model(
            wo_number=wo_number or f"WO-TEST-{counter['n']:03d}",
            customer=fields.pop("customer", "Test Customer"),
            product=fields.pop("product", "Test Product"),
            quantity=fields.pop("quantity", 10),
            stage=fields.pop("stage", rules.default_stage),
            traveler_ready=fields.pop("traveler_ready", True),
            stage_statuses={},
            stage_params={},
            stage_checklists={},
            **fields,
        )
        db.session.add(work_order)
        db.session.commit()
        return work_order

    return _make


@pytest.fixture
def blob_files(upload_dir):
    """Snapshot of the files currently in the upload directory."""
    def _snapshot():
        return sorted(name for name in os.listdir(upload_dir) if not name.startswith("."))
    return _snapshot


@pytest.fixture
def make_file():
    """Multipart file tuple for the test client."""
    def _make(content=b"%PDF-1.4 test", name="test.pdf", mime="application/pdf"):
        return (io.BytesIO(content), name, mime)
    return _make
