# conftest.py

import itertools
import os
import threading
import time

import pytest

# Set testing environment BEFORE importing app so TestingConfig is selected
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import create_app  # noqa: E402
from crm_app.importer.errors import ConflictError, RemoteError  # noqa: E402
from crm_app.importer.records import CourseRecord, OrgRecord, Stage  # noqa: E402


class FakeEntityStore:
    """
    In-memory remote store used by engine, CLI, view and task tests.

    ``hidden`` orgs exist remotely but are left out of the snapshot, which is
    how a concurrent job that created the same code looks from this job.
    """

    def __init__(self, *, create_delay: float = 0.0):
        self.orgs = {}
        self.courses = {}
        self.hidden_org_ids = set()
        self.create_delay = create_delay
        self.created_orgs = []
        self.created_courses = []
        self.headcount_updates = []
        self.failing_course_ids = set()
        self.fail_snapshot = False
        self.closed = 0
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # Seeding helpers ------------------------------------------------------------

    def add_org(self, code=None, name="", *, org_id=None, hidden=False):
        org = OrgRecord(id=org_id or f"org-{next(self._ids)}", code=code, name=name)
        self.orgs[org.id] = org
        if hidden:
            self.hidden_org_ids.add(org.id)
        return org

    def add_course(self, org, stage, grade, year=None, *, headcount=None, course_id=None, section=None):
        org_id = org.id if isinstance(org, OrgRecord) else org
        course = CourseRecord(
            id=course_id or f"course-{next(self._ids)}",
            org_id=org_id,
            stage=stage,
            grade=grade,
            year=year,
            section=section,
            headcount=headcount,
        )
        self.courses[course.id] = course
        return course

    def headcount_of(self, course_id):
        return self.courses[course_id].headcount

    def orgs_with_code(self, code):
        return [org for org in self.orgs.values() if org.code == code]

    # EntityStore protocol -------------------------------------------------------

    def fetch_all_orgs(self):
        if self.fail_snapshot:
            raise RemoteError("fetch_all_orgs", "HTTP 503: unavailable", status_code=503)
        return [org for org in self.orgs.values() if org.id not in self.hidden_org_ids]

    def fetch_all_courses(self):
        return list(self.courses.values())

    def create_org(self, name, code):
        if self.create_delay:
            time.sleep(self.create_delay)
        with self._lock:
            if self.orgs_with_code(code):
                raise ConflictError(code)
            org = OrgRecord(id=f"org-{next(self._ids)}", code=code, name=name)
            self.orgs[org.id] = org
            self.created_orgs.append(org)
        return org

    def find_org_by_code(self, code):
        matches = self.orgs_with_code(code)
        return matches[0] if matches else None

    def update_course_headcount(self, course_id, headcount):
        if course_id in self.failing_course_ids:
            raise RemoteError("update_course_headcount", "HTTP 500: boom", status_code=500)
        with self._lock:
            course = self.courses[course_id]
            self.courses[course_id] = CourseRecord(
                id=course.id,
                org_id=course.org_id,
                stage=course.stage,
                grade=course.grade,
                year=course.year,
                section=course.section,
                headcount=headcount,
                name=course.name,
            )
            self.headcount_updates.append((course_id, headcount))

    def create_course(self, *, org_id, stage, grade, year, name):
        with self._lock:
            course = CourseRecord(
                id=f"course-{next(self._ids)}",
                org_id=org_id,
                stage=stage,
                grade=grade,
                year=year,
                name=name,
            )
            self.courses[course.id] = course
            self.created_courses.append(course)
        return course

    def close(self):
        self.closed += 1


@pytest.fixture
def make_store():
    """Factory for independent fake stores."""

    def _factory(**kwargs):
        return FakeEntityStore(**kwargs)

    return _factory


@pytest.fixture
def fake_store(make_store):
    return make_store()


@pytest.fixture
def liceo_store(fake_store):
    """
    One organization (code 12345, "Liceo A") with Primary grades 1-8 and
    Secondary grades 1-2 defined for 2025.
    """
    org = fake_store.add_org(12345, "Liceo A", org_id="liceo-a")
    for grade in range(1, 9):
        fake_store.add_course(org, Stage.PRIMARY, grade, 2025, course_id=f"liceo-a-p{grade}")
    for grade in range(1, 3):
        fake_store.add_course(org, Stage.SECONDARY, grade, 2025, course_id=f"liceo-a-s{grade}")
    return fake_store


@pytest.fixture(scope="function")
def app(tmp_path, fake_store):
    """Create and configure a test Flask application wired to the fake store."""
    flask_app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "IMPORTER_ENABLED": True,
            "IMPORTER_WORKER_ENABLED": False,
            "IMPORTER_UPLOAD_DIR": str(tmp_path / "uploads"),
            "CELERY_SQLITE_PATH": str(tmp_path / "celery.sqlite"),
            "CELERY_CONFIG": {"task_always_eager": True, "task_eager_propagates": True},
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
        }
    )
    flask_app.extensions["importer"]["store_factory"] = lambda _app: fake_store
    yield flask_app


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers and ensure testing environment"""
    os.environ["FLASK_ENV"] = "testing"

    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers"""
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.slow)
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
