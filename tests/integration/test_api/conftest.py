"""API test client wired to the in-memory engine"""

import pytest
from fastapi.testclient import TestClient

from studioflow.api.deps import get_engine_dep, get_repositories_dep
from studioflow.main import create_app

from tests.factories import TENANT_ID


@pytest.fixture
def client(repos, engine, subject):
    app = create_app()
    app.dependency_overrides[get_repositories_dep] = lambda: repos
    app.dependency_overrides[get_engine_dep] = lambda: engine
    test_client = TestClient(app)
    test_client.headers.update({"X-Tenant-Id": TENANT_ID})
    return test_client
