"""
Pytest Configuration and Fixtures

Shared fixtures for all tests. Tests run on the in-process store with
recording transports; time is always passed in explicitly.
"""

import os
import tempfile

# Settings are read once at import; pin them before studioflow is imported
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("GLOBAL_MATCH_POLICY", "FIRE_ALL")
os.environ.setdefault("LOGS_PATH", tempfile.mkdtemp(prefix="studioflow-logs-"))

import pytest

from studioflow.domain.enums import GlobalMatchPolicy
from studioflow.engine.engine import AutomationEngine
from studioflow.engine.timing_resolver import TimingResolver
from studioflow.repositories import build_memory_repositories

from tests.factories import (
    RecordingEmailSender, RecordingSmsSender, make_subject, make_tenant,
    STAGE_BOOKED, STAGE_CONSULT, STAGE_INQUIRY, TENANT_ID
)


@pytest.fixture
def repos():
    """Fresh in-memory repositories with the default pipeline stages"""
    repositories = build_memory_repositories()
    repositories.subjects.save_stage(TENANT_ID, STAGE_INQUIRY, "Inquiry")
    repositories.subjects.save_stage(TENANT_ID, STAGE_CONSULT, "Consultation")
    repositories.subjects.save_stage(TENANT_ID, STAGE_BOOKED, "Booked")
    return repositories


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def sms_sender():
    return RecordingSmsSender()


@pytest.fixture
def tenant(repos):
    return repos.tenants.save_tenant(make_tenant())


@pytest.fixture
def subject(repos, tenant):
    return repos.subjects.save_subject(make_subject())


@pytest.fixture
def engine(repos, email_sender, sms_sender, tenant):
    """Engine over the memory store with recording transports"""
    return AutomationEngine(
        repos,
        email_sender=email_sender,
        sms_sender=sms_sender,
        server_id="test-server",
        timing_resolver=TimingResolver(countdown_grace_days=0),
        default_policy=GlobalMatchPolicy.FIRE_ALL,
        max_cascade_depth=3,
        batch_size=100
    )
