"""ID Generation Utilities"""
import os
import socket
import uuid
from datetime import datetime, timezone
from typing import Optional


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix

    Args:
        prefix: Optional prefix for the ID (e.g., 'AUT', 'CMP', 'SUB')

    Returns:
        Unique ID string

    Examples:
        >>> generate_id('AUT')
        'AUT-a1b2c3d4e5f6'
        >>> generate_id()
        'a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]

    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def generate_automation_id() -> str:
    """Generate automation ID"""
    return generate_id("AUT")


def generate_step_id() -> str:
    """Generate automation step ID"""
    return generate_id("STEP")


def generate_campaign_id() -> str:
    """Generate drip campaign ID"""
    return generate_id("CMP")


def generate_campaign_email_id() -> str:
    """Generate drip campaign email ID"""
    return generate_id("EML")


def generate_subscription_id() -> str:
    """Generate drip subscription ID"""
    return generate_id("SUB")


def generate_due_item_id() -> str:
    """Generate due item ID"""
    return generate_id("DUE")


def generate_execution_id() -> str:
    """Generate execution (audit) record ID"""
    return generate_id("EXE")


def generate_correlation_id() -> str:
    """
    Generate a correlation ID for request tracing

    Returns:
        Correlation ID string with timestamp prefix
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    unique_part = uuid.uuid4().hex[:8]
    return f"COR-{timestamp}-{unique_part}"


def generate_server_id() -> str:
    """Unique identifier of this process, used as the owner of execution claims"""
    hostname = socket.gethostname()
    pid = os.getpid()
    return f"{hostname}-{pid}-{generate_id()[:8]}"
