"""ID Generation Utilities"""
import uuid
from datetime import datetime, timezone
from typing import Optional


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix

    Args:
        prefix: Optional prefix for the ID (e.g., 'TRG', 'FLW', 'RUN')

    Returns:
        Unique ID string

    Examples:
        >>> generate_id('TRG')
        'TRG-a1b2c3d4e5f6'
        >>> generate_id()
        'a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]

    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def generate_trigger_id() -> str:
    """Generate trigger ID"""
    return generate_id("TRG")


def generate_action_id() -> str:
    """Generate trigger action ID"""
    return generate_id("ACT")


def generate_execution_id() -> str:
    """Generate trigger execution ID"""
    return generate_id("TEX")


def generate_event_id() -> str:
    """Generate real-time event ID"""
    return generate_id("EVT")


def generate_flow_id() -> str:
    """Generate flow definition ID"""
    return generate_id("FLW")


def generate_flow_version_id() -> str:
    """Generate flow version snapshot ID"""
    return generate_id("FLV")


def generate_instance_id() -> str:
    """Generate flow instance ID"""
    return generate_id("FLI")


def generate_campaign_id() -> str:
    """Generate drip campaign ID"""
    return generate_id("DRP")


def generate_step_id() -> str:
    """Generate drip step ID"""
    return generate_id("STP")


def generate_run_id() -> str:
    """Generate drip run ID"""
    return generate_id("RUN")


def generate_correlation_id() -> str:
    """
    Generate a correlation ID for request tracing

    Returns:
        Correlation ID string with timestamp prefix
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    unique_part = uuid.uuid4().hex[:8]
    return f"COR-{timestamp}-{unique_part}"
