"""Repository modules - Data access layer"""
from .mongo_client import get_database, get_collection, set_database, create_indexes
from .trigger_repo import TriggerRepository
from .event_repo import EventRepository
from .flow_repo import FlowRepository
from .drip_repo import DripRepository
from .contact_repo import ContactRepository

__all__ = [
    "get_database",
    "get_collection",
    "set_database",
    "create_indexes",
    "TriggerRepository",
    "EventRepository",
    "FlowRepository",
    "DripRepository",
    "ContactRepository",
]
