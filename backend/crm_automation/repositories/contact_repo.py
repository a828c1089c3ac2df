"""Contact Repository - Read-only contact lookups for the engines"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo.database import Database

from .mongo_client import get_collection
from ..domain.models import ConditionGroup
from ..engine.segment_query import build_mongo_query
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ContactRepository:
    """
    Mongo-backed contact store

    Contacts are owned by the CRM; this repository only reads them so
    drip step conditions and segment previews can see contact fields.
    """

    def __init__(self, database: Optional[Database] = None):
        self._contacts: Collection = get_collection("contacts", database)

    def get_contact(self, user_id: str, contact_id: str) -> Optional[Dict[str, Any]]:
        """Get a contact document without its Mongo id"""
        return self._contacts.find_one({"user_id": user_id, "contact_id": contact_id}, {"_id": 0})

    def find_contacts(self, user_id: str, group: ConditionGroup, limit: int = 100) -> List[Dict[str, Any]]:
        """Contacts matching a rule group (segment preview)"""
        query = self._scoped_query(user_id, group)
        return list(self._contacts.find(query, {"_id": 0}).limit(limit))

    def count_contacts(self, user_id: str, group: ConditionGroup) -> int:
        return self._contacts.count_documents(self._scoped_query(user_id, group))

    def _scoped_query(self, user_id: str, group: ConditionGroup) -> Dict[str, Any]:
        rules = build_mongo_query(group)
        if not rules:
            return {"user_id": user_id}
        return {"$and": [{"user_id": user_id}, rules]}
