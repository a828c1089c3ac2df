"""Tests for the segment query builder and the contact repository"""
from datetime import datetime, timezone

from crm_automation.domain.models import ConditionGroup
from crm_automation.engine.segment_query import build_mongo_query
from crm_automation.repositories.contact_repo import ContactRepository


NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


def rules(logic="AND", *items):
    return ConditionGroup.model_validate({"logic": logic, "rules": list(items)})


def test_empty_group_is_empty_filter():
    assert build_mongo_query(ConditionGroup(), NOW) == {}


def test_single_condition_is_not_wrapped():
    query = build_mongo_query(rules("AND", {"field": "city", "operator": "equals", "value": "Pune"}), NOW)
    assert query == {"city": "Pune"}


def test_and_or_nesting():
    group = rules(
        "OR",
        {"field": "score", "operator": "greater_than", "value": 50},
        {"logic": "AND", "rules": [
            {"field": "tags", "operator": "in", "value": ["vip"]},
            {"field": "email", "operator": "exists"},
        ]},
    )
    assert build_mongo_query(group, NOW) == {
        "$or": [
            {"score": {"$gt": 50}},
            {"$and": [
                {"tags": {"$in": ["vip"]}},
                {"email": {"$exists": True, "$ne": None}},
            ]},
        ]
    }


def test_contains_is_escaped_case_insensitive_regex():
    query = build_mongo_query(rules("AND", {"field": "name", "operator": "contains", "value": "a.b"}), NOW)
    assert query == {"name": {"$regex": r"a\.b", "$options": "i"}}


def test_date_operators_use_naive_utc():
    query = build_mongo_query(rules("AND", {"field": "created_at", "operator": "within_days", "value": 7}), NOW)
    assert query == {"created_at": {"$gte": datetime(2024, 3, 3, 12, 0)}}

    query = build_mongo_query(
        rules("AND", {"field": "created_at", "operator": "before", "value": "2024-01-01T00:00:00Z"}), NOW
    )
    assert query == {"created_at": {"$lt": datetime(2024, 1, 1)}}


def test_unexpressible_conditions_are_dropped():
    group = rules(
        "AND",
        {"field": "name", "operator": "regex", "value": "("},
        {"field": "n", "operator": "between", "value": [1]},
        {"field": "city", "operator": "equals", "value": "Pune"},
    )
    assert build_mongo_query(group, NOW) == {"city": "Pune"}


def test_contact_repository_scopes_by_tenant(db):
    contacts = db["contacts"]
    contacts.insert_many([
        {"user_id": "t1", "contact_id": "c1", "city": "Pune", "score": 80},
        {"user_id": "t1", "contact_id": "c2", "city": "Delhi", "score": 90},
        {"user_id": "t2", "contact_id": "c3", "city": "Pune", "score": 99},
    ])
    repo = ContactRepository(db)

    group = rules("AND", {"field": "city", "operator": "equals", "value": "Pune"})
    found = repo.find_contacts("t1", group)
    assert [c["contact_id"] for c in found] == ["c1"]
    assert "_id" not in found[0]
    assert repo.count_contacts("t1", ConditionGroup()) == 2
    assert repo.get_contact("t2", "c3")["score"] == 99
    assert repo.get_contact("t1", "c3") is None
