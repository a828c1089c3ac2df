"""Builders for test payloads"""
from typing import Any, Dict, List, Optional


def make_trigger_data(actions: Optional[List[Dict[str, Any]]] = None, **overrides) -> Dict[str, Any]:
    data = {
        "name": "New lead follow-up",
        "event_source": "facebook_lead",
        "event_type": "lead_created",
        "condition_group": {
            "logic": "AND",
            "conditions": [{"field": "lead_score", "operator": "greater_than", "value": 50}],
        },
        "actions": actions if actions is not None else [
            {"type": "add_tag", "config": {"tag": "hot"}, "order": 0},
            {"type": "send_template", "config": {"template_name": "welcome"}, "order": 1},
        ],
        "status": "active",
    }
    data.update(overrides)
    return data


def node(node_id: str, node_type: str, label: str = "", **config) -> Dict[str, Any]:
    return {"id": node_id, "type": node_type, "data": {"label": label or node_id, "config": config}}


def edge(source: str, target: str, handle: Optional[str] = None) -> Dict[str, Any]:
    return {"id": f"{source}-{target}", "source": source, "target": target, "source_handle": handle}


def make_campaign_data(steps: Optional[List[Dict[str, Any]]] = None, **overrides) -> Dict[str, Any]:
    data = {
        "name": "Onboarding",
        "timezone": "UTC",
        "steps": steps if steps is not None else [
            {"order": 0, "name": "Welcome", "day_offset": 0, "time_of_day": "09:00",
             "message_type": "text", "text_content": "Hi {{first_name}}"},
        ],
    }
    data.update(overrides)
    return data
