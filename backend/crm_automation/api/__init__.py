"""API module - Routes and dependencies"""
from .deps import get_user_id_dep, get_correlation_id_dep

__all__ = ["get_user_id_dep", "get_correlation_id_dep"]
