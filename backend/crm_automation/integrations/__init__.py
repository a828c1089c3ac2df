"""Default collaborator implementations"""
from .http_executor import HttpActionExecutor
from .message_sender import WebhookMessageSender

__all__ = [
    "HttpActionExecutor",
    "WebhookMessageSender",
]
