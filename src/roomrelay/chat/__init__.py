"""Chat service clients."""

from .client_api import ChatClient, HttpChatClient, RateLimited

__all__ = ["ChatClient", "HttpChatClient", "RateLimited"]
