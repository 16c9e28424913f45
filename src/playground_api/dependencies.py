"""FastAPI dependencies resolving the per-app store, HTTP client and relay."""
from fastapi import Request

from playground_api.config import Settings
from playground_api.db.store import ConversationStore
from playground_api.services.relay import CompletionRelay


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_relay(request: Request) -> CompletionRelay:
    """Relay bound to the app's store, shared HTTP client and settings."""
    state = request.app.state
    return CompletionRelay(store=state.store, client=state.http_client, settings=state.settings)
