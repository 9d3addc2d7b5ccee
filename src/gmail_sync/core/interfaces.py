"""Contracts the sync engine expects from its collaborators."""

from __future__ import annotations

from typing import Any, Protocol

from gmail_sync.core.models import HistoryPage, MessagePage


class AuthProvider(Protocol):
    def load_stored_credentials(self) -> bool: ...

    def get_profile(self) -> dict[str, Any]: ...


class ProviderClient(Protocol):
    def list_messages(
        self, query: str = "", page_size: int = 100, page_token: str | None = None
    ) -> MessagePage: ...

    def get_message(self, message_id: str, fmt: str = "full") -> dict[str, Any]: ...

    def get_messages_batch(self, message_ids: list[str], fmt: str = "full") -> list[dict[str, Any]]: ...

    def get_history(self, start_history_id: str, page_token: str | None = None) -> HistoryPage: ...


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def get_json(self, key: str) -> Any: ...

    def set_json(self, key: str, value: Any) -> None: ...
