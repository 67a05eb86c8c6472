"""Messaging source interfaces: where events come from and enrichments are fetched."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from hookrelay.core.bus import EventBus, SourceEventReceived
from hookrelay.errors import SourceNotReadyError
from hookrelay.sources.state import LIFECYCLE_EVENTS, ReadyState, ReadyStateMachine
from hookrelay.utils.logging import get_logger

log = get_logger(__name__)

# Origin of status/story broadcasts; never relayed
BROADCAST_ADDRESS = "status@broadcast"


class SourceMessage(ABC):
    """A message or notification attached to a source event.

    Each ``get_*`` coroutine fetches one optional enrichment. Sources that
    have no notion of a field leave the default, which returns None.
    """

    @property
    @abstractmethod
    def raw_data(self) -> dict[str, Any]: ...

    @property
    @abstractmethod
    def origin(self) -> str | None:
        """Identifier of the chat or contact the event came from."""

    @property
    def has_media(self) -> bool:
        return False

    async def download_media(self) -> dict[str, Any] | None:
        return None

    async def get_info(self) -> Any:
        return None

    async def get_chat(self) -> Any:
        return None

    async def get_contact(self) -> Any:
        return None

    async def get_quoted_message(self) -> Any:
        return None

    async def get_order(self) -> Any:
        return None

    async def get_group_mentions(self) -> Any:
        return None

    async def get_mentions(self) -> Any:
        return None

    async def get_payment(self) -> Any:
        return None

    async def get_reactions(self) -> Any:
        return None


class MessagingSource(ABC):
    def __init__(self, bus: EventBus, events: list[str] | None = None) -> None:
        self.bus = bus
        self._events = frozenset(e for e in (events or []) if e)
        self._state = ReadyStateMachine()

    @property
    @abstractmethod
    def platform_name(self) -> str: ...

    @property
    def ready_state(self) -> ReadyState:
        return self._state.state

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    async def get_contacts(self) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def get_contact_by_id(self, contact_id: str) -> dict[str, Any]: ...

    @abstractmethod
    async def get_groups(self) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def send_message(self, recipient: str, content: str) -> None: ...

    def forwards(self, event_code: str) -> bool:
        return not self._events or event_code in self._events

    async def emit(self, event_code: str, message: SourceMessage | None = None) -> None:
        """Publish an event on the bus if its code is in the configured list."""
        if not self.forwards(event_code):
            log.debug("source_event_ignored", event_code=event_code)
            return
        await self.bus.publish(SourceEventReceived(event_code=event_code, message=message))

    # ------------------------------------------------------------------
    # Readiness transitions; each change is announced as a lifecycle event
    # ------------------------------------------------------------------

    async def mark_ready(self) -> None:
        await self._announce(self._state.mark_ready())

    async def mark_awaiting_pairing(self, code: str) -> None:
        await self._announce(self._state.await_pairing(code))

    async def mark_disconnected(self) -> None:
        await self._announce(self._state.reset())

    async def _announce(self, changed: bool) -> None:
        if changed:
            await self.emit(LIFECYCLE_EVENTS[self.ready_state.phase])

    def require_ready(self) -> None:
        if not self.ready_state.ready:
            raise SourceNotReadyError()
