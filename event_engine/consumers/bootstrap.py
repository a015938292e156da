"""
Startup-time handler registration.

Feature modules expose a provider: a function that takes the bus and returns
the HandlerEntry list it wants registered. Providers are listed statically in
DEFAULT_PROVIDERS; nothing is discovered or imported by name at runtime.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Sequence, Tuple

from event_engine.events.types import EventHandler

log = logging.getLogger("event_bootstrap")


@dataclass
class HandlerEntry:
    event_name: str
    handler: EventHandler
    module: str
    options: Dict[str, Any] = field(default_factory=dict)  # keyword arguments for EventBus.register


HandlerProvider = Callable[[Any], List[HandlerEntry]]

# Feature modules add their provider functions here.
DEFAULT_PROVIDERS: Tuple[HandlerProvider, ...] = ()


def register_all_handlers(bus, entries: Sequence[HandlerEntry]) -> Tuple[int, int]:
    """Registers every entry; a bad entry is logged and skipped. Returns (succeeded, failed)."""
    log.info(f"[Event Bootstrap] Registering {len(entries)} event handlers...")
    registered, failed = 0, 0

    for entry in entries:
        try:
            bus.register(entry.event_name, entry.handler, module=entry.module, **entry.options)
            registered += 1
            log.info(f"[Event Bootstrap] Registered handler for: {entry.event_name} ({entry.module})")
        except Exception as e:
            failed += 1
            log.error(f"[Event Bootstrap] Failed to register handler for {entry.event_name}: {e}")

    log.info(f"[Event Bootstrap] Registration complete: {registered} succeeded, {failed} failed")
    return registered, failed


def register_providers(bus, providers: Sequence[HandlerProvider]) -> Tuple[int, int]:
    entries: List[HandlerEntry] = []
    for provider in providers:
        entries.extend(provider(bus))
    return register_all_handlers(bus, entries)
