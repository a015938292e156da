from event_engine.consumers.bootstrap import HandlerEntry, register_all_handlers, register_providers
from event_engine.core.config import EventConfig
from event_engine.events.bus import EventBus


async def create_initial_task(event):
    return None


async def notify_owner(event):
    return None


def tasks_provider(bus):
    return [
        HandlerEntry(
            event_name="projects:project.created",
            handler=create_initial_task,
            module="tasks",
            options={"handler_id": "tasks-project-created-handler", "timeout_ms": 10000},
        ),
    ]


def notifications_provider(bus):
    return [HandlerEntry(event_name="projects:project.created", handler=notify_owner, module="notifications")]


def test_providers_register_their_handlers():
    bus = EventBus(EventConfig())

    registered, failed = register_providers(bus, [tasks_provider, notifications_provider])

    assert (registered, failed) == (2, 0)
    handlers = bus.registry.get_handlers("projects:project.created")
    assert [h.module_id for h in handlers] == ["tasks", "notifications"]
    assert handlers[0].timeout_ms == 10000


def test_bad_entries_are_counted_and_skipped():
    bus = EventBus(EventConfig())
    entries = [
        HandlerEntry(event_name="not-a-valid-name", handler=notify_owner, module="notifications"),
        HandlerEntry(event_name="projects:project.created", handler=notify_owner, module="notifications",
                     options={"handler_id": "dup"}),
        HandlerEntry(event_name="projects:project.created", handler=notify_owner, module="notifications",
                     options={"handler_id": "dup"}),
    ]

    assert register_all_handlers(bus, entries) == (1, 2)
    assert bus.registry.handler_count("projects:project.created") == 1
