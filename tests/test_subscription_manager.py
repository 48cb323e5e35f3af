import json

import pytest

from convosync.backend.memory import InMemoryBackend
from convosync.services.subscription_manager import POLLING, Scope, SubscriptionManager
from convosync.utils.realtime_bus import NoopBus

from conftest import eventually


@pytest.fixture
async def manager(backend, settings):
    manager = SubscriptionManager(backend, settings)
    yield manager
    await manager.close()


@pytest.mark.asyncio
async def test_table_scope_delivers_filtered_events(manager, peer_backend):
    events = []

    async def on_event(event):
        events.append(event)

    await manager.subscribe(Scope.conversation("c1"), on_event)
    await peer_backend.insert("messages", {"conversation_id": "c1", "content": "a"})
    await peer_backend.insert("messages", {"conversation_id": "c2", "content": "b"})

    await eventually(lambda: len(events) == 1)
    assert events[0].row["content"] == "a"
    assert manager.state("conversation:c1") == "live"


@pytest.mark.asyncio
async def test_channel_scope_decodes_json(manager, peer_backend, database):
    payloads = []

    async def on_event(payload):
        payloads.append(payload)

    await manager.subscribe(Scope.typing(), on_event)
    await peer_backend.bus.publish("typing", json.dumps({"conversation_id": "c1", "user_id": "bob", "is_typing": True}))
    await peer_backend.bus.publish("typing", "{not json")
    await database.broker.flush()

    assert payloads == [{"conversation_id": "c1", "user_id": "bob", "is_typing": True}]


@pytest.mark.asyncio
async def test_exclusive_scope_closes_previous_conversation(manager, database):
    async def ignore(event):
        return None

    await manager.subscribe(Scope.conversation("c1"), ignore)
    await manager.subscribe(Scope.conversation_list("alice"), ignore)
    await manager.subscribe(Scope.conversation("c2"), ignore)

    assert not manager.is_active("conversation:c1")
    assert manager.is_active("conversation:c2")
    assert manager.is_active("conversations:alice")
    # two conversation tables plus three list tables
    assert database.broker.subscriber_count("db:messages") == 2
    assert database.broker.subscriber_count("db:participants") == 2


@pytest.mark.asyncio
async def test_resubscribing_same_scope_replaces_it(manager, database):
    async def ignore(event):
        return None

    await manager.subscribe(Scope.presence(), ignore)
    await manager.subscribe(Scope.presence(), ignore)

    assert database.broker.subscriber_count("presence") == 1


@pytest.mark.asyncio
async def test_unsubscribe_handle_tears_down(manager, database):
    async def ignore(event):
        return None

    unsubscribe = await manager.subscribe(Scope.conversation("c1"), ignore)
    await unsubscribe()
    await unsubscribe()

    assert not manager.is_active("conversation:c1")
    assert database.broker.subscriber_count("db:messages") == 0


@pytest.mark.asyncio
async def test_handler_errors_do_not_break_the_subscription(manager, peer_backend):
    seen = []

    async def flaky(event):
        seen.append(event.row["content"])
        if len(seen) == 1:
            raise RuntimeError("boom")

    await manager.subscribe(Scope.conversation("c1"), flaky)
    await peer_backend.insert("messages", {"conversation_id": "c1", "content": "a"})
    await peer_backend.insert("messages", {"conversation_id": "c1", "content": "b"})

    await eventually(lambda: seen == ["a", "b"])
    assert manager.state("conversation:c1") == "live"


@pytest.mark.asyncio
async def test_reconnect_then_reconcile(manager, backend, peer_backend):
    events, reconciles = [], []

    async def on_event(event):
        events.append(event.row["content"])

    async def reconcile():
        reconciles.append(await backend.count("messages", {"conversation_id": "c1"}))

    await manager.subscribe(Scope.conversation("c1"), on_event, reconcile=reconcile)
    backend.go_offline()
    await peer_backend.insert("messages", {"conversation_id": "c1", "content": "during gap"})
    await eventually(lambda: manager.state("conversation:c1") != "live")

    backend.go_online()
    await eventually(lambda: reconciles == [1])
    await peer_backend.insert("messages", {"conversation_id": "c1", "content": "after"})

    await eventually(lambda: events == ["after"])
    assert manager.state("conversation:c1") == "live"


@pytest.mark.asyncio
async def test_initial_failure_degrades_to_polling(backend, settings):
    backend.go_offline()
    manager = SubscriptionManager(backend, settings)
    polls = []

    async def reconcile():
        polls.append(True)

    async def ignore(event):
        return None

    await manager.subscribe(Scope.conversation("c1"), ignore, reconcile=reconcile)
    assert manager.degraded
    assert manager.state("conversation:c1") == POLLING

    backend.go_online()
    await eventually(lambda: manager.state("conversation:c1") == "live")
    assert polls
    await manager.close()


@pytest.mark.asyncio
async def test_disabled_bus_polls(database, settings):
    backend = InMemoryBackend(database, database.broker.connect())
    backend.bus = NoopBus()
    manager = SubscriptionManager(backend, settings)
    polls = []

    async def reconcile():
        polls.append(True)

    async def ignore(event):
        return None

    await manager.subscribe(Scope.conversation_list("alice"), ignore, reconcile=reconcile)

    await eventually(lambda: len(polls) >= 2)
    assert manager.degraded
    await manager.close()
    assert not manager.is_active("conversations:alice")
