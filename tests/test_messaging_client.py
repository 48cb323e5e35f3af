import asyncio

import pytest

from convosync.errors import FetchError, ValidationError
from convosync.services.message_stream import MessageStream
from convosync.services.messaging_client import MessagingClient

from conftest import eventually


@pytest.fixture
async def clients(alice, bob, backend, peer_backend, settings):
    started = []

    async def make(session, conn):
        client = MessagingClient(session, conn, settings)
        await client.start()
        started.append(client)
        return client

    yield make
    for client in started:
        await client.stop()


@pytest.mark.asyncio
async def test_direct_hello_scenario(clients, alice, bob, backend, peer_backend):
    x = await clients(alice, backend)

    convo = await x.start_direct("bob")
    await x.send_message(convo.id, "hello")

    page = await MessageStream(bob, peer_backend, convo.id).fetch_page(convo.id)
    assert len(page.items) == 1
    assert page.items[0].content == "hello"
    assert page.items[0].sender_id == "alice"
    assert x.conversations.get(convo.id).last_message.content == "hello"


@pytest.mark.asyncio
async def test_two_devices_converge_on_one_direct_conversation(clients, alice, backend, peer_backend):
    phone = await clients(alice, backend)
    laptop = await clients(alice, peer_backend)

    first, second = await asyncio.gather(phone.start_direct("bob"), laptop.start_direct("bob"))

    assert first.id == second.id
    assert await backend.count("conversations", {"kind": "direct"}) == 1
    await eventually(lambda: phone.conversations.get(first.id) and laptop.conversations.get(first.id))


@pytest.mark.asyncio
async def test_realtime_unread_and_read_receipts(clients, alice, bob, backend, peer_backend):
    x = await clients(alice, backend)
    y = await clients(bob, peer_backend)
    convo = await x.start_direct("bob")
    await eventually(lambda: y.conversations.get(convo.id) is not None)

    message = await x.send_message(convo.id, "are you up?")

    await eventually(lambda: y.conversations.get(convo.id).unread_count == 1)
    assert y.conversations.get(convo.id).last_message.content == "are you up?"

    stream = await y.open_conversation(convo.id)
    assert [m.content for m in stream.messages] == ["are you up?"]
    assert y.conversations.get(convo.id).unread_count == 0
    await eventually(lambda: x.receipts.read_by(message) == ["bob"])


@pytest.mark.asyncio
async def test_open_conversation_receives_live_messages(clients, alice, bob, backend, peer_backend):
    x = await clients(alice, backend)
    y = await clients(bob, peer_backend)
    convo = await x.start_direct("bob")
    await eventually(lambda: y.conversations.get(convo.id) is not None)
    stream = await y.open_conversation(convo.id)

    await x.send_message(convo.id, "one")
    await x.send_message(convo.id, "two")

    await eventually(lambda: [m.content for m in stream.messages] == ["two", "one"])
    # the viewer is looking at it, so nothing stays unread
    await eventually(lambda: y.conversations.get(convo.id).unread_count == 0)


@pytest.mark.asyncio
async def test_reconnect_reconciles_messages_missed_during_gap(clients, alice, bob, backend, peer_backend):
    x = await clients(alice, backend)
    y = await clients(bob, peer_backend)
    convo = await x.start_direct("bob")
    stream = await x.open_conversation(convo.id)

    backend.go_offline()
    await y.send_message(convo.id, "sent while you were away")
    await y.send_message(convo.id, "still there?")
    await asyncio.sleep(0.05)
    assert stream.messages == []

    backend.go_online()

    await eventually(lambda: [m.content for m in stream.messages] == ["still there?", "sent while you were away"])
    await eventually(lambda: x.conversations.get(convo.id).last_message.content == "still there?")


@pytest.mark.asyncio
async def test_opening_another_conversation_closes_the_previous(clients, alice, backend, database):
    x = await clients(alice, backend)
    first = await x.start_direct("bob")
    second = await x.start_direct("carol")

    old_stream = await x.open_conversation(first.id)
    new_stream = await x.open_conversation(second.id)

    assert old_stream.closed
    assert x.stream is new_stream
    assert not x.subscriptions.is_active(f"conversation:{first.id}")
    assert x.subscriptions.is_active(f"conversation:{second.id}")

    await x.close_conversation()
    assert x.stream is None
    assert not x.subscriptions.is_active(f"conversation:{second.id}")


@pytest.mark.asyncio
async def test_typing_reaches_the_other_conversation_list(clients, alice, bob, backend, peer_backend):
    x = await clients(alice, backend)
    y = await clients(bob, peer_backend)
    convo = await x.start_direct("bob")
    await eventually(lambda: y.conversations.get(convo.id) is not None)
    await x.open_conversation(convo.id)

    await x.set_typing(True)

    await eventually(lambda: y.conversations.get(convo.id).is_typing)
    await eventually(lambda: not y.conversations.get(convo.id).is_typing)


@pytest.mark.asyncio
async def test_presence_between_clients(clients, alice, bob, backend, peer_backend):
    x = await clients(alice, backend)
    y = await clients(bob, peer_backend)

    # bob started second and still learns that alice is online
    await eventually(lambda: y.presence.is_online("alice"))
    await eventually(lambda: x.presence.is_online("bob"))


@pytest.mark.asyncio
async def test_upload_media_and_send(clients, alice, backend, database):
    x = await clients(alice, backend)
    convo = await x.start_direct("bob")

    media = await x.upload_media(b"\x89PNG", "holiday.PNG")
    message = await x.send_message(convo.id, None, media=media)

    assert media.url.startswith("http://test.local/storage/messages/alice/")
    assert media.url.endswith(".png")
    assert media.kind == "image"
    assert message.media_url == media.url
    ((bucket, path), (data, content_type)), = database.blobs.items()
    assert bucket == "messages" and data == b"\x89PNG" and content_type == "image/png"

    with pytest.raises(ValidationError):
        await x.upload_media(b"", "empty.jpg")


@pytest.mark.asyncio
async def test_start_fails_when_backend_stays_unreachable(alice, backend, settings):
    backend.go_offline()
    client = MessagingClient(alice, backend, settings)

    with pytest.raises(FetchError):
        await client.start()
    assert not client.started
    assert not client.subscriptions.is_active("conversations:alice")


@pytest.mark.asyncio
async def test_start_listens_before_the_first_list_pull(alice, bob, backend, peer_backend, settings, monkeypatch):
    client = MessagingClient(alice, backend, settings)
    load = client.conversations.load
    seen = []

    async def load_with_gap():
        seen.append(client.subscriptions.is_active("conversations:alice"))
        rows = await load()
        # a peer writes after the pull has finished but before start returns
        await MessageStream(bob, peer_backend, convo_id).send(convo_id, "bob", "landed mid-start")
        return rows

    other = MessagingClient(bob, peer_backend, settings)
    convo_id = (await other.conversations.get_or_create_direct("bob", "alice")).id
    monkeypatch.setattr(client.conversations, "load", load_with_gap)

    await client.start()
    try:
        assert seen == [True]
        await eventually(lambda: client.conversations.get(convo_id).last_message.content == "landed mid-start")
    finally:
        await client.stop()
