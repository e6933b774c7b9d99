import asyncio

import pytest

from src.brainstorm.domain.models import (
    ConceptEdgeCreate,
    ConceptNodeCreate,
    ConceptNodeUpdate,
    SessionCreate,
)
from src.brainstorm.domain.personas import Speaker
from src.brainstorm.errors import CompletionError, InvalidInput, NodeNotFound, SessionEnded, SessionNotFound
from src.brainstorm.services.session_service import greeting

from tests.utils import concept, make_user


def test_create_and_open_greets_once(service, store):
    alice, bob = make_user(), make_user("u-bob", "Bob")

    async def scenario():
        sess = await service.create_session(alice, SessionCreate(title="Mascot", goal="name a mascot"))
        first = await service.open_session(sess.slug, alice)
        second = await service.open_session(sess.slug, bob)
        participants = await service.participants(sess.slug)
        await service.shutdown()
        return first, second, participants

    first, second, participants = asyncio.run(scenario())
    assert [m["content"] for m in first.messages] == [greeting("name a mascot")]
    assert len(second.messages) == 1
    assert second.participant_count == 2
    assert [p.display_name for p in participants] == ["Alice", "Bob"]


def test_unknown_slug_is_not_found(service):
    with pytest.raises(SessionNotFound):
        asyncio.run(service.open_session("missing", make_user()))


def test_mention_gets_persona_reply_and_concepts(service, store, completion):
    completion.replies = ["A fox mascot would be playful and clever!"]
    completion.concepts = {"fox": [concept("Fox Mascot")]}
    alice = make_user()

    async def scenario():
        sess = await service.create_session(alice, SessionCreate(title="Mascot", goal="name a mascot"))
        result = await service.post_message(sess.slug, alice, "@spark what about a fox?")
        await service.runner.drain()
        messages = await store.list_messages(sess.session_id)
        nodes = await store.list_nodes(sess.session_id)
        return result, messages, nodes

    result, messages, nodes = asyncio.run(scenario())
    assert [m.speaker for m in messages] == [Speaker.USER, Speaker.IDEA_GENERATOR]
    assert result.reply.content == "A fox mascot would be playful and clever!"
    assert result.message.author_id == "u-alice"
    assert completion.requests[0].history == []
    assert [(n.label, n.speaker) for n in nodes] == [("Fox Mascot", Speaker.IDEA_GENERATOR)]


def test_plain_message_has_no_reply(service, completion):
    alice = make_user()

    async def scenario():
        sess = await service.create_session(alice, SessionCreate(title="T"))
        return await service.post_message(sess.slug, alice, "just thinking")

    result = asyncio.run(scenario())
    assert result.reply is None and result.notifications == []
    assert completion.requests == []


def test_failed_mention_keeps_user_message_and_notifies(service, store, completion):
    completion.replies = [CompletionError("provider down")]
    alice = make_user()

    async def scenario():
        sess = await service.create_session(alice, SessionCreate(title="T"))
        result = await service.post_message(sess.slug, alice, "@probe is this risky?")
        return result, await store.list_messages(sess.session_id)

    result, messages = asyncio.run(scenario())
    assert [m.speaker for m in messages] == [Speaker.USER]
    assert result.reply is None
    assert result.notifications[0].level == "error"
    assert result.notifications[0].detail == "Failed to get response from critic"


def test_thirty_messages_get_exactly_two_goal_keeper_messages(service, store):
    alice = make_user()

    async def scenario():
        sess = await service.create_session(alice, SessionCreate(title="T", goal="name a mascot"))
        await service.open_session(sess.slug, alice)
        for i in range(40):
            await service.post_message(sess.slug, alice, f"idea {i}")
        messages = await store.list_messages(sess.session_id)
        await service.shutdown()
        return messages

    messages = asyncio.run(scenario())
    keepers = [i + 1 for i, m in enumerate(messages) if m.speaker is Speaker.GOAL_KEEPER]
    assert keepers == [16, 31]


def test_mindmap_crud(service):
    alice = make_user()

    async def scenario():
        sess = await service.create_session(alice, SessionCreate(title="T"))
        a = await service.add_node(sess.slug, ConceptNodeCreate(label="  Fox  "))
        b = await service.add_node(sess.slug, ConceptNodeCreate(label="Owl", x=10, y=20))
        edge = await service.add_edge(sess.slug, ConceptEdgeCreate(source_node_id=a.node_id, target_node_id=b.node_id))
        moved = await service.update_node(sess.slug, b.node_id, ConceptNodeUpdate(x=50, highlight="#FFD700"))
        with pytest.raises(NodeNotFound):
            await service.update_node(sess.slug, "nope", ConceptNodeUpdate(x=1))
        with pytest.raises(NodeNotFound):
            await service.add_edge(sess.slug, ConceptEdgeCreate(source_node_id=a.node_id, target_node_id="nope"))
        assert await service.delete_edge(sess.slug, edge.edge_id)
        with pytest.raises(NodeNotFound):
            await service.delete_edge(sess.slug, edge.edge_id)
        assert await service.delete_node(sess.slug, a.node_id)
        return a, moved, await service.mindmap(sess.slug)

    a, moved, mindmap = asyncio.run(scenario())
    assert a.label == "Fox" and 0 <= a.x < 600 and 0 <= a.y < 400
    assert (moved.x, moved.y, moved.highlight) == (50, 20, "#FFD700")
    assert [n.label for n in mindmap.nodes] == ["Owl"]
    assert mindmap.edges == []


def test_null_node_fields_are_rejected_and_extraction_keeps_working(service, completion):
    alice = make_user()
    completion.concepts = {"ears": [concept("Fox Ears", "Fox")]}

    async def scenario():
        sess = await service.create_session(alice, SessionCreate(title="T"))
        fox = await service.add_node(sess.slug, ConceptNodeCreate(label="Fox", x=10, y=20))
        for patch in ({"label": None, "x": None}, {"is_cancelled": None}, {"label": "   "}):
            with pytest.raises(InvalidInput):
                await service.update_node(sess.slug, fox.node_id, ConceptNodeUpdate(**patch))
        await service.update_node(sess.slug, fox.node_id, ConceptNodeUpdate(highlight="#FFD700"))
        cleared = await service.update_node(sess.slug, fox.node_id, ConceptNodeUpdate(highlight=None))
        created = await service.extractor.extract(sess.session_id, "fox ears", Speaker.IDEA_GENERATOR)
        return cleared, created, await service.mindmap(sess.slug)

    cleared, created, mindmap = asyncio.run(scenario())
    assert (cleared.label, cleared.x, cleared.y, cleared.is_cancelled) == ("Fox", 10, 20, False)
    assert cleared.highlight is None
    assert [n.label for n in created] == ["Fox Ears"]
    assert len(mindmap.edges) == 1


def test_blank_title_is_rejected(service):
    with pytest.raises(InvalidInput):
        asyncio.run(service.create_session(make_user(), SessionCreate(title="   ")))


def test_node_of_another_session_is_not_found(service):
    alice = make_user()

    async def scenario():
        s1 = await service.create_session(alice, SessionCreate(title="A"))
        s2 = await service.create_session(alice, SessionCreate(title="B"))
        node = await service.add_node(s1.slug, ConceptNodeCreate(label="Fox"))
        await service.delete_node(s2.slug, node.node_id)

    with pytest.raises(NodeNotFound):
        asyncio.run(scenario())


def test_ended_session_rejects_mindmap_edits(service):
    alice = make_user()

    async def scenario():
        sess = await service.create_session(alice, SessionCreate(title="T"))
        await service.end_session(sess.slug, alice)
        with pytest.raises(SessionEnded):
            await service.add_node(sess.slug, ConceptNodeCreate(label="Late"))
        view = await service.open_session(sess.slug, alice)
        return view, service.schedulers.get(sess.session_id)

    view, scheduler = asyncio.run(scenario())
    assert view.messages == []
    assert scheduler is None
