import asyncio
import random

from src.brainstorm.domain.personas import Speaker
from src.brainstorm.errors import CompletionError
from src.brainstorm.services.concepts import ConceptExtractor
from src.brainstorm.services.tasks import TaskStatus

from tests.utils import concept


def _extractor(store, completion, seed=3):
    return ConceptExtractor(store, completion, rng=random.Random(seed))


def test_empty_extraction_writes_nothing(store, completion):
    async def scenario():
        sess = await store.create_session("T", None, "u1")
        created = await _extractor(store, completion).extract(sess.session_id, "nothing new", Speaker.CRITIC)
        return created, await store.list_nodes(sess.session_id), await store.list_edges(sess.session_id)

    created, nodes, edges = asyncio.run(scenario())
    assert created == [] and nodes == [] and edges == []


def test_unconnected_concepts_land_on_canvas(store, completion):
    completion.concepts = {"app": [concept("Mobile App"), concept("Push Alerts")]}

    async def scenario():
        sess = await store.create_session("T", None, "u1")
        await _extractor(store, completion).extract(sess.session_id, "What about a mobile app?", Speaker.IDEA_GENERATOR, "m1")
        return await store.list_nodes(sess.session_id), await store.list_edges(sess.session_id)

    nodes, edges = asyncio.run(scenario())
    assert [n.label for n in nodes] == ["Mobile App", "Push Alerts"]
    for n in nodes:
        assert 0 <= n.x < 600 and 0 <= n.y < 400
        assert n.speaker == Speaker.IDEA_GENERATOR and n.message_id == "m1"
    assert edges == []


def test_connected_concept_gets_edges_and_sits_near_first_parent(store, completion):
    completion.concepts = {"tiered": [concept("Tiered Benefits", "rewards program", "Gamification", "Unknown")]}

    async def scenario():
        sess = await store.create_session("T", None, "u1")
        sid = sess.session_id
        rewards = await store.create_node(sid, "Rewards Program", 300, 200)
        game = await store.create_node(sid, "Gamification", 50, 50)
        await _extractor(store, completion).extract(sid, "For the rewards program, tiered benefits", Speaker.CRITIC)
        nodes = await store.list_nodes(sid)
        return rewards, game, nodes, await store.list_edges(sid)

    rewards, game, nodes, edges = asyncio.run(scenario())
    child = next(n for n in nodes if n.label == "Tiered Benefits")
    assert rewards.x - 100 <= child.x < rewards.x + 100
    assert rewards.y - 100 <= child.y < rewards.y + 100
    assert sorted((e.source_node_id, e.target_node_id) for e in edges) == sorted(
        [(rewards.node_id, child.node_id), (game.node_id, child.node_id)]
    )


def test_existing_labels_are_sent_to_extraction(store, completion):
    async def scenario():
        sess = await store.create_session("T", None, "u1")
        await store.create_node(sess.session_id, "Fox", 1, 1)
        await _extractor(store, completion).extract(sess.session_id, "text", None)

    asyncio.run(scenario())
    assert completion.extraction_calls == [{"text": "text", "labels": ["Fox"]}]


def test_concept_may_elaborate_on_one_created_in_same_batch(store, completion):
    completion.concepts = {"loyalty": [concept("Loyalty Club"), concept("Member Perks", "Loyalty Club")]}

    async def scenario():
        sess = await store.create_session("T", None, "u1")
        await _extractor(store, completion).extract(sess.session_id, "loyalty ideas", Speaker.IDEA_GENERATOR)
        return await store.list_nodes(sess.session_id), await store.list_edges(sess.session_id)

    nodes, edges = asyncio.run(scenario())
    club, perks = nodes
    assert len(edges) == 1
    assert (edges[0].source_node_id, edges[0].target_node_id) == (club.node_id, perks.node_id)


def test_scheduled_extraction_failure_is_recorded_not_raised(store, completion, runner):
    completion.extraction_error = CompletionError("schema violation")

    async def scenario():
        sess = await store.create_session("T", None, "u1")
        record = _extractor(store, completion).schedule(runner, sess.session_id, "text", Speaker.CRITIC)
        await runner.drain()
        return record, await store.list_nodes(sess.session_id)

    record, nodes = asyncio.run(scenario())
    assert record.status == TaskStatus.FAILED
    assert "schema violation" in record.error
    assert nodes == []
