import asyncio

import pytest

from src.brainstorm.domain.models import SessionCreate, ThreadState
from src.brainstorm.domain.personas import Speaker
from src.brainstorm.errors import CompletionError, PrivateChannelError, SessionEnded

from tests.utils import concept, make_user

ASK = "Love it! Would you like me to share this idea with the group anonymously?"


def _run(service, steps):
    """Create a session owned by Alice and feed ``steps`` through her private thread."""
    alice = make_user()

    async def scenario():
        sess = await service.create_session(alice, SessionCreate(title="Mascot", goal="name a mascot"))
        results = []
        for text in steps:
            results.append(await service.private_send(sess.slug, alice, text))
        public = await service.store.list_messages(sess.session_id)
        thread = await service.store.get_thread(sess.session_id, alice.user_id)
        await service.runner.drain()
        nodes = await service.store.list_nodes(sess.session_id)
        return results, public, thread, nodes

    return asyncio.run(scenario())


def test_collecting_reply_without_offer(service, completion):
    completion.replies = ["Tell me more about that."]
    results, public, thread, _ = _run(service, ["I have a thought"])
    assert results[0].state == ThreadState.COLLECTING
    assert [m.origin for m in results[0].messages] == ["user", "facilitator"]
    assert public == []
    assert "Session goal: name a mascot" in completion.requests[0].instructions


def test_affirmative_answer_shares_idea_anonymously(service, completion):
    completion.replies = [ASK, "What if our mascot were a clever fox?", "Done! It's on the board."]
    completion.concepts = {"clever fox": [concept("Clever Fox")]}
    results, public, thread, nodes = _run(service, ["We could use a fox mascot", "yes please"])

    assert results[0].state == ThreadState.AWAITING_SHARE_DECISION
    assert results[1].state == ThreadState.SHARED
    assert thread.state == ThreadState.SHARED

    assert len(public) == 1
    shared = public[0]
    assert shared.speaker == Speaker.FACILITATOR
    assert shared.is_anonymous and shared.author_id is None
    assert shared.content == "What if our mascot were a clever fox?"
    assert results[1].shared_message.message_id == shared.message_id

    anonymous_request = completion.requests[1]
    assert anonymous_request.anonymous
    assert anonymous_request.input == "We could use a fox mascot"
    assert anonymous_request.history == []
    assert [m.content for m in results[1].messages][-1] == "Done! It's on the board."

    assert [call["text"] for call in completion.extraction_calls] == [shared.content]
    assert [(n.label, n.speaker, n.message_id) for n in nodes] == [
        ("Clever Fox", Speaker.FACILITATOR, shared.message_id)
    ]


def test_negative_answer_declines_without_public_message(service, completion):
    completion.replies = [ASK, "No problem, it stays between us."]
    results, public, thread, _ = _run(service, ["secret plan", "no thanks"])
    assert results[1].state == ThreadState.DECLINED
    assert thread.state == ThreadState.DECLINED
    assert public == []
    assert results[1].shared_message is None


def test_unclear_answer_keeps_collecting(service, completion):
    completion.replies = [ASK, "Sure, tell me more first."]
    results, public, _, _ = _run(service, ["an idea", "maybe later"])
    assert results[1].state == ThreadState.COLLECTING
    assert public == []


def test_reply_failure_keeps_user_message_and_state(service, completion):
    completion.replies = [CompletionError("provider down")]
    alice = make_user()

    async def scenario():
        sess = await service.create_session(alice, SessionCreate(title="T"))
        with pytest.raises(PrivateChannelError):
            await service.private_send(sess.slug, alice, "hello there")
        history = await service.private_history(sess.slug, alice)
        thread = await service.store.get_thread(sess.session_id, alice.user_id)
        return history, thread

    history, thread = asyncio.run(scenario())
    assert [(m.origin, m.content) for m in history] == [("user", "hello there")]
    assert thread.state == ThreadState.IDLE


def test_failed_anonymous_post_leaves_decision_open(service, completion):
    completion.replies = [ASK, CompletionError("provider down")]
    alice = make_user()

    async def scenario():
        sess = await service.create_session(alice, SessionCreate(title="T"))
        await service.private_send(sess.slug, alice, "idea")
        with pytest.raises(PrivateChannelError):
            await service.private_send(sess.slug, alice, "yes")
        thread = await service.store.get_thread(sess.session_id, alice.user_id)
        return thread, await service.store.count_messages(sess.session_id)

    thread, public_count = asyncio.run(scenario())
    assert thread.state == ThreadState.AWAITING_SHARE_DECISION
    assert public_count == 0


def test_acknowledgement_failure_after_share_still_marks_shared(service, completion):
    completion.replies = [ASK, "A fox, anyone?", CompletionError("provider down")]
    alice = make_user()

    async def scenario():
        sess = await service.create_session(alice, SessionCreate(title="T"))
        await service.private_send(sess.slug, alice, "fox")
        with pytest.raises(PrivateChannelError):
            await service.private_send(sess.slug, alice, "yes")
        thread = await service.store.get_thread(sess.session_id, alice.user_id)
        count = await service.store.count_messages(sess.session_id)
        await service.runner.drain()
        return thread, count

    thread, public_count = asyncio.run(scenario())
    assert thread.state == ThreadState.SHARED
    assert public_count == 1


def test_threads_are_private_per_participant(service, completion):
    alice, bob = make_user(), make_user("u-bob", "Bob")

    async def scenario():
        sess = await service.create_session(alice, SessionCreate(title="T"))
        await service.private_send(sess.slug, alice, "alice's idea")
        await service.private_send(sess.slug, bob, "bob's idea")
        return await service.private_history(sess.slug, alice), await service.private_history(sess.slug, bob)

    mine, theirs = asyncio.run(scenario())
    assert [m.content for m in mine if m.origin == "user"] == ["alice's idea"]
    assert [m.content for m in theirs if m.origin == "user"] == ["bob's idea"]
    assert {m.user_id for m in mine} == {"u-alice"}


def test_private_send_rejected_after_session_ends(service):
    alice = make_user()

    async def scenario():
        sess = await service.create_session(alice, SessionCreate(title="T"))
        await service.store.mark_session_ended(sess.session_id)
        await service.private_send(sess.slug, alice, "too late")

    with pytest.raises(SessionEnded):
        asyncio.run(scenario())
