import pytest

from src.brainstorm.core.state_machine import (
    asks_to_share,
    is_affirmative,
    is_negative,
    is_valid_session_transition,
    is_valid_thread_transition,
    state_after_reply,
)
from src.brainstorm.domain.models import SessionStatus, ThreadState


def test_session_ends_once_and_never_reactivates():
    assert is_valid_session_transition(SessionStatus.ACTIVE, SessionStatus.ENDED)
    assert not is_valid_session_transition(SessionStatus.ENDED, SessionStatus.ACTIVE)
    assert not is_valid_session_transition(SessionStatus.ENDED, SessionStatus.ENDED)


@pytest.mark.parametrize("text", ["yes please", "  Yeah!", "ok", "Sure thing", "share it", "post", "y"])
def test_affirmative_prefixes(text):
    assert is_affirmative(text)


@pytest.mark.parametrize("text", ["no thanks", "Nope", "  nah", "don't", "dont share", "n"])
def test_negative_prefixes(text):
    assert is_negative(text)


def test_prefix_match_is_not_substring_match():
    assert not is_affirmative("I guess yes")
    assert not is_negative("I said no")
    # Prefixes overlap with ordinary words; affirmative is checked first by callers.
    assert is_negative("nothing to add")


def test_share_detection_needs_both_words():
    assert asks_to_share("Would you like me to SHARE this with the Group anonymously?")
    assert not asks_to_share("Would you like me to share this?")
    assert not asks_to_share("The group seems keen.")
    assert state_after_reply("Shall I share it with the group?") == ThreadState.AWAITING_SHARE_DECISION
    assert state_after_reply("Tell me more about the fox.") == ThreadState.COLLECTING


def test_thread_transitions():
    assert is_valid_thread_transition(ThreadState.IDLE, ThreadState.COLLECTING)
    assert is_valid_thread_transition(ThreadState.AWAITING_SHARE_DECISION, ThreadState.SHARED)
    assert is_valid_thread_transition(ThreadState.DECLINED, ThreadState.COLLECTING)
    assert not is_valid_thread_transition(ThreadState.COLLECTING, ThreadState.SHARED)
    assert not is_valid_thread_transition(ThreadState.IDLE, ThreadState.DECLINED)
