"""Tests for the session lifecycle manager."""

from datetime import timedelta

import pytest

from agentchat import config
from agentchat.config import FREE_MESSAGE_QUOTA
from agentchat.errors import (
    AccessDeniedError,
    ErrorCode,
    NotFoundError,
    ProviderError,
    SessionConflictError,
    SessionExpiredError,
    UsageLimitError,
    ValidationError,
)
from agentchat.identity import AnonymousIdentity, AuthenticatedIdentity
from agentchat.models import MessageType, SessionStatus
from agentchat.sessions import (
    Caller,
    SessionManager,
    CreateSession,
    GetHistory,
    SendMessage,
    StopSession,
    conversation_stats,
)


def create(manager, caller, persona_id="technical-expert"):
    return manager.dispatch(CreateSession(persona_id=persona_id, caller=caller))["session"]


def send(manager, caller, session_id, message="hello"):
    return manager.dispatch(SendMessage(session_id=session_id, caller=caller, message=message))


class TestCreate:
    def test_seeds_system_prompt_and_greeting(self, manager, anonymous_caller):
        session = create(manager, anonymous_caller())

        assert session["status"] == "ACTIVE"
        assert [turn["role"] for turn in session["conversation"]] == ["system", "assistant"]
        assert session["conversation"][1]["content"].startswith("Hello! I'm Technical Expert")
        assert session["freeMessagesRemaining"] == 5

    def test_owner_columns(self, manager, store, anonymous_caller, free_user):
        caller = anonymous_caller()
        anonymous_session = store.get_session(create(manager, caller)["id"])
        user_session = store.get_session(create(manager, free_user)["id"])

        assert anonymous_session.user_id is None
        assert anonymous_session.anonymous_session_id == caller.identity.session_id
        assert user_session.user_id == "user-free"
        assert user_session.anonymous_session_id is None

    def test_records_model_settings(self, manager, store, free_user):
        agent_session = store.get_session(create(manager, free_user)["id"])

        assert agent_session.model == config.OPENAI_MODEL
        assert agent_session.temperature == config.OPENAI_TEMPERATURE

    def test_does_not_need_the_provider(self, store, metrics, clock, free_user):
        manager = SessionManager(store=store, assistant=None, metrics=metrics, clock=clock, model="gpt-custom", temperature=0.2)

        agent_session = store.get_session(create(manager, free_user)["id"])

        assert agent_session.model == "gpt-custom"
        assert agent_session.temperature == 0.2

    def test_usage_gate_runs_before_persona_lookup(self, manager, free_user):
        for _ in range(5):
            create(manager, free_user)

        with pytest.raises(UsageLimitError):
            create(manager, free_user, persona_id="nobody")

    def test_unknown_persona(self, manager, free_user):
        with pytest.raises(NotFoundError) as exc_info:
            create(manager, free_user, persona_id="nobody")

        assert exc_info.value.code == ErrorCode.AGENT_NOT_FOUND

    def test_free_tier_daily_limit(self, manager, free_user):
        for _ in range(5):
            create(manager, free_user)

        with pytest.raises(UsageLimitError) as exc_info:
            create(manager, free_user)

        assert exc_info.value.code == ErrorCode.LIMIT_REACHED

    def test_daily_limit_resets_next_day(self, manager, clock, free_user):
        for _ in range(5):
            create(manager, free_user)

        clock.advance(days=2)

        assert create(manager, free_user)["status"] == "ACTIVE"

    def test_premium_is_unlimited(self, manager):
        premium = Caller(identity=AuthenticatedIdentity(user_id="p1", subscription_tier="PREMIUM"))
        for _ in range(7):
            create(manager, premium)

    def test_no_identity_is_denied(self, manager):
        with pytest.raises(AccessDeniedError):
            create(manager, Caller())


class TestSend:
    def test_first_exchange(self, manager, store, anonymous_caller):
        caller = anonymous_caller()
        session_id = create(manager, caller)["id"]

        result = send(manager, caller, session_id)

        assert result["agentMessage"]["messageText"] == "reply 1"
        assert result["freeMessagesRemaining"] == 4
        assert result["session"]["messageCount"] == 2
        assert result["session"]["tokenUsage"] == {"promptTokens": 10, "completionTokens": 5, "totalTokens": 15}
        assert store.get_anonymous_session(caller.identity.session_id).free_messages_used == 1

        messages = store.list_messages(session_id)
        assert [m.message_type for m in messages] == [MessageType.USER, MessageType.AGENT]
        assert all(m.anonymous_session_id == caller.identity.session_id for m in messages)
        assert messages[0].token_count == 10
        assert messages[1].token_count == 5
        assert messages[1].meta["agentName"] == "Technical Expert"

    def test_conversation_grows_by_two(self, manager, store, free_user):
        session_id = create(manager, free_user)["id"]

        send(manager, free_user, session_id, "first")
        send(manager, free_user, session_id, "second")

        agent_session = store.get_session(session_id)
        assert [t["role"] for t in agent_session.conversation] == [
            "system", "assistant", "user", "assistant", "user", "assistant",
        ]
        assert agent_session.conversation[4]["content"] == "second"
        assert "timestamp" in agent_session.conversation[4]
        assert agent_session.message_count == len(store.list_messages(session_id)) == 4
        assert agent_session.token_usage["totalTokens"] == 30

    def test_exactly_one_system_message_per_request(self, manager, assistant, free_user):
        session_id = create(manager, free_user)["id"]

        for i in range(4):
            send(manager, free_user, session_id, f"message {i}")

        for outbound in assistant.requests:
            assert sum(1 for m in outbound if m["role"] == "system") == 1
        assert len(assistant.requests[-1]) == 1 + 1 + 3 * 2 + 1

    def test_refreshes_last_used(self, manager, store, clock, free_user):
        session_id = create(manager, free_user)["id"]
        clock.advance(minutes=3)

        send(manager, free_user, session_id)

        assert store.get_session(session_id).last_used == clock.now

    @pytest.mark.parametrize("message", ["", "   ", None, 42])
    def test_blank_message(self, manager, free_user, message):
        session_id = create(manager, free_user)["id"]

        with pytest.raises(ValidationError):
            send(manager, free_user, session_id, message)

    def test_unknown_session(self, manager, free_user):
        with pytest.raises(NotFoundError) as exc_info:
            send(manager, free_user, "missing")

        assert exc_info.value.code == ErrorCode.SESSION_NOT_FOUND

    def test_no_identity_is_denied_without_lookup(self, manager, store, free_user, monkeypatch):
        session_id = create(manager, free_user)["id"]

        def fail(*args, **kwargs):
            raise AssertionError("store must not be queried")

        monkeypatch.setattr(store, "find_owned_session", fail)

        with pytest.raises(AccessDeniedError):
            send(manager, Caller(), session_id)

    def test_anonymous_quota(self, manager, store, anonymous_caller):
        caller = anonymous_caller()
        session_id = create(manager, caller)["id"]

        remaining = []
        for i in range(5):
            # callers resolve their usage record on every request
            caller = Caller(identity=caller.identity, usage=store.get_anonymous_session(caller.identity.session_id))
            remaining.append(send(manager, caller, session_id, f"message {i}")["freeMessagesRemaining"])

        assert remaining == [4, 3, 2, 1, 0]
        assert store.get_anonymous_session(caller.identity.session_id).free_messages_used == 5

        caller = Caller(identity=caller.identity, usage=store.get_anonymous_session(caller.identity.session_id))
        with pytest.raises(UsageLimitError) as exc_info:
            send(manager, caller, session_id, "one too many")

        assert exc_info.value.code == ErrorCode.FREE_LIMIT_EXCEEDED
        assert store.get_anonymous_session(caller.identity.session_id).free_messages_used == 5

    def test_last_free_message_cannot_be_spent_twice(self, manager, store, anonymous_caller):
        caller = anonymous_caller()
        first_session = create(manager, caller)["id"]
        second_session = create(manager, caller)["id"]
        for i in range(FREE_MESSAGE_QUOTA - 1):
            send(manager, caller, first_session, f"message {i}")

        # both requests read the record before either one is stored
        snapshot = store.get_anonymous_session(caller.identity.session_id)
        racing = Caller(identity=caller.identity, usage=snapshot)
        send(manager, racing, first_session, "last free message")

        with pytest.raises(UsageLimitError) as exc_info:
            send(manager, racing, second_session, "one too many")

        assert exc_info.value.code == ErrorCode.FREE_LIMIT_EXCEEDED
        assert store.get_anonymous_session(caller.identity.session_id).free_messages_used == FREE_MESSAGE_QUOTA
        assert store.get_session(second_session).message_count == 0

    def test_authenticated_sends_do_not_consume_quota(self, manager, free_user):
        session_id = create(manager, free_user)["id"]

        result = send(manager, free_user, session_id)

        assert result["freeMessagesRemaining"] is None

    def test_provider_failure_leaves_session_untouched(self, manager, store, assistant, anonymous_caller):
        caller = anonymous_caller()
        session_id = create(manager, caller)["id"]
        before = store.get_session(session_id)
        assistant.error = ProviderError(ErrorCode.OPENAI_ERROR, "OpenAI API error: boom", upstream_status=500)

        with pytest.raises(ProviderError):
            send(manager, caller, session_id)

        after = store.get_session(session_id)
        assert after.conversation == before.conversation
        assert after.message_count == 0
        assert after.version == before.version
        assert store.list_messages(session_id) == []
        assert store.get_anonymous_session(caller.identity.session_id).free_messages_used == 0

    def test_concurrent_write_is_rejected(self, manager, store, free_user, monkeypatch):
        session_id = create(manager, free_user)["id"]
        stale = store.get_session(session_id)
        send(manager, free_user, session_id, "first")

        monkeypatch.setattr(store, "find_owned_session", lambda *args: stale)

        with pytest.raises(SessionConflictError):
            send(manager, free_user, session_id, "racing")

        assert store.get_session(session_id).message_count == 2
        assert len(store.list_messages(session_id)) == 2


class TestReactivation:
    def test_reactivates_within_window(self, manager, store, clock, free_user):
        session_id = create(manager, free_user)["id"]
        manager.dispatch(StopSession(session_id=session_id, caller=free_user))
        clock.advance(minutes=29)

        result = send(manager, free_user, session_id)

        agent_session = store.get_session(session_id)
        assert result["session"]["status"] == "ACTIVE"
        assert agent_session.status == SessionStatus.ACTIVE
        assert agent_session.ended_at is None
        assert agent_session.last_used == clock.now

    def test_expired_after_window(self, manager, store, clock, assistant, free_user):
        session_id = create(manager, free_user)["id"]
        manager.dispatch(StopSession(session_id=session_id, caller=free_user))
        clock.advance(minutes=31)

        with pytest.raises(SessionExpiredError) as exc_info:
            send(manager, free_user, session_id)

        assert exc_info.value.status_code == 410
        assert assistant.requests == []
        assert store.get_session(session_id).status == SessionStatus.ENDED

    def test_provider_failure_keeps_session_ended(self, manager, store, clock, assistant, free_user):
        session_id = create(manager, free_user)["id"]
        manager.dispatch(StopSession(session_id=session_id, caller=free_user))
        clock.advance(minutes=5)
        assistant.error = ProviderError(ErrorCode.AI_AGENT_ERROR, "No response from AI agent")

        with pytest.raises(ProviderError):
            send(manager, free_user, session_id)

        assert store.get_session(session_id).status == SessionStatus.ENDED

    def test_reopen_uses_latest_of_ended_and_created(self, manager, store, clock, free_user):
        session_id = create(manager, free_user)["id"]
        agent_session = store.get_session(session_id)
        agent_session.status = SessionStatus.ENDED
        agent_session.ended_at = None

        assert manager.reopen(agent_session, clock.now + timedelta(minutes=30))["status"] == SessionStatus.ACTIVE
        with pytest.raises(SessionExpiredError):
            manager.reopen(agent_session, clock.now + timedelta(minutes=30, seconds=1))

    def test_reopen_active_session_is_a_no_op(self, manager, store, clock, free_user):
        agent_session = store.get_session(create(manager, free_user)["id"])

        assert manager.reopen(agent_session, clock.now) == {}


class TestStop:
    def test_immediate_stop(self, manager, free_user):
        session_id = create(manager, free_user)["id"]

        session = manager.dispatch(StopSession(session_id=session_id, caller=free_user))["session"]

        assert session["status"] == "ENDED"
        assert session["duration"] == 0
        assert session["endedAt"] is not None

    def test_duration_in_seconds(self, manager, clock, free_user):
        session_id = create(manager, free_user)["id"]
        clock.advance(seconds=90, milliseconds=600)

        session = manager.dispatch(StopSession(session_id=session_id, caller=free_user))["session"]

        assert session["duration"] == 91

    def test_stop_twice_keeps_first_result(self, manager, clock, free_user):
        session_id = create(manager, free_user)["id"]
        clock.advance(seconds=40)
        first = manager.dispatch(StopSession(session_id=session_id, caller=free_user))["session"]
        clock.advance(minutes=5)

        second = manager.dispatch(StopSession(session_id=session_id, caller=free_user))["session"]

        assert second["status"] == "ENDED"
        assert second["endedAt"] == first["endedAt"]
        assert second["duration"] == first["duration"] == 40

    def test_stop_after_reaper_fills_duration(self, manager, store, clock, free_user):
        session_id = create(manager, free_user)["id"]
        clock.advance(minutes=15)
        reaped_at = clock.now
        store.close_session(session_id, ended_at=reaped_at, cutoff=clock.now)
        clock.advance(minutes=1)

        session = manager.dispatch(StopSession(session_id=session_id, caller=free_user))["session"]

        assert session["endedAt"] == reaped_at
        assert session["duration"] == 15 * 60


class TestHistory:
    def test_history(self, manager, free_user):
        session_id = create(manager, free_user)["id"]
        send(manager, free_user, session_id, "first")
        send(manager, free_user, session_id, "second")

        result = manager.dispatch(GetHistory(session_id=session_id, caller=free_user))

        assert len(result["conversation"]) == 6
        assert [m["messageText"] for m in result["messages"]] == ["first", "reply 1", "second", "reply 2"]
        context = result["conversationContext"]
        assert context["agentPersonality"] == "analytical"
        assert context["conversationStats"]["userMessages"] == 2
        assert context["conversationStats"]["assistantMessages"] == 3

    def test_history_caps_messages(self, manager, store, free_user, monkeypatch):
        session_id = create(manager, free_user)["id"]
        limits = []
        real_list_messages = store.list_messages

        def spy(session_id, limit=None):
            limits.append(limit)
            return real_list_messages(session_id, limit=limit)

        monkeypatch.setattr(store, "list_messages", spy)

        manager.dispatch(GetHistory(session_id=session_id, caller=free_user))

        assert limits == [100]


def test_conversation_stats():
    stats = conversation_stats([
        {"role": "system", "content": "abcd"},
        {"role": "user", "content": "efgh"},
        {"role": "assistant", "content": "ij"},
    ])

    assert stats == {
        "totalMessages": 3,
        "userMessages": 1,
        "assistantMessages": 1,
        "totalTokensEstimate": 7.5,
    }


@pytest.mark.parametrize(
    "operation",
    [
        lambda sid, caller: SendMessage(session_id=sid, caller=caller, message="hi"),
        lambda sid, caller: StopSession(session_id=sid, caller=caller),
        lambda sid, caller: GetHistory(session_id=sid, caller=caller),
    ],
)
def test_other_owners_see_not_found(manager, anonymous_caller, free_user, operation):
    session_id = create(manager, free_user)["id"]
    intruders = [
        anonymous_caller(),
        Caller(identity=AuthenticatedIdentity(user_id="someone-else")),
        Caller(identity=AnonymousIdentity(session_id="user-free")),
    ]

    for intruder in intruders:
        with pytest.raises(NotFoundError) as exc_info:
            manager.dispatch(operation(session_id, intruder))
        assert exc_info.value.code == ErrorCode.SESSION_NOT_FOUND

        with pytest.raises(NotFoundError) as missing_info:
            manager.dispatch(operation("no-such-session", intruder))
        assert missing_info.value.message == exc_info.value.message


def test_dispatch_rejects_unknown_operation(manager):
    with pytest.raises(TypeError):
        manager.dispatch(object())


def test_agent_status(manager, anonymous_caller):
    caller = anonymous_caller()
    create(manager, caller)
    create(manager, caller, persona_id="creative-mentor")

    status = manager.agent_status(caller)

    assert status["activeSessionsCount"] == 2
    assert status["systemStats"]["totalAvailableAgents"] == 6
    assert status["freeMessagesRemaining"] == 5
