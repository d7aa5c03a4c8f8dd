"""Lifecycle of agent chat sessions.

A session is ACTIVE from creation until it is stopped by its owner or closed
by the inactivity reaper, after which it is ENDED. Sending a message to a
session that ended less than `REACTIVATION_WINDOW` ago reopens it; older
sessions are expired for good.

Every operation is scoped to the caller's identity. A session owned by
someone else is reported exactly like a missing one.
"""

from dataclasses import dataclass
from typing import Optional, List, Dict, Any
import logging
import time

from agentchat.assistant import LLMAssistant
from agentchat.config import REACTIVATION_WINDOW, HISTORY_MESSAGE_LIMIT, TOKEN_ESTIMATE_RATIO, OPENAI_MODEL, OPENAI_TEMPERATURE
from agentchat.errors import AccessDeniedError, NotFoundError, SessionExpiredError, ValidationError
from agentchat.identity import AuthenticatedIdentity, AnonymousIdentity, FREE_TIER, Identity
from agentchat.models import AgentSession, AnonymousSession, ChatMessage, MessageType, SessionStatus, utcnow
from agentchat.personas import PERSONAS, get_persona
from agentchat.store import SessionStore
from agentchat.usage import check_usage_limits, free_messages_remaining, start_of_local_day

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Caller:
    identity: Optional[Identity] = None
    # anonymous usage record; None for authenticated callers
    usage: Optional[AnonymousSession] = None

    @property
    def is_authenticated(self) -> bool:
        return isinstance(self.identity, AuthenticatedIdentity)

    @property
    def anonymous_session_id(self) -> Optional[str]:
        if isinstance(self.identity, AnonymousIdentity):
            return self.identity.session_id
        return None


@dataclass(frozen=True)
class CreateSession:
    persona_id: str
    caller: Caller

@dataclass(frozen=True)
class SendMessage:
    session_id: str
    caller: Caller
    message: Optional[str]

@dataclass(frozen=True)
class StopSession:
    session_id: str
    caller: Caller

@dataclass(frozen=True)
class GetHistory:
    session_id: str
    caller: Caller


def session_summary(agent_session: AgentSession) -> Dict[str, Any]:
    return {
        "id": agent_session.id,
        "agentId": agent_session.agent_id,
        "agentName": agent_session.agent_name,
        "status": agent_session.status.value,
        "createdAt": agent_session.created_at,
        "lastUsed": agent_session.last_used,
        "endedAt": agent_session.ended_at,
        "duration": agent_session.duration,
        "messageCount": agent_session.message_count,
        "tokenUsage": agent_session.token_usage,
    }

def message_summary(message: ChatMessage) -> Dict[str, Any]:
    return {
        "id": message.id,
        "messageText": message.message_text,
        "messageType": message.message_type.value,
        "tokenCount": message.token_count,
        "processingTime": message.processing_time,
        "createdAt": message.created_at,
    }

def conversation_stats(conversation: List[Dict[str, Any]]) -> Dict[str, Any]:
    characters = sum(len(turn.get("content") or "") for turn in conversation)
    return {
        "totalMessages": len(conversation),
        "userMessages": sum(1 for turn in conversation if turn.get("role") == "user"),
        "assistantMessages": sum(1 for turn in conversation if turn.get("role") == "assistant"),
        "totalTokensEstimate": characters * TOKEN_ESTIMATE_RATIO,
    }


class SessionManager:
    def __init__(
        self,
        store: SessionStore,
        assistant: Optional[LLMAssistant],
        metrics,
        clock=utcnow,
        model: str = OPENAI_MODEL,
        temperature: float = OPENAI_TEMPERATURE,
    ):
        self.store = store
        self.assistant = assistant
        self.metrics = metrics
        self.clock = clock
        # recorded on new sessions without building the provider
        self.model = model
        self.temperature = temperature
        self._handlers = {
            CreateSession: self.create_session,
            SendMessage: self.send_message,
            StopSession: self.stop_session,
            GetHistory: self.get_history,
        }

    def dispatch(self, request):
        handler = self._handlers.get(type(request))
        if handler is None:
            raise TypeError(f"unsupported session operation: {type(request).__name__}")
        return handler(request)

    def _owned_session(self, session_id: str, caller: Optional[Caller]) -> AgentSession:
        # rejected before touching the database
        if caller is None or caller.identity is None:
            raise AccessDeniedError()

        agent_session = self.store.find_owned_session(session_id, caller.identity)
        if agent_session is None:
            raise NotFoundError()
        return agent_session

    def reopen(self, agent_session: AgentSession, now) -> Dict[str, Any]:
        """
        Field changes that bring an ended session back to ACTIVE, or an empty
        dict for a session that is still active. The changes are applied by
        the caller together with the rest of its write.
        """
        if agent_session.status != SessionStatus.ENDED:
            return {}

        reference = agent_session.created_at
        if agent_session.ended_at is not None and agent_session.ended_at > reference:
            reference = agent_session.ended_at

        if now - reference > REACTIVATION_WINDOW:
            logger.info("session %s ended at %s, too long ago to reactivate", agent_session.id, agent_session.ended_at)
            raise SessionExpiredError()

        logger.info("reactivating recently ended session %s", agent_session.id)
        return {"status": SessionStatus.ACTIVE, "ended_at": None, "duration": None}

    def create_session(self, request: CreateSession) -> Dict[str, Any]:
        caller = request.caller
        identity = caller.identity
        now = self.clock()

        sessions_today = 0
        if isinstance(identity, AuthenticatedIdentity) and identity.subscription_tier == FREE_TIER:
            sessions_today = self.store.count_sessions_since(identity.user_id, start_of_local_day(now))
        check_usage_limits(identity, caller.usage, sessions_today)

        persona = get_persona(request.persona_id)

        agent_session = AgentSession(
            user_id=identity.user_id if caller.is_authenticated else None,
            anonymous_session_id=caller.anonymous_session_id,
            agent_id=persona.id,
            agent_name=persona.name,
            system_prompt=persona.system_prompt,
            conversation=[
                {"role": "system", "content": persona.system_prompt},
                {"role": "assistant", "content": persona.greeting()},
            ],
            model=self.model,
            temperature=self.temperature,
            status=SessionStatus.ACTIVE,
            created_at=now,
            last_used=now,
        )
        agent_session = self.store.create_session(agent_session)
        self.metrics.incr("start_session")

        logger.info(
            "created session %s for agent %s (authenticated=%s)",
            agent_session.id, persona.id, caller.is_authenticated,
        )

        remaining = free_messages_remaining(caller.usage) if not caller.is_authenticated else None
        return {
            "session": session_summary(agent_session) | {
                "conversation": agent_session.conversation,
                "isAuthenticated": caller.is_authenticated,
                "freeMessagesRemaining": remaining,
            },
            "isAuthenticated": caller.is_authenticated,
            "anonymousSessionId": caller.anonymous_session_id,
        }

    def send_message(self, request: SendMessage) -> Dict[str, Any]:
        start_time = time.time()
        message = request.message
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("Message is required")

        caller = request.caller
        agent_session = self._owned_session(request.session_id, caller)

        anonymous_id = caller.anonymous_session_id
        if anonymous_id is not None:
            check_usage_limits(caller.identity, caller.usage)

        changes = self.reopen(agent_session, self.clock())
        persona = get_persona(agent_session.agent_id)
        history = list(agent_session.conversation or [])

        provider_start = time.time()
        completion = self.assistant.send(persona.system_prompt, history, message)
        processing_time = round((time.time() - provider_start) * 1000)

        completed_at = self.clock()
        timestamp = completed_at.isoformat()
        conversation = history + [
            {"role": "user", "content": message, "timestamp": timestamp},
            {"role": "assistant", "content": completion.text, "timestamp": timestamp},
        ]

        previous = agent_session.token_usage or {}
        token_usage = {
            "promptTokens": previous.get("promptTokens", 0) + completion.prompt_tokens,
            "completionTokens": previous.get("completionTokens", 0) + completion.completion_tokens,
            "totalTokens": previous.get("totalTokens", 0) + completion.total_tokens,
        }

        owner = {"user_id": agent_session.user_id, "anonymous_session_id": agent_session.anonymous_session_id}
        user_message = ChatMessage(
            session_id=agent_session.id,
            message_text=message,
            message_type=MessageType.USER,
            token_count=completion.prompt_tokens,
            created_at=completed_at,
            seq=agent_session.message_count + 1,
            **owner,
        )
        agent_message = ChatMessage(
            session_id=agent_session.id,
            message_text=completion.text,
            message_type=MessageType.AGENT,
            token_count=completion.completion_tokens,
            processing_time=processing_time,
            meta={
                "model": completion.model,
                "agentName": persona.name,
                "tokenUsage": completion.token_usage(),
            },
            created_at=completed_at,
            seq=agent_session.message_count + 2,
            **owner,
        )
        # rows expire once committed, so summarise them first
        response = {
            "userMessage": message_summary(user_message),
            "agentMessage": message_summary(agent_message),
        }

        updated = self.store.save_exchange(
            agent_session.id,
            agent_session.version,
            values={
                "conversation": conversation,
                "token_usage": token_usage,
                "last_used": completed_at,
                **changes,
            },
            messages=[user_message, agent_message],
            anonymous_id=anonymous_id,
        )

        if changes:
            self.metrics.incr("reactivate_session")
        self.metrics.incr("continue_session")
        self.metrics.timing("generate_response.timed", time.time() - start_time)

        remaining = None
        if anonymous_id is not None:
            remaining = free_messages_remaining(self.store.get_anonymous_session(anonymous_id)) or 0

        logger.info(
            "session %s exchange completed: %d total tokens, %s free messages remaining",
            agent_session.id, completion.total_tokens, remaining,
        )

        return response | {
            "session": session_summary(updated),
            "tokenUsage": completion.token_usage(),
            "agentName": persona.name,
            "isAuthenticated": caller.is_authenticated,
            "freeMessagesRemaining": remaining,
        }

    def stop_session(self, request: StopSession) -> Dict[str, Any]:
        agent_session = self._owned_session(request.session_id, request.caller)

        if agent_session.status == SessionStatus.ENDED and agent_session.duration is not None:
            # already stopped: report the original stop unchanged
            return {"session": session_summary(agent_session)}

        ended_at = agent_session.ended_at
        if agent_session.status != SessionStatus.ENDED or ended_at is None:
            ended_at = self.clock()
        duration = round((ended_at - agent_session.created_at).total_seconds())

        updated = self.store.end_session(agent_session.id, ended_at, duration)
        self.metrics.incr("stop_session")
        logger.info("session %s stopped after %ds, %d messages", updated.id, duration, updated.message_count)

        return {"session": session_summary(updated)}

    def get_history(self, request: GetHistory) -> Dict[str, Any]:
        agent_session = self._owned_session(request.session_id, request.caller)

        conversation = agent_session.conversation or []
        messages = self.store.list_messages(agent_session.id, limit=HISTORY_MESSAGE_LIMIT)
        persona = PERSONAS.get(agent_session.agent_id)

        return {
            "session": session_summary(agent_session),
            "conversation": conversation,
            "messages": [message_summary(m) for m in messages],
            "conversationContext": {
                "agentId": agent_session.agent_id,
                "agentName": agent_session.agent_name,
                "agentPersonality": persona.personality if persona else None,
                "systemPrompt": agent_session.system_prompt,
                "conversationStats": conversation_stats(conversation),
            },
            "isAuthenticated": request.caller.is_authenticated,
        }

    def agent_status(self, caller: Caller) -> Dict[str, Any]:
        active_sessions = 0
        if caller.identity is not None:
            active_sessions = self.store.count_active_sessions(caller.identity)

        return {
            "isAuthenticated": caller.is_authenticated,
            "activeSessionsCount": active_sessions,
            "systemStats": {
                "totalAvailableAgents": len(PERSONAS),
                "timestamp": self.clock(),
            },
            "freeMessagesRemaining": None if caller.is_authenticated else free_messages_remaining(caller.usage),
        }
