from sqlmodel import Session, select, and_
from sqlalchemy import func, update
from datetime import datetime
from typing import List, Optional
import random
import string
import time

from agentchat.config import FREE_MESSAGE_QUOTA
from agentchat.errors import ErrorCode, SessionConflictError, UsageLimitError
from agentchat.identity import AuthenticatedIdentity, AnonymousIdentity
from agentchat.models import AgentSession, AnonymousSession, ChatMessage, SessionStatus, utcnow


def get_time_millis():
    return round(time.time() * 1000)

def new_session_identifier() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"anon_{get_time_millis()}_{suffix}"

def owner_filter(identity):
    if isinstance(identity, AuthenticatedIdentity):
        return AgentSession.user_id == identity.user_id
    if isinstance(identity, AnonymousIdentity):
        return AgentSession.anonymous_session_id == identity.session_id
    raise ValueError(f"unsupported identity: {identity!r}")


class SessionStore:
    """
    Persistence for agent sessions, chat messages and anonymous usage records.

    Each method runs in its own database session; multi-row writes are
    committed together or not at all.
    """

    def __init__(self, engine):
        self.engine = engine

    # anonymous usage records

    def get_anonymous_session(self, anonymous_id: Optional[str]) -> Optional[AnonymousSession]:
        if not anonymous_id:
            return None
        with Session(self.engine) as session:
            return session.get(AnonymousSession, anonymous_id)

    def get_or_create_anonymous_session(self, anonymous_id: Optional[str] = None) -> AnonymousSession:
        existing = self.get_anonymous_session(anonymous_id)
        if existing is not None:
            return existing

        with Session(self.engine) as session:
            record = AnonymousSession(session_identifier=new_session_identifier())
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def increment_free_messages(self, anonymous_id: str, session: Optional[Session] = None) -> bool:
        """
        Count one free message against the record, in place so concurrent
        sends cannot undercount. Returns False, changing nothing, once the
        quota is already used up.
        """
        statement = (
            update(AnonymousSession)
            .where(
                and_(
                    AnonymousSession.id == anonymous_id,
                    AnonymousSession.free_messages_used < FREE_MESSAGE_QUOTA,
                )
            )
            .values(free_messages_used=AnonymousSession.free_messages_used + 1, last_used=utcnow())
        )
        if session is not None:
            return session.exec(statement).rowcount == 1
        with Session(self.engine) as own_session:
            counted = own_session.exec(statement).rowcount == 1
            own_session.commit()
            return counted

    # agent sessions

    def create_session(self, agent_session: AgentSession) -> AgentSession:
        with Session(self.engine) as session:
            session.add(agent_session)
            session.commit()
            session.refresh(agent_session)
            return agent_session

    def get_session(self, session_id: str) -> Optional[AgentSession]:
        with Session(self.engine) as session:
            return session.get(AgentSession, session_id)

    def find_owned_session(self, session_id: str, identity) -> Optional[AgentSession]:
        with Session(self.engine) as session:
            return session.exec(
                select(AgentSession).where(and_(AgentSession.id == session_id, owner_filter(identity)))
            ).first()

    def list_sessions(self) -> List[AgentSession]:
        with Session(self.engine) as session:
            return session.exec(select(AgentSession).order_by(AgentSession.created_at)).all()

    def count_sessions_since(self, user_id: str, since: datetime) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(AgentSession)
                .where(and_(AgentSession.user_id == user_id, AgentSession.created_at >= since))
            ).one()

    def count_active_sessions(self, identity) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(AgentSession)
                .where(and_(owner_filter(identity), AgentSession.status == SessionStatus.ACTIVE))
            ).one()

    def save_exchange(
        self,
        session_id: str,
        expected_version: int,
        values: dict,
        messages: List[ChatMessage],
        anonymous_id: Optional[str] = None,
    ) -> AgentSession:
        """
        Persist one completed exchange.

        The session row is only updated if its version still matches the one
        the caller read; otherwise another request changed it in the meantime
        and nothing is written.
        """
        with Session(self.engine) as session:
            result = session.exec(
                update(AgentSession)
                .where(and_(AgentSession.id == session_id, AgentSession.version == expected_version))
                .values(
                    **values,
                    message_count=AgentSession.message_count + len(messages),
                    version=AgentSession.version + 1,
                )
            )
            if result.rowcount != 1:
                session.rollback()
                raise SessionConflictError()

            # a concurrent send may have used the last free message
            if anonymous_id is not None and not self.increment_free_messages(anonymous_id, session=session):
                session.rollback()
                raise UsageLimitError(
                    ErrorCode.FREE_LIMIT_EXCEEDED,
                    "Free message limit exceeded. Please log in to continue.",
                )

            for message in messages:
                session.add(message)

            session.commit()
            return session.get(AgentSession, session_id)

    def end_session(self, session_id: str, ended_at: datetime, duration: int) -> AgentSession:
        with Session(self.engine) as session:
            session.exec(
                update(AgentSession)
                .where(AgentSession.id == session_id)
                .values(
                    status=SessionStatus.ENDED,
                    ended_at=ended_at,
                    duration=duration,
                    version=AgentSession.version + 1,
                )
            )
            session.commit()
            return session.get(AgentSession, session_id)

    def find_inactive_sessions(self, cutoff: datetime) -> List[AgentSession]:
        with Session(self.engine) as session:
            return session.exec(
                select(AgentSession).where(
                    and_(AgentSession.status == SessionStatus.ACTIVE, AgentSession.last_used < cutoff)
                )
            ).all()

    def close_session(self, session_id: str, ended_at: datetime, cutoff: datetime) -> bool:
        # a send that landed after the sweep read the row keeps it active
        with Session(self.engine) as session:
            result = session.exec(
                update(AgentSession)
                .where(
                    and_(
                        AgentSession.id == session_id,
                        AgentSession.status == SessionStatus.ACTIVE,
                        AgentSession.last_used < cutoff,
                    )
                )
                .values(status=SessionStatus.ENDED, ended_at=ended_at, version=AgentSession.version + 1)
            )
            session.commit()
            return result.rowcount == 1

    # chat messages

    def list_messages(self, session_id: str, limit: Optional[int] = None) -> List[ChatMessage]:
        with Session(self.engine) as session:
            statement = (
                select(ChatMessage)
                .where(ChatMessage.session_id == session_id)
                .order_by(ChatMessage.created_at.desc(), ChatMessage.seq.desc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            messages = session.exec(statement).all()
        return list(reversed(messages))
