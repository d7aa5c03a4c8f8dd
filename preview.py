from sqlmodel import create_engine
from agentchat.config import PG_DATABASE_URL
from agentchat.store import SessionStore


def main(store: SessionStore = None):
    store = store or SessionStore(create_engine(PG_DATABASE_URL))

    for chat_session in store.list_sessions():
        owner = chat_session.user_id or f"anonymous:{chat_session.anonymous_session_id}"
        print(f"{chat_session.id} [{chat_session.status.value}] {chat_session.agent_name} owner={owner} messages={chat_session.message_count}")
        for chat_message in store.list_messages(chat_session.id):
            print(f"  {chat_message.created_at.isoformat()} {chat_message.message_type.value}: {chat_message.message_text}")
        print("------------")


if __name__ == "__main__":
    main()
