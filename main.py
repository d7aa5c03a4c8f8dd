from fastapi import FastAPI, Depends, Header
from fastapi.requests import Request
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool
from sqlmodel import create_engine, SQLModel
from typing import Optional
import statsd
import logging
import datetime

from agentchat import config
from agentchat.assistant import ChatGPTAssistant
from agentchat.errors import AgentChatError, ConfigurationError, ValidationError, ErrorCode
from agentchat.identity import AuthInfo, AnonymousIdentity, verify_token, identity_from
from agentchat.personas import list_personas
from agentchat.reaper import InactivityReaper, end_stale_sessions
from agentchat.sessions import SessionManager, Caller, CreateSession, SendMessage, StopSession, GetHistory
from agentchat.models import utcnow
from agentchat.store import SessionStore

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("agentchat")

VERSION = "1.0.0"

app = FastAPI()

connect_args = {"check_same_thread": False} if config.PG_DATABASE_URL.startswith("sqlite") else {}
pg_engine = create_engine(config.PG_DATABASE_URL, connect_args=connect_args)
metrics = statsd.StatsClient(host=config.GRAPHITE_HOST, port=config.GRAPHITE_HOST_PORT, prefix=config.METRICS_PREFIX)
reaper = InactivityReaper(SessionStore(pg_engine), metrics=metrics)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["Content-Type", "Authorization", "X-Anonymous-Session-Id"],
    max_age=86400,
)

@app.on_event("startup")
def _startup():
    # create all tables
    SQLModel.metadata.create_all(pg_engine)
    if config.REAPER_ENABLED:
        reaper.start()

@app.on_event("shutdown")
def _shutdown():
    reaper.stop(timeout=5)

@app.exception_handler(AgentChatError)
async def _agent_chat_error(req: Request, exc: AgentChatError):
    metrics.incr(f"errors.{exc.code.value}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.exception_handler(ConfigurationError)
async def _configuration_error(req: Request, exc: ConfigurationError):
    logger.error("configuration error: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": str(exc), "code": ErrorCode.INTERNAL_ERROR.value},
    )

@app.exception_handler(Exception)
async def _unhandled_error(req: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", req.method, req.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": str(exc) or "Internal server error", "code": ErrorCode.INTERNAL_ERROR.value},
    )

# dependencies, overridden in tests

def get_engine():
    return pg_engine

def get_metrics():
    return metrics

def get_clock():
    return utcnow

def get_store(engine=Depends(get_engine)) -> SessionStore:
    return SessionStore(engine)

def get_assistant(metrics=Depends(get_metrics)):
    return ChatGPTAssistant(metrics=metrics, config=config.get_provider_config())

def get_manager(store=Depends(get_store), assistant=Depends(get_assistant), metrics=Depends(get_metrics), clock=Depends(get_clock)) -> SessionManager:
    return SessionManager(store=store, assistant=assistant, metrics=metrics, clock=clock)

def get_session_manager(store=Depends(get_store), metrics=Depends(get_metrics), clock=Depends(get_clock)) -> SessionManager:
    # for operations that never reach the completion provider
    return SessionManager(store=store, assistant=None, metrics=metrics, clock=clock)

def get_auth_info(authorization: Optional[str] = Header(default=None)) -> AuthInfo:
    return verify_token(authorization, config.PRIVY_APP_ID)

def resolve_caller(
    store: SessionStore = Depends(get_store),
    auth_info: AuthInfo = Depends(get_auth_info),
    x_anonymous_session_id: Optional[str] = Header(default=None),
) -> Caller:
    # entry points may hand out a fresh anonymous identity
    if auth_info.is_authenticated:
        return Caller(identity=identity_from(auth_info))
    usage = store.get_or_create_anonymous_session(x_anonymous_session_id)
    return Caller(identity=identity_from(auth_info, usage), usage=usage)

def require_caller(
    store: SessionStore = Depends(get_store),
    auth_info: AuthInfo = Depends(get_auth_info),
    x_anonymous_session_id: Optional[str] = Header(default=None),
) -> Caller:
    if auth_info.is_authenticated:
        return Caller(identity=identity_from(auth_info))
    if not x_anonymous_session_id:
        return Caller()
    usage = store.get_anonymous_session(x_anonymous_session_id)
    if usage is None:
        # unknown ids can own nothing, the session lookup reports not found
        return Caller(identity=AnonymousIdentity(session_id=x_anonymous_session_id))
    return Caller(identity=identity_from(auth_info, usage), usage=usage)

async def read_json(req: Request) -> dict:
    try:
        body = await req.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body

@app.get("/")
def _hello_world():
    return "Hello World"

@app.get("/health")
def _health():
    return {"status": "OK", "timestamp": datetime.datetime.now(datetime.timezone.utc), "version": VERSION}

@app.get("/agents/public")
def _public_agents(search: Optional[str] = None, personality: Optional[str] = None, style: Optional[str] = None, page: Optional[str] = None, limit: Optional[str] = None):
    catalogue = list_personas(search=search, personality=personality, style=style, page=page, limit=limit)
    return {"success": True} | catalogue

@app.get("/agents/status")
def _agent_status(caller: Caller = Depends(resolve_caller), manager: SessionManager = Depends(get_session_manager)):
    return {"success": True, "status": manager.agent_status(caller)}

@app.get("/auth/me")
def _auth_me(auth_info: AuthInfo = Depends(get_auth_info)):
    return {"success": auth_info.is_authenticated, "user": auth_info.user, "isAuthenticated": auth_info.is_authenticated}

@app.post("/agents/sessions")
async def _create_session(req: Request, caller: Caller = Depends(resolve_caller), manager: SessionManager = Depends(get_session_manager)):
    body = await read_json(req)
    agent_id = body.get("agentId")
    if not agent_id:
        raise ValidationError("Agent ID is required")

    result = await run_in_threadpool(manager.dispatch, CreateSession(persona_id=agent_id, caller=caller))
    return JSONResponse(status_code=201, content=jsonable_encoder({"success": True} | result))

@app.post("/agents/sessions/{session_id}/chat")
async def _chat(session_id: str, req: Request, caller: Caller = Depends(require_caller), manager: SessionManager = Depends(get_manager)):
    body = await read_json(req)
    result = await run_in_threadpool(
        manager.dispatch, SendMessage(session_id=session_id, caller=caller, message=body.get("message"))
    )
    return {"success": True} | result

@app.post("/agents/sessions/{session_id}/stop")
def _stop_session(session_id: str, caller: Caller = Depends(require_caller), manager: SessionManager = Depends(get_session_manager)):
    return {"success": True} | manager.dispatch(StopSession(session_id=session_id, caller=caller))

@app.get("/agents/sessions/{session_id}/conversation")
def _conversation(session_id: str, caller: Caller = Depends(require_caller), manager: SessionManager = Depends(get_session_manager)):
    return {"success": True} | manager.dispatch(GetHistory(session_id=session_id, caller=caller))

@app.get("/end-stale-sessions")
def _end_stale_sessions(store: SessionStore = Depends(get_store), metrics=Depends(get_metrics), clock=Depends(get_clock)):
    closed = end_stale_sessions(store, now=clock(), metrics=metrics)
    return {"success": True, "closed": closed}
