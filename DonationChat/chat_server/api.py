"""
FastAPI endpoints for the chat history backing store.

Messages cross HTTP in the same camelCase shape they use on the event
channel; ciphertext and nonce stay base64 end to end, the server never sees
a key or a plaintext.

Run:
    uvicorn DonationChat.chat_server.api:app
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from DonationChat.chat_server import config, db
from DonationChat.chat_server.chat_history import ChatHistoryServer
from DonationChat.chat_shared.errors import (
    InvalidArgumentError,
    ServerDatabaseError,
    UserNotFoundError,
)
from DonationChat.chat.protocol import message_to_wire, parse_timestamp


# ── Pydantic request/response models ──


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ResolveRequest(CamelModel):
    email: str


class ResolveResponse(CamelModel):
    user_id: str


class FetchRequest(CamelModel):
    user_id: str
    since: Optional[datetime] = None


class MessageOut(CamelModel):
    id: str
    conversation_id: str
    sender_id: str
    ciphertext: str
    nonce: Optional[str] = None
    timestamp: str
    delivered: bool = False
    read: bool = False


class FetchResponse(CamelModel):
    messages: list[MessageOut]


class AppendRequest(CamelModel):
    conversation_id: str
    sender_id: str
    ciphertext: str
    nonce: Optional[str] = None
    timestamp: Optional[str] = None

    @field_validator("conversation_id", "sender_id", "ciphertext")
    @classmethod
    def not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v


class ReceiptRequest(CamelModel):
    conversation_id: str
    user_id: str


class ReceiptResponse(CamelModel):
    updated: int


class ParticipantRequest(CamelModel):
    conversation_id: str
    user_id: str


class ParticipantResponse(CamelModel):
    added: bool


class HealthResponse(CamelModel):
    status: str
    db_connected: bool


# ── App lifecycle ──


@asynccontextmanager
async def lifespan(app: FastAPI):
    await db.create_pool(
        config.PG_DSN,
        min_size=config.PG_POOL_MIN_SIZE,
        max_size=config.PG_POOL_MAX_SIZE,
    )
    yield
    await db.close_pool()


app = FastAPI(title="Donation Chat History", version="1.0.0", lifespan=lifespan)


def get_history() -> ChatHistoryServer:
    if db.pool is None:
        raise HTTPException(status_code=503, detail="Database pool not initialized")
    return ChatHistoryServer(db.pool)


def _message_out(msg) -> MessageOut:
    return MessageOut(**message_to_wire(msg, include_flags=True))


# ── Endpoints ──


@app.post("/v1/users/resolve", response_model=ResolveResponse)
async def resolve_user(req: ResolveRequest, history: ChatHistoryServer = Depends(get_history)):
    try:
        user_id = await history.resolve_user_id(req.email)
    except UserNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidArgumentError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ServerDatabaseError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return ResolveResponse(user_id=user_id)


@app.post("/v1/users/register", response_model=ResolveResponse)
async def register_user(req: ResolveRequest, history: ChatHistoryServer = Depends(get_history)):
    try:
        user_id = await history.register_stakeholder(req.email)
    except InvalidArgumentError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ServerDatabaseError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return ResolveResponse(user_id=user_id)


@app.post("/v1/chats/fetch", response_model=FetchResponse)
async def fetch_chats(req: FetchRequest, history: ChatHistoryServer = Depends(get_history)):
    since = parse_timestamp(req.since) if req.since is not None else None
    try:
        messages = await history.fetch_conversations(req.user_id, since=since)
    except ServerDatabaseError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return FetchResponse(messages=[_message_out(m) for m in messages])


@app.post("/v1/chats/append", response_model=MessageOut)
async def append_chat(req: AppendRequest, history: ChatHistoryServer = Depends(get_history)):
    try:
        saved = await history.append_message(
            req.conversation_id,
            req.sender_id,
            req.ciphertext,
            req.nonce,
            parse_timestamp(req.timestamp),
        )
    except InvalidArgumentError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ServerDatabaseError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return _message_out(saved)


@app.post("/v1/chats/read", response_model=ReceiptResponse)
async def mark_read(req: ReceiptRequest, history: ChatHistoryServer = Depends(get_history)):
    try:
        updated = await history.mark_conversation_read(req.conversation_id, req.user_id)
    except InvalidArgumentError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ServerDatabaseError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return ReceiptResponse(updated=updated)


@app.post("/v1/chats/delivered", response_model=ReceiptResponse)
async def mark_delivered(req: ReceiptRequest, history: ChatHistoryServer = Depends(get_history)):
    try:
        updated = await history.mark_conversation_delivered(req.conversation_id, req.user_id)
    except InvalidArgumentError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ServerDatabaseError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return ReceiptResponse(updated=updated)


@app.post("/v1/chats/participants", response_model=ParticipantResponse)
async def add_participant(req: ParticipantRequest, history: ChatHistoryServer = Depends(get_history)):
    try:
        added = await history.add_participant(req.conversation_id, req.user_id)
    except InvalidArgumentError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ServerDatabaseError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return ParticipantResponse(added=added)


@app.get("/v1/health", response_model=HealthResponse)
async def health():
    connected = await db.health_check()
    return HealthResponse(
        status="ok" if connected else "degraded",
        db_connected=connected,
    )
