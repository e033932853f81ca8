from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, Request

from chatsync.schemas.messages import (
    ChatStateResponse,
    InputChangeRequest,
    LoadOlderResponse,
    PresenceRequest,
    SendMediaRequest,
    SendMessageResponse,
    SendTextRequest,
)
from chatsync.services.engine import ChatSession

# --------------------------------------------------------------------
# Router
# --------------------------------------------------------------------
router = APIRouter()


def get_session(request: Request) -> ChatSession:
    session = getattr(request.app.state, "session", None)
    if session is None or session.closed:
        raise HTTPException(status_code=503, detail="Sesión de chat no disponible")
    return session


def _state_response(session: ChatSession) -> ChatStateResponse:
    st = session.state.value
    return ChatStateResponse(
        messages=list(st.messages),
        input_text=st.input_text,
        remote_typing=st.remote_typing,
        remote_presence=st.remote_presence,
        loading=st.loading,
        error=st.error,
        upload_progress=st.upload_progress,
        oldest_sent_at=st.oldest_sent_at,
        paging=st.paging.value,
    )


@router.get("/state", response_model=ChatStateResponse)
async def get_state(session: ChatSession = Depends(get_session)):
    return _state_response(session)


@router.put("/input", response_model=ChatStateResponse)
async def change_input(payload: InputChangeRequest, session: ChatSession = Depends(get_session)):
    """Cada cambio del campo de texto: publica typing y reprograma el timeout."""
    session.on_text_change(payload.text)
    return _state_response(session)


@router.post("/messages", response_model=SendMessageResponse)
async def send_text(payload: SendTextRequest, session: ChatSession = Depends(get_session)):
    msg = session.send_text(
        text=payload.text,
        message_id=payload.message_id,
        reply_to_id=payload.reply_to_id,
        reply_preview=payload.reply_preview,
    )
    # Vacío no es error: simplemente no se envía nada
    if msg is None:
        return SendMessageResponse(success=False)
    return SendMessageResponse(message_id=msg.id)


@router.post("/media", response_model=SendMessageResponse)
async def send_media(payload: SendMediaRequest, session: ChatSession = Depends(get_session)):
    msg = await session.send_media(Path(payload.path), payload.kind)
    if msg is None:
        raise HTTPException(status_code=400, detail=session.state.value.error or "No se pudo enviar el archivo")
    return SendMessageResponse(message_id=msg.id)


@router.post("/older", response_model=LoadOlderResponse)
async def load_older(session: ChatSession = Depends(get_session)):
    added = await session.load_older()
    return LoadOlderResponse(added=added, oldest_sent_at=session.state.value.oldest_sent_at)


@router.delete("/messages/{message_id}", response_model=SendMessageResponse)
async def delete_message(message_id: str, session: ChatSession = Depends(get_session)):
    session.delete_message(message_id)
    return SendMessageResponse(message_id=message_id)


@router.put("/presence")
async def set_presence(payload: PresenceRequest, session: ChatSession = Depends(get_session)):
    """Foreground/background del shell."""
    session.set_online(payload.online)
    return {"online": payload.online}


@router.post("/reconnect")
async def reconnect(session: ChatSession = Depends(get_session)):
    return {"restarted": session.reconnect()}


@router.delete("/error", response_model=ChatStateResponse)
async def clear_error(session: ChatSession = Depends(get_session)):
    session.clear_error()
    return _state_response(session)
