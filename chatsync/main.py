from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatsync.core.config import settings
from chatsync.core.logging import configure_logging
from chatsync.core.errors import register_exception_handlers
from chatsync.api.routes import chat
from chatsync.services.engine import ChatSession
from chatsync.services.media import GithubMediaStorage
from chatsync.services.notifier import LoggingNotifier
from chatsync.services.store import FirebaseStore


def build_session() -> ChatSession:
    store = FirebaseStore(
        settings.FIREBASE_URL,
        auth=settings.FIREBASE_AUTH,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    media = GithubMediaStorage(
        owner=settings.GITHUB_OWNER,
        repo=settings.GITHUB_REPO,
        branch=settings.GITHUB_BRANCH,
        token=settings.GITHUB_TOKEN,
        api_url=settings.GITHUB_API_URL,
        timeout=settings.HTTP_TIMEOUT_SECONDS * 2,
    )
    return ChatSession(settings.sync_config(), store, media, LoggingNotifier())


def create_app(session_factory: Optional[Callable[[], ChatSession]] = None) -> FastAPI:
    configure_logging(settings.LOG_LEVEL, settings.LOG_DIR)
    factory = session_factory or build_session

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        session = factory()
        app.state.session = session
        await session.start()
        try:
            yield
        finally:
            await session.close()
            # clientes HTTP propios de la sesión
            for resource in (session.store, session.media):
                aclose = getattr(resource, "aclose", None)
                if aclose is not None:
                    await aclose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(chat.router, prefix="/chat", tags=["chat"])

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("chatsync.main:app", host="0.0.0.0", port=int(settings.PORT))
