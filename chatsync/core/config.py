from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


MB = 1024 * 1024

# Nodos de la base remota
CHATS_NODE = "chats"
MESSAGES_NODE = "messages"
TYPING_NODE = "typing"
STATUS_NODE = "status"


class SyncConfig(BaseModel):
    """Configuración inmutable que consume el motor de sincronización."""

    model_config = ConfigDict(frozen=True)

    local_user_id: str
    remote_user_id: str
    chat_id: str
    recent_window_size: int = 10
    page_size: int = 10
    typing_timeout_ms: int = 2000
    status_promotion_delay_ms: int = 500
    max_image_bytes: int = 5 * MB
    max_video_bytes: int = 25 * MB
    max_audio_bytes: int = 10 * MB

    @property
    def messages_path(self) -> str:
        return f"{CHATS_NODE}/{self.chat_id}/{MESSAGES_NODE}"

    def typing_path(self, user_id: str) -> str:
        return f"{TYPING_NODE}/{user_id}"

    def status_path(self, user_id: str) -> str:
        return f"{STATUS_NODE}/{user_id}"


class Settings(BaseSettings):
    PROJECT_NAME: str = "chatsync"
    VERSION: str = "0.1.0"
    ENV: str = "development"
    PORT: int = 8000

    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    # Participantes fijos (en la segunda app se invierten)
    LOCAL_USER_ID: str = "daymaker"
    REMOTE_USER_ID: str = "mystiqueen"
    CHAT_ID: str = "mystiqueen_daymaker"

    # Realtime Database (REST)
    FIREBASE_URL: str = Field(default="")
    FIREBASE_AUTH: str = Field(default="")

    # Almacenamiento de medios en GitHub (nunca commitear el token real)
    GITHUB_API_URL: str = "https://api.github.com"
    GITHUB_OWNER: str = ""
    GITHUB_REPO: str = "upload"
    GITHUB_BRANCH: str = "main"
    GITHUB_TOKEN: str = ""

    RECENT_WINDOW_SIZE: int = 10
    PAGE_SIZE: int = 10
    TYPING_TIMEOUT_MS: int = 2000
    STATUS_PROMOTION_DELAY_MS: int = 500

    MAX_IMAGE_SIZE_MB: int = 5
    MAX_VIDEO_SIZE_MB: int = 25
    MAX_AUDIO_SIZE_MB: int = 10

    HTTP_TIMEOUT_SECONDS: float = 60.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def sync_config(self) -> SyncConfig:
        return SyncConfig(
            local_user_id=self.LOCAL_USER_ID,
            remote_user_id=self.REMOTE_USER_ID,
            chat_id=self.CHAT_ID,
            recent_window_size=self.RECENT_WINDOW_SIZE,
            page_size=self.PAGE_SIZE,
            typing_timeout_ms=self.TYPING_TIMEOUT_MS,
            status_promotion_delay_ms=self.STATUS_PROMOTION_DELAY_MS,
            max_image_bytes=self.MAX_IMAGE_SIZE_MB * MB,
            max_video_bytes=self.MAX_VIDEO_SIZE_MB * MB,
            max_audio_bytes=self.MAX_AUDIO_SIZE_MB * MB,
        )


settings = Settings()
