from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import AnyHttpUrl


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")
    # Рабочая БД по умолчанию: локальный файл проекта. Можно переопределить через переменную окружения DATABASE_URL
    DATABASE_URL: str = "sqlite:///./data/fleet.db"
    SECRET_KEY: str = "your-secret-key-here-change-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Объектное хранилище (Supabase-совместимое API)
    STORAGE_URL: AnyHttpUrl = "http://localhost:54321"
    STORAGE_SERVICE_KEY: str = ""  # задаётся через .env
    RELEASES_BUCKET: str = "software-releases"
    UPLOAD_CHUNK_SIZE: int = 6 * 1024 * 1024  # сервер принимает TUS-чанки ровно по 6 МБ
    UPLOAD_CACHE_CONTROL: str = "3600"
    STORAGE_TIMEOUT_SECONDS: int = 60
    # Загрузка авторизуется сессионным JWT пользователя: хранилище должно проверять
    # подпись тем же SECRET_KEY. False: в Authorization уходит сервисный ключ
    STORAGE_FORWARD_USER_TOKEN: bool = True
    # Сколько секунд хранить итог завершённой загрузки для опроса из UI
    UPLOAD_TRACKER_TTL_SECONDS: int = 600


settings = Settings()

DATABASE_URL = settings.DATABASE_URL
