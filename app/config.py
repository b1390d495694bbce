from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    database_url: str = 'sqlite:///./procurement_sync.db'

    remote_store: str = 'sql'
    document_id: str = 'procurement-main'
    presence_channel: str = 'procurement-presence'
    presence_ttl_seconds: int = 90
    change_poll_seconds: float = 3.0

    cache_dir: str = '.procurement_cache'
    storage_key: str = 'procurement_local_storage_v2'

    push_debounce_seconds: float = 1.5
    audit_debounce_seconds: float = 10.0

    password_full: str = 'change-me-full'
    password_view: str = 'change-me-view'
    password_requester: str = 'change-me-requester'
    admin_secret: str = 'change-me-admin'
    display_name: str | None = None

    created_date_format: str = '%d/%m/%Y'

    log_level: str = 'INFO'
    log_format: str = 'text'

    @property
    def database_url_normalized(self) -> str:
        url = self.database_url.strip()
        if url.startswith('postgres://'):
            return 'postgresql+psycopg://' + url[len('postgres://') :]
        if url.startswith('postgresql://'):
            return 'postgresql+psycopg://' + url[len('postgresql://') :]
        return url


settings = Settings()
