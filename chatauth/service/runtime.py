from __future__ import annotations

from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from chatauth.config import Settings
from chatauth.logging import get_logger
from chatauth.service.auth import AuthService
from chatauth.service.session_policy import CookieAttributes, cookie_attributes
from chatauth.storage.memory import MemoryStore
from chatauth.storage.postgres import PostgresStore

logger = get_logger(__name__)

MEMORY_URL_SCHEME = "memory"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging.

    Example: postgresql://app:hunter2@db:5432/chat -> postgresql://app:***@db:5432/chat
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings) -> Union[MemoryStore, PostgresStore]:
    """Pick the credential store named by ``database.url``.

    ``memory://`` selects the in-process store; anything else is handed to
    psycopg as a Postgres conninfo string.
    """
    db = settings.database
    if urlparse(db.url).scheme == MEMORY_URL_SCHEME:
        return MemoryStore()
    return PostgresStore(
        db.url,
        min_size=db.min_connections,
        max_size=db.max_connections,
        timeout=db.connect_timeout_secs,
    )


class Runtime:
    """Holds the service instances built from one configuration snapshot."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        store_type = (
            "memory"
            if urlparse(settings.database.url).scheme == MEMORY_URL_SCHEME
            else "postgres"
        )
        logger.info(
            "runtime_init_started",
            environment=settings.app.environment,
            store_type=store_type,
            database_url=_mask_url_password(settings.database.url),
        )
        try:
            self.store = build_store(settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.auth = AuthService(self.store, settings)
        self.cookies: CookieAttributes = cookie_attributes(
            settings.app.environment, domain=settings.app.cookie_domain
        )
        logger.info("runtime_init_complete", store_type=store_type)

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if callable(close):
            close()
        logger.info("runtime_closed")
