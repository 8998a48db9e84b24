import ssl
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from payment_recovery.shared.core.config import get_settings
import structlog

logger = structlog.get_logger()
settings = get_settings()

# Fail fast if database URL is not configured
if not settings.DATABASE_URL:
    raise ValueError("DATABASE_URL is not set. Check your .env file.")


def build_connect_args(database_url: str, ssl_mode: str, ca_cert_path: str | None, command_timeout: float) -> dict:
    """asyncpg SSL and timeout options; SQLite only takes a busy timeout."""
    if database_url.startswith("sqlite"):
        return {"timeout": command_timeout}

    connect_args = {"statement_cache_size": 0, "command_timeout": command_timeout}
    ssl_mode = ssl_mode.lower()

    if ssl_mode == "disable":
        logger.warning("database_ssl_disabled",
                       msg="SSL disabled - INSECURE, do not use in production!")
        connect_args["ssl"] = False

    elif ssl_mode == "require":
        # Encryption enforced, no certificate verification
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        connect_args["ssl"] = ssl_context
        logger.info("database_ssl_require", msg="SSL enabled (encrypted, no cert verification)")

    elif ssl_mode in ("verify-ca", "verify-full"):
        if not ca_cert_path:
            raise ValueError(f"DB_SSL_CA_CERT_PATH required for ssl_mode={ssl_mode}")
        ssl_context = ssl.create_default_context(cafile=ca_cert_path)
        ssl_context.verify_mode = ssl.CERT_REQUIRED
        ssl_context.check_hostname = (ssl_mode == "verify-full")
        connect_args["ssl"] = ssl_context
        logger.info("database_ssl_verified", mode=ssl_mode, ca_cert=ca_cert_path)

    else:
        raise ValueError(f"Invalid DB_SSL_MODE: {ssl_mode}. Use: disable, require, verify-ca, verify-full")

    return connect_args


connect_args = build_connect_args(
    settings.DATABASE_URL,
    settings.DB_SSL_MODE,
    settings.DB_SSL_CA_CERT_PATH,
    settings.DB_COMMAND_TIMEOUT_SECONDS,
)

# NullPool in tests and for SQLite; pooled connections otherwise
pool_args = {}
if settings.TESTING or settings.uses_sqlite:
    from sqlalchemy.pool import NullPool
    pool_args["poolclass"] = NullPool
else:
    pool_args["pool_size"] = settings.DB_POOL_SIZE
    pool_args["max_overflow"] = settings.DB_MAX_OVERFLOW
    pool_args["pool_recycle"] = 300

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True,
    connect_args=connect_args,
    **pool_args
)

# expire_on_commit=False keeps loaded rows usable after commit in async code
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
