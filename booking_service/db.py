from shared.database import get_engine, get_session

from .config import settings

if not settings.database_url:
    raise RuntimeError("BOOKING_DB environment variable is not set")

engine = get_engine(settings.database_url)

SessionLocal = get_session(engine)
