from .database import Base, SessionLocal, get_engine, session_scope


def init_db():
    import fundmatch.db.models  # noqa
    Base.metadata.create_all(bind=get_engine())
