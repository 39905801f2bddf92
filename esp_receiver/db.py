from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

def make_engine(url: str):
    kwargs: dict = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        # sessions are used from FastAPI workers, the paho thread and relay workers
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)

def init_db(engine):
    SQLModel.metadata.create_all(engine)

def get_session(engine):
    # loaded attributes stay readable after commit and close
    return Session(engine, expire_on_commit=False)
