import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from marketplace_hub.db.session import get_db
from marketplace_hub.main import app


@pytest.fixture()
def client(db_engine):
    """真实 app，只把 get_db 换成内存 SQLite（与 db_session 同一个库）。"""
    Session = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False, future=True)

    def _get_db():
        db = Session()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
