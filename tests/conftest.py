from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from labcore.database import Base, get_db
from labcore.main import app
from labcore.models import exam, request  # noqa: F401
from labcore.schemas.exam import ExamDefinitionIn
from labcore.services.catalog import create_definition


@pytest.fixture()
def db_session() -> Generator:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client(db_session) -> Generator[TestClient, None, None]:
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    # Not entered as a context manager: the lifespan (schema-head check, seeding) stays off.
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def make_exam(db_session):
    def _make(code: str, **kwargs):
        payload = ExamDefinitionIn(code=code, name=kwargs.pop("name", code.title()), **kwargs)
        return create_definition(db_session, payload)

    return _make


@pytest.fixture()
def glucose(make_exam):
    return make_exam(
        "GLU",
        name="Glucosa",
        fields=[{"name": "Glucosa", "data_type": "number", "unit": "mg/dL", "reference_expression": "70-110", "required": True}],
    )
