import hashlib
import os
import re

import pytest

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")
os.environ.setdefault("EMBEDDING_PROVIDER", "none")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from spotter.db import DB
from spotter.errors import EmbeddingProviderError
from spotter.models import Base
from spotter.services.embeddings import EmbeddingProvider

FAKE_DIM = 32
TOKEN_PATTERN = re.compile(r"[a-z0-9]+")


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic bag-of-words vectors; can be told to fail."""

    name = "fake"

    def __init__(self, model: str = "fake-embed-v1"):
        super().__init__(model)
        self.calls = 0
        self.batch_sizes = []
        self.fail_with = None
        self.closed = False

    async def embed_batch(self, texts):
        self.calls += 1
        self.batch_sizes.append(len(texts))
        if self.fail_with is not None:
            raise self.fail_with
        return [self.vector_for(text) for text in texts]

    async def aclose(self):
        self.closed = True

    @staticmethod
    def vector_for(text):
        vector = [0.0] * FAKE_DIM
        for token in TOKEN_PATTERN.findall((text or "").lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            vector[digest[0] % FAKE_DIM] += 1.0
        if not any(vector):
            vector[0] = 1.0
        return vector


def transient_failure():
    return EmbeddingProviderError("embedding provider unavailable", transient=True)


@pytest.fixture
def server_db(tmp_path):
    db_path = tmp_path / "spotter.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    DB.engine = engine
    DB.SessionLocal = SessionLocal
    try:
        yield SessionLocal
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture
def db_session(server_db):
    session = server_db()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_provider():
    return FakeEmbeddingProvider()
