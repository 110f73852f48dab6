from __future__ import annotations

import json
import logging
import os
import uuid
from typing import Any, Optional

from sqlalchemy import Column, LargeBinary, String, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()

MISTAKES_KEY = "qra_mistakes"
TRAINING_UPLOADS_KEY = "qra_training_uploads"
USER_ID_KEY = "qra_user_id"


class KeyValue(Base):
    __tablename__ = "kv_store"
    key   = Column(String,      primary_key=True)
    value = Column(LargeBinary, nullable=False)


def get_engine(db_path: str = "recite_store.db"):
    if db_path == ":memory:":
        return create_engine("sqlite://", echo=False)
    full = os.path.abspath(db_path)
    return create_engine(f"sqlite:///{full}", echo=False)


def init_db(engine=None):
    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(engine)
    return engine


def get_session(db_path: str = "recite_store.db"):
    engine = init_db(get_engine(db_path))
    return sessionmaker(bind=engine)()


class KeyValueStore:
    """
    Durable get/set store. Values are bytes; ``set`` commits immediately so
    every mutation survives a crash.
    """

    def __init__(self, session) -> None:
        self._db = session

    @classmethod
    def open(cls, db_path: str = "recite_store.db") -> "KeyValueStore":
        return cls(get_session(db_path))

    def get(self, key: str) -> Optional[bytes]:
        row = self._db.get(KeyValue, key)
        return None if row is None else bytes(row.value)

    def set(self, key: str, value: bytes) -> None:
        row = self._db.get(KeyValue, key)
        if row is None:
            self._db.add(KeyValue(key=key, value=value))
        else:
            row.value = value
        self._db.commit()

    def close(self) -> None:
        self._db.close()

    # ------------------------ JSON helpers ------------------------

    def get_json(self, key: str, default: Any = None) -> Any:
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            logger.error("Stored value for %r is not valid JSON: %s", key, e)
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value, ensure_ascii=False).encode("utf-8"))


def load_or_create_user_id(store: KeyValueStore) -> str:
    """Return the stable user id, generating and storing it on first use."""
    raw = store.get(USER_ID_KEY)
    if raw:
        return raw.decode("utf-8")
    uid = str(uuid.uuid4())
    store.set(USER_ID_KEY, uid.encode("utf-8"))
    logger.info("Generated new user id %s", uid)
    return uid
