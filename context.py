import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config import Settings
from database import Base, build_engine, build_session_factory
from notifications import BroadcastNotifier

logger = logging.getLogger(__name__)


class BudgetLocks:
    """Per-(user, category) locks serializing budget check and write."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # a lock lives only while some caller holds or waits on it
        self._locks: weakref.WeakValueDictionary[tuple[int, int], threading.Lock] = (
            weakref.WeakValueDictionary()
        )

    def active_count(self) -> int:
        with self._guard:
            return len(self._locks)

    def _lock_for(self, user_id: int, category_id: int) -> threading.Lock:
        key = (user_id, category_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, user_id: int, category_id: int) -> Iterator[None]:
        lock = self._lock_for(user_id, category_id)
        with lock:
            yield


class AppContext:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.engine: Engine = build_engine(settings.database_url)
        self.session_factory: sessionmaker[Session] = build_session_factory(
            self.engine
        )
        self.notifier = BroadcastNotifier()
        self.budget_locks = BudgetLocks()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()
        logger.info("context_closed: engine disposed")
