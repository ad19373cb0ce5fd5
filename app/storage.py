import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Generator, Optional, TypeVar

from sqlalchemy import create_engine, or_, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import Settings
from app.errors import PersistenceOperationFailure, PersistenceUnavailable
from app.models import Base, ContactRecord, MessageRecord
from app.schemas import Contact, Message

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Store(ABC):
    """
    Persistence contract shared by the durable and the in-memory store.

    Both implementations must answer every query identically for the same
    sequence of writes: upserts fully replace, status updates OR-match
    primary_id/secondary_id and touch only the first match ordered by
    (created_at, primary_id).
    """

    #: "connected" for the durable store, "in-memory" for the fallback
    mode: str

    @abstractmethod
    def upsert_message(self, message: Message) -> bool:
        """Insert or fully replace a message by primary_id. Returns True if created."""

    @abstractmethod
    def update_status(
        self, message_id: str, status: str, status_timestamp: Optional[int]
    ) -> Optional[Message]:
        """Set status on the first message whose primary or secondary id matches."""

    @abstractmethod
    def upsert_contact(self, conversation_id: str, display_name: str) -> Contact:
        """Create the contact or overwrite its display name."""

    @abstractmethod
    def record_last_message(self, message: Message, increment_unread: bool) -> Contact:
        """
        Point the contact at message unless it already holds a later one.

        Creates the contact, named after the message, if it does not exist.
        """

    @abstractmethod
    def mark_read(self, conversation_id: str) -> Optional[Contact]:
        """Reset the unread counter. Returns None for unknown conversations."""

    @abstractmethod
    def get_message(self, primary_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    def list_messages(self, conversation_id: str) -> list[Message]:
        """Messages of one conversation ordered by created_at ASC, primary_id ASC."""

    @abstractmethod
    def list_contacts(self) -> list[Contact]:
        """All contacts ordered by conversation_id ASC."""

    @abstractmethod
    def ping(self) -> bool:
        ...

    def close(self) -> None:
        pass


def is_newer(message: Message, last: Optional[Any]) -> bool:
    """Whether message should replace last (a Message or its JSON snapshot)."""
    if last is None:
        return True
    last_created = last["created_at"] if isinstance(last, dict) else last.created_at
    return message.created_at >= last_created


def message_row(message: Message) -> dict[str, Any]:
    """Flatten a Message into MessageRecord column values."""
    row = message.model_dump(mode="json")
    row["kind"] = message.kind
    return row


# =============================================================================
# Durable Store
# =============================================================================

class SqlStore(Store):
    """SQLAlchemy-backed store. One engine is shared by every request."""

    mode = "connected"

    def __init__(self, engine: Engine):
        self.engine = engine
        self.SessionLocal = sessionmaker(autoflush=False, bind=engine)

    @classmethod
    def from_url(cls, url: str) -> "SqlStore":
        kwargs: dict[str, Any] = {}
        parsed = make_url(url)
        if parsed.get_backend_name() == "sqlite":
            # check_same_thread=False is required for SQLite to work with FastAPI
            kwargs["connect_args"] = {"check_same_thread": False}
            if parsed.database in (None, "", ":memory:"):
                # Keep a single connection so the in-memory database survives
                kwargs["poolclass"] = StaticPool
        return cls(create_engine(url, echo=False, **kwargs))

    def connect(self) -> None:
        """
        Create tables and verify connectivity.

        Raises:
            PersistenceUnavailable: the database cannot be reached
        """
        logger.debug(f"Initializing database: {self.engine.url.render_as_string(hide_password=True)}")
        try:
            Base.metadata.create_all(bind=self.engine)
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            self.engine.dispose()
            raise PersistenceUnavailable(str(e)) from e
        logger.info("Database initialized successfully")

    @contextmanager
    def _transaction(self, operation: str) -> Generator[Session, None, None]:
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Store operation {operation} failed: {e}")
            raise PersistenceOperationFailure(f"{operation} failed") from e
        finally:
            db.close()

    def _run(self, operation: str, work: Callable[[Session], T]) -> T:
        """
        Run work in one transaction.

        An insert that loses a race against a concurrent insert of the same
        key surfaces as IntegrityError; the second attempt then sees the row
        and takes the update path.
        """
        try:
            with self._transaction(operation) as db:
                return work(db)
        except PersistenceOperationFailure as e:
            if not isinstance(e.__cause__, IntegrityError):
                raise
            logger.info(f"Concurrent insert during {operation}, retrying as update")
        with self._transaction(operation) as db:
            return work(db)

    def upsert_message(self, message: Message) -> bool:
        row = message_row(message)

        def work(db: Session) -> bool:
            existing = db.get(MessageRecord, message.primary_id)
            if existing is None:
                db.add(MessageRecord(**row))
                return True
            for column, value in row.items():
                setattr(existing, column, value)
            return False

        created = self._run("upsert_message", work)
        logger.debug(f"Message {message.primary_id} {'created' if created else 'replaced'}")
        return created

    def update_status(
        self, message_id: str, status: str, status_timestamp: Optional[int]
    ) -> Optional[Message]:
        def work(db: Session) -> Optional[Message]:
            record = (
                db.query(MessageRecord)
                .filter(or_(
                    MessageRecord.primary_id == message_id,
                    MessageRecord.secondary_id == message_id,
                ))
                .order_by(MessageRecord.created_at.asc(), MessageRecord.primary_id.asc())
                .first()
            )
            if record is None:
                return None
            record.status = status
            record.status_timestamp = status_timestamp
            return Message.model_validate(record)

        return self._run("update_status", work)

    def upsert_contact(self, conversation_id: str, display_name: str) -> Contact:
        def work(db: Session) -> Contact:
            record = db.get(ContactRecord, conversation_id)
            if record is None:
                record = ContactRecord(
                    conversation_id=conversation_id,
                    display_name=display_name,
                    unread_count=0,
                )
                db.add(record)
            else:
                record.display_name = display_name
            return Contact.model_validate(record)

        return self._run("upsert_contact", work)

    def record_last_message(self, message: Message, increment_unread: bool) -> Contact:
        snapshot = message.model_dump(mode="json")

        def work(db: Session) -> Contact:
            record = db.get(ContactRecord, message.conversation_id)
            if record is None:
                record = ContactRecord(
                    conversation_id=message.conversation_id,
                    display_name=message.display_name,
                    unread_count=0,
                )
                db.add(record)
            if is_newer(message, record.last_message):
                record.last_message = snapshot
            if increment_unread:
                record.unread_count = (record.unread_count or 0) + 1
            return Contact.model_validate(record)

        return self._run("record_last_message", work)

    def mark_read(self, conversation_id: str) -> Optional[Contact]:
        def work(db: Session) -> Optional[Contact]:
            record = db.get(ContactRecord, conversation_id)
            if record is None:
                return None
            record.unread_count = 0
            return Contact.model_validate(record)

        return self._run("mark_read", work)

    def get_message(self, primary_id: str) -> Optional[Message]:
        with self._transaction("get_message") as db:
            record = db.get(MessageRecord, primary_id)
            return Message.model_validate(record) if record else None

    def list_messages(self, conversation_id: str) -> list[Message]:
        with self._transaction("list_messages") as db:
            records = (
                db.query(MessageRecord)
                .filter(MessageRecord.conversation_id == conversation_id)
                .order_by(MessageRecord.created_at.asc(), MessageRecord.primary_id.asc())
                .all()
            )
            return [Message.model_validate(r) for r in records]

    def list_contacts(self) -> list[Contact]:
        with self._transaction("list_contacts") as db:
            records = db.query(ContactRecord).order_by(ContactRecord.conversation_id.asc()).all()
            return [Contact.model_validate(r) for r in records]

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        self.engine.dispose()
        logger.info("Database connection closed")


def open_store(settings: Settings) -> Store:
    """
    Select the store once at startup.

    A missing or unreachable database is not fatal: the service degrades to
    the in-memory store and keeps serving.
    """
    from app.memory_store import MemoryStore

    if not settings.DATABASE_URL:
        logger.warning("DATABASE_URL not set, using in-memory store")
        return MemoryStore()

    try:
        store = SqlStore.from_url(settings.DATABASE_URL)
        store.connect()
    except (PersistenceUnavailable, SQLAlchemyError, ImportError) as e:
        logger.warning(f"Database unavailable, falling back to in-memory store: {e}")
        return MemoryStore()
    return store
