import logging
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from common.error_handling import PersistError
from common.schemas import Transaction
from common.settings import Settings, settings
from .models import Base, TransactionRecord

logger = logging.getLogger(__name__)

def make_engine(url: str = None, cfg: Settings = None) -> Engine:
    cfg = cfg or settings
    url = url or cfg.database_url
    connect_args = {}
    if url.startswith("mysql"):
        connect_args = {
            "connect_timeout": cfg.db_connect_timeout,
            "read_timeout": cfg.db_read_timeout,
            "write_timeout": cfg.db_read_timeout,
        }
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)

def init_schema(engine: Engine):
    Base.metadata.create_all(bind=engine)

def check_connection(engine: Engine):
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))

class TransactionRepository:
    """Insert-only sink for the canonical transaction record"""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

    def insert(self, txn: Transaction) -> None:
        try:
            with self.SessionLocal() as db:
                db.add(TransactionRecord(
                    id=txn.id,
                    user_id=txn.user_id,
                    amount=txn.amount,
                    currency=txn.currency,
                    timestamp=txn.timestamp,
                    location=txn.location,
                ))
                db.commit()
        except SQLAlchemyError as e:
            raise PersistError(f"insert of transaction {txn.id} failed: {e.__class__.__name__}", e) from e

    def ping(self) -> bool:
        try:
            check_connection(self.engine)
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Database ping failed: {e}")
            return False
