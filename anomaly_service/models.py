from sqlalchemy import Column, String, Numeric, DateTime, func
from sqlalchemy.orm import declarative_base

Base = declarative_base()

class TransactionRecord(Base):
    __tablename__ = "transactions"
    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), index=True, nullable=False)
    amount = Column(Numeric(18, 2, asdecimal=False), nullable=False)
    currency = Column(String(8), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    location = Column(String(128), nullable=False)
    created_at = Column(DateTime, server_default=func.now())
