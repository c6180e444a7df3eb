from sqlalchemy import Column, String, Float, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime
from shared.models.base import Base, generate_uuid


class Account(Base):
    __tablename__ = 'accounts'

    # one account per user, the id is the owner reference
    id = Column(String(36), primary_key=True, default=generate_uuid)
    balance = Column(Float, nullable=False, default=0.0)
    equity = Column(Float, nullable=False, default=0.0)
    unrealized_pnl = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    positions = relationship("Position", back_populates="account")
    links = relationship("EligibleAccountLink", back_populates="account")

    def __repr__(self):
        return f"<Account {self.id} balance={self.balance} equity={self.equity}>"
