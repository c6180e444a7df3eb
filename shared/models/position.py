from sqlalchemy import Column, String, Float, Boolean, DateTime, Enum, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime
from shared.models.base import Base, TradeSide, enum_values, generate_uuid


class Position(Base):
    __tablename__ = 'positions'
    __table_args__ = (
        Index('ix_positions_ticker_done', 'ticker', 'done'),
        Index('ix_positions_user_done', 'user_id', 'done'),
        Index('ix_positions_ticker_ended_at', 'ticker', 'ended_at'),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey('accounts.id'), nullable=False)
    ticker = Column(String(20), nullable=False)
    action = Column(Enum(TradeSide, name='trade_side', values_callable=enum_values), nullable=False)
    price = Column(Float, nullable=False)
    # negative for sell positions
    lot = Column(Float, nullable=False)
    pnl = Column(Float, nullable=False, default=0.0)
    done = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    ended_at = Column(DateTime, nullable=True)

    # Relationships
    account = relationship("Account", back_populates="positions")

    def __repr__(self):
        state = "closed" if self.done else "open"
        return f"<Position {self.ticker} {self.action.value if self.action else None} lot={self.lot} {state}>"
