from sqlalchemy import Column, String, Float, Enum, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from shared.models.base import Base, LinkStatus, enum_values, generate_uuid


class EligibleAccountLink(Base):
    """Which accounts may auto-open positions on which ticker, and with what lot"""
    __tablename__ = 'eligible_account_links'
    __table_args__ = (
        UniqueConstraint('user_id', 'ticker', name='uq_eligible_account_links_user_ticker'),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey('accounts.id'), nullable=False)
    ticker = Column(String(20), nullable=False)
    lot = Column(Float, nullable=False)
    status = Column(
        Enum(LinkStatus, name='link_status', values_callable=enum_values),
        nullable=False,
        default=LinkStatus.ACTIVE,
    )

    # Relationships
    account = relationship("Account", back_populates="links")
