"""
Per-account message quota counters.
"""

from sqlalchemy import Column, String, DateTime, Integer, Index, CheckConstraint

from checkin.domain.reminder import Base


class QuotaCounter(Base):
    """SQLAlchemy model for one account's usage within one billing period."""

    __tablename__ = "quota_counters"
    __table_args__ = (
        Index("ix_quota_account_period", "account_id", "period_start", "period_end"),
        CheckConstraint("used <= quota_limit", name="ck_quota_within_limit"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(64), nullable=False)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    limit = Column("quota_limit", Integer, nullable=False)
    used = Column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<QuotaCounter(account={self.account_id}, used={self.used}/{self.limit})>"
