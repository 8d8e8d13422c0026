from sqlalchemy import Column, DateTime, String, func

from app.core.base import Base


class BillingInfo(Base):
    __tablename__ = "billing_info"

    org_id = Column(String(64), primary_key=True)
    stripe_customer_id = Column(String(255), unique=True, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
