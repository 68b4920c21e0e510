from sqlalchemy import Column, DateTime, Integer, String

from campus.database import Base
from campus.utils.clock import utcnow


class ProcessedGatewayEvent(Base):
    """Webhook events already applied, keyed by the gateway's event id."""

    __tablename__ = "processed_gateway_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), nullable=False, unique=True, index=True)
    event_type = Column(String(255), nullable=False)
    tenant_id = Column(Integer, nullable=True)
    processed_at = Column(DateTime, nullable=False, default=utcnow)
