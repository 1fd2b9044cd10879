from sqlalchemy import Column, Float, Integer, BigInteger, DateTime
from models.base import Base, utcnow


class NetworkStats(Base):
    """Network rollup written once per completed reconciliation cycle."""
    __tablename__ = 'network_stats'

    id = Column(Integer, primary_key=True, autoincrement=True)
    active_nodes = Column(Integer, default=0, nullable=False)
    inactive_nodes = Column(Integer, default=0, nullable=False)
    total_storage = Column(Float, default=0.0, nullable=False)
    total_credits = Column(BigInteger, default=0, nullable=False)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)
