from sqlalchemy import Column, String, Float, Integer, BigInteger, DateTime, Index
from models.base import Base, utcnow, isoformat


class NodeSnapshot(Base):
    """
    Append-only history: one row per node per reconciliation cycle.

    node_ip references nodes.ip by value only (no FK), so orphans are possible.
    """
    __tablename__ = 'node_snapshots'

    id = Column(Integer, primary_key=True, autoincrement=True)
    node_ip = Column(String(64), nullable=False, index=True)
    credits = Column(BigInteger, default=0, nullable=False)
    storage = Column(Float, default=0.0, nullable=False)
    uptime = Column(BigInteger, default=0, nullable=False)
    status = Column(String(16), nullable=False)
    cpu_percent = Column(Float, default=0.0, nullable=False)
    ram_usage = Column(Float, default=0.0, nullable=False)
    ram_used = Column(BigInteger, default=0, nullable=False)
    ram_total = Column(BigInteger, default=0, nullable=False)
    active_streams = Column(Integer, default=0, nullable=False)
    packets_received = Column(BigInteger, default=0, nullable=False)
    packets_sent = Column(BigInteger, default=0, nullable=False)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('idx_snapshot_ip_timestamp', 'node_ip', 'timestamp'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'node_ip': self.node_ip,
            'credits': self.credits or 0,
            'storage': self.storage or 0.0,
            'uptime': self.uptime or 0,
            'status': self.status,
            'cpu_percent': self.cpu_percent or 0.0,
            'ram_usage': self.ram_usage or 0.0,
            'ram_used': self.ram_used or 0,
            'ram_total': self.ram_total or 0,
            'active_streams': self.active_streams or 0,
            'packets_received': str(self.packets_received or 0),
            'packets_sent': str(self.packets_sent or 0),
            'timestamp': isoformat(self.timestamp),
        }
