from sqlalchemy import Column, String, Integer, Text, DateTime, Index
from models.base import Base, utcnow, isoformat


class ErrorLog(Base):
    __tablename__ = 'error_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String(64), nullable=False, comment="Pipeline that failed, e.g. cron/gossip-sync")
    phase = Column(String(32), nullable=False, comment="fetch, validation, preprocessing, transaction, update, ...")
    node_id = Column(String(255), nullable=True)
    error = Column(Text, nullable=False)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('idx_error_source_phase', 'source', 'phase'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'source': self.source,
            'phase': self.phase,
            'node_id': self.node_id,
            'error': self.error,
            'details': self.details,
            'timestamp': isoformat(self.timestamp),
        }
