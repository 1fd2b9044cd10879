from sqlalchemy import Column, String, Float, Integer, BigInteger, Boolean, DateTime
from models.base import Base, utcnow, isoformat

# Field ownership between the two reconciliation cycles.
# Gossip sync writes topology/enrichment fields, stats updater writes live metrics,
# both may write the shared fields (stats updater is the more authoritative writer).
GOSSIP_OWNED_FIELDS = ('pubkey', 'version', 'country', 'lat', 'lon', 'credits')
STATS_OWNED_FIELDS = (
    'cpu_percent', 'ram_usage', 'ram_used', 'ram_total',
    'active_streams', 'packets_received', 'packets_sent',
)
SHARED_FIELDS = ('storage', 'uptime', 'status')


class Node(Base):
    """
    One row per pod, keyed by its bare IP (never with a port suffix).

    The IP is the only join key to node_snapshots.
    """
    __tablename__ = 'nodes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    ip = Column(String(64), unique=True, nullable=False, index=True, comment="Bare IP address, no port")
    pubkey = Column(String(128), nullable=True)
    version = Column(String(64))

    # Geo (from geo-IP lookup)
    country = Column(String(128))
    lat = Column(Float, default=0.0)
    lon = Column(Float, default=0.0)

    credits = Column(BigInteger, default=0, nullable=False)
    storage = Column(Float, default=0.0, nullable=False, comment="Storage in GB")
    uptime = Column(BigInteger, default=0, nullable=False, comment="Uptime in seconds")
    status = Column(String(16), default='unknown', nullable=False, index=True, comment="active, inactive or unknown")

    # Live metrics (from get-stats)
    cpu_percent = Column(Float, default=0.0, nullable=False)
    ram_usage = Column(Float, default=0.0, nullable=False, comment="RAM usage percent")
    ram_used = Column(BigInteger, default=0, nullable=False)
    ram_total = Column(BigInteger, default=0, nullable=False)
    active_streams = Column(Integer, default=0, nullable=False)
    packets_received = Column(BigInteger, default=0, nullable=False)
    packets_sent = Column(BigInteger, default=0, nullable=False)

    is_public = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, index=True)

    def to_dict(self):
        """Convert node to a JSON-safe dict (64-bit counters as strings)."""
        return {
            'id': self.id,
            'ip': self.ip,
            'pubkey': self.pubkey,
            'version': self.version,
            'country': self.country,
            'lat': self.lat,
            'lon': self.lon,
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
            'is_public': self.is_public,
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<Node(ip='{self.ip}', status='{self.status}', credits={self.credits})>"
