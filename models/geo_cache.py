from sqlalchemy import Column, String, Float, DateTime
from models.base import Base, utcnow


class GeoCache(Base):
    """Durable geo-IP cache. Rows never expire."""
    __tablename__ = 'geo_cache'

    ip = Column(String(64), primary_key=True)
    country = Column(String(128))
    lat = Column(Float)
    lon = Column(Float)
    created_at = Column(DateTime, default=utcnow)

    def to_dict(self):
        return {'ip': self.ip, 'country': self.country, 'lat': self.lat, 'lon': self.lon}
