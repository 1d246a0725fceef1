from sqlalchemy import Column, String, Float, Integer, DateTime
from models.base import Base
from datetime import datetime

class IpGeolocation(Base):
    """
    Geolocation lookup result per IP. Written once, never refreshed.
    Failed lookups are stored with status='fail' so they are not queried again.
    """
    __tablename__ = 'ip_geolocation'

    id = Column(Integer, primary_key=True, autoincrement=True)
    ip = Column(String(45), unique=True, nullable=False)
    status = Column(String(20), nullable=False)
    country = Column(String(100))
    country_code = Column(String(10))
    region = Column(String(10))
    region_name = Column(String(100))
    city = Column(String(100))
    zip = Column(String(20))
    lat = Column(Float)
    lon = Column(Float)
    timezone = Column(String(50))
    isp = Column(String(255))
    org = Column(String(255))
    as_info = Column(String(255))
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<IpGeolocation(ip='{self.ip}', status='{self.status}', country='{self.country}')>"

    def to_dict(self):
        return {
            'ip': self.ip,
            'status': self.status,
            'country': self.country,
            'country_code': self.country_code,
            'region': self.region,
            'region_name': self.region_name,
            'city': self.city,
            'zip': self.zip,
            'lat': self.lat,
            'lon': self.lon,
            'timezone': self.timezone,
            'isp': self.isp,
            'org': self.org,
            'as_info': self.as_info,
        }
