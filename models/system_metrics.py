from sqlalchemy import Column, Float, Integer, BigInteger, DateTime
from models.base import Base
from datetime import datetime

class SystemMetrics(Base):
    __tablename__ = 'system_metrics'
    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    active_streams = Column(Integer)
    cpu_percent = Column(Float)
    ram_used = Column(BigInteger)
    ram_total = Column(BigInteger)
    packets_received = Column(BigInteger)
    packets_sent = Column(BigInteger)
    uptime = Column(Integer)
    current_index = Column(Integer)
    file_size = Column(BigInteger)
    total_bytes = Column(BigInteger)
    total_pages = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def to_dict(self):
        return {
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'active_streams': self.active_streams,
            'cpu_percent': self.cpu_percent,
            'ram_used': self.ram_used,
            'ram_total': self.ram_total,
            'packets_received': self.packets_received,
            'packets_sent': self.packets_sent,
            'uptime': self.uptime,
            'current_index': self.current_index,
            'file_size': self.file_size,
            'total_bytes': self.total_bytes,
            'total_pages': self.total_pages,
        }
