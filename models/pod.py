from sqlalchemy import Column, String, Float, Integer, BigInteger, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from models.base import Base
from datetime import datetime

class Pod(Base):
    """
    Registry of pods reported by the network in the latest snapshot.

    The table mirrors the live population: pods that stop being reported are
    deleted on the next snapshot. Address is the identity; several addresses
    may share a pubkey (one operator running multiple endpoints).
    """
    __tablename__ = 'pods'

    id = Column(Integer, primary_key=True, autoincrement=True)
    pubkey = Column(String(255), nullable=True, index=True)
    address = Column(String(255), unique=True, nullable=False)
    rpc_port = Column(Integer, nullable=True)
    version = Column(String(100), nullable=True)
    is_public = Column(Boolean, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    metrics = relationship(
        "PodMetricsHistory",
        back_populates="pod",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<Pod(address='{self.address}', pubkey='{self.pubkey}', version='{self.version}')>"

    def to_dict(self):
        """Convert object to dictionary for JSON serialization"""
        return {
            'id': self.id,
            'pubkey': self.pubkey,
            'address': self.address,
            'rpc_port': self.rpc_port,
            'version': self.version,
            'is_public': self.is_public,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


class PodMetricsHistory(Base):
    """
    Append-only time series of pod metrics.

    A row is written only when the reported metrics differ from the latest
    stored row for the pod. `timestamp` is the time the pod reports for the
    sample, `created_at` is ingestion time (used by retention cleanup).
    """
    __tablename__ = 'pod_metrics_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    pod_id = Column(Integer, ForeignKey('pods.id', ondelete='CASCADE'), nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    storage_used = Column(BigInteger, nullable=True)
    storage_committed = Column(BigInteger, nullable=True)
    storage_usage_percent = Column(Float, nullable=True)
    uptime = Column(Integer, nullable=True, comment="Uptime in seconds")
    last_seen_timestamp = Column(BigInteger, nullable=True, comment="Unix seconds reported by the pod")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    pod = relationship("Pod", back_populates="metrics")

    __table_args__ = (
        Index('idx_pod_metrics_pod_timestamp', 'pod_id', 'timestamp'),
    )

    def to_dict(self):
        return {
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'storage_used': self.storage_used,
            'storage_committed': self.storage_committed,
            'storage_usage_percent': self.storage_usage_percent,
            'uptime': self.uptime,
            'last_seen_timestamp': self.last_seen_timestamp,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
