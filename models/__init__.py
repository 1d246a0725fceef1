from .base import Base
from .pod import Pod, PodMetricsHistory
from .geolocation import IpGeolocation
from .system_metrics import SystemMetrics

__all__ = ['Base', 'Pod', 'PodMetricsHistory', 'IpGeolocation', 'SystemMetrics']
