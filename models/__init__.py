from .base import Base
from .node import Node
from .snapshot import NodeSnapshot
from .network_stats import NetworkStats
from .error_log import ErrorLog
from .geo_cache import GeoCache

__all__ = ['Base', 'Node', 'NodeSnapshot', 'NetworkStats', 'ErrorLog', 'GeoCache']
