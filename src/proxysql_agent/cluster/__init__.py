"""
Cluster membership: pod feed, event reconciler, watermark poller and
satellite resync.
"""

from proxysql_agent.cluster.feed import KubeConfig, MembershipFeed, member_from_pod
from proxysql_agent.cluster.reconciler import MembershipReconciler
from proxysql_agent.cluster.satellite import SatelliteResync
from proxysql_agent.cluster.watermark import Watermark, WatermarkPoller, membership_digest

__all__ = [
    "KubeConfig",
    "MembershipFeed",
    "MembershipReconciler",
    "SatelliteResync",
    "Watermark",
    "WatermarkPoller",
    "member_from_pod",
    "membership_digest",
]
