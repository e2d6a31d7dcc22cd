"""Client library: API/stream client and talkgroup activity aggregation."""

from radiomonitor.client.aggregator import (
    TalkgroupAggregator,
    TalkgroupEntry,
    TalkgroupState,
    ViewOptions,
)
from radiomonitor.client.monitor import LiveMonitor, MonitorClient, MonitorError

__all__ = [
    "LiveMonitor",
    "MonitorClient",
    "MonitorError",
    "TalkgroupAggregator",
    "TalkgroupEntry",
    "TalkgroupState",
    "ViewOptions",
]
