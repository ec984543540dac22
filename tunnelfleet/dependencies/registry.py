"""
Dependency injection for the Client Registry and Statistics Aggregator
"""

from fastapi import Request

from tunnelfleet.services.registry import ClientRegistry
from tunnelfleet.services.statistics import StatisticsAggregator


def get_client_registry(request: Request) -> ClientRegistry:
    """
    The registry owned by the running application.

    One instance per app, created by the application factory and loaded
    from the store before the first request is served.
    """
    return request.app.state.registry


def get_statistics_aggregator(request: Request) -> StatisticsAggregator:
    return request.app.state.statistics
