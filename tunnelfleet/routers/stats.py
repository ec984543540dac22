from fastapi import APIRouter, Depends

from tunnelfleet.dependencies.registry import get_statistics_aggregator
from tunnelfleet.schemas.client import FleetStatisticsResponse
from tunnelfleet.services.statistics import StatisticsAggregator

router = APIRouter()


@router.get("/stats", response_model=FleetStatisticsResponse)
def fleet_statistics(aggregator: StatisticsAggregator = Depends(get_statistics_aggregator)):
    """Fleet-wide counts, recomputed from the registry on every call"""
    return FleetStatisticsResponse.from_statistics(aggregator.collect())
