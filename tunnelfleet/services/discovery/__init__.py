"""
Server Discovery Package

Finds coordination servers without hardcoded addresses: static list, DNS SRV,
local broadcast and bounded subnet sweep, merged and ranked by one engine.
"""

from .engine import DiscoveryEngine, build_discovery_engine
from .responder import DiscoveryResponder
from .schemas import ServerCandidate, merge_candidates, rank_candidates
from .strategies import (
    BroadcastStrategy,
    DiscoveryStrategy,
    DnsSrvStrategy,
    StaticListStrategy,
    SubnetSweepStrategy,
)

__all__ = [
    'DiscoveryEngine',
    'build_discovery_engine',
    'DiscoveryResponder',
    'ServerCandidate',
    'merge_candidates',
    'rank_candidates',
    'DiscoveryStrategy',
    'StaticListStrategy',
    'DnsSrvStrategy',
    'BroadcastStrategy',
    'SubnetSweepStrategy',
]
