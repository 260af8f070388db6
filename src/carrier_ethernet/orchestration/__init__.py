"""
Orchestration package.

Bandwidth admission, forwarding constructs and EVCs, layered in that order.
The EVC orchestrator only reaches the network through the forwarding construct
orchestrator, which only reaches meters through the bandwidth manager.
"""

from carrier_ethernet.orchestration.bandwidth import BandwidthProfileManager
from carrier_ethernet.orchestration.evc import EvcOrchestrator
from carrier_ethernet.orchestration.fc import ForwardingConstructOrchestrator

__all__ = ["BandwidthProfileManager", "EvcOrchestrator", "ForwardingConstructOrchestrator"]
