"""
carrier_ethernet

This package is the service orchestration core for Carrier Ethernet networks.

Layout:
core contains shared data structures, errors and serialization
topology contains the topology capability, an in memory graph and
  StaticTopologyLoader, which builds the graph from a JSON file
registry contains the shared interface pools and interface discovery
backend contains packet node adapters that program forwarding and meters:
  InMemoryPacketNode for tests and dry runs, ObjectivePacketNode for devices
  reached through a DeviceClient
orchestration contains bandwidth, forwarding construct and EVC logic
rest contains the thin EVC resource and its JSON codec
service wires everything together behind one facade
"""
