"""
Batcher — Infrastructure

Ambient services shared by the scheduling core: structured logging,
layered YAML configuration, and the health/status HTTP endpoint.
"""
