"""
Chaos 'probes' module.

*Probes* gather and return replica set state (container status, member
roles, primary) without changing it.
"""
