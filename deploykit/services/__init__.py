"""
DeployKit — Services Layer
===========================

Service Inventory:
    - topology_service: declare, validate, resolve and render the topology
    - build_service:    plan, render, cache-key and run the image build
    - probe_service:    readiness probe state machine and executors
    - process:          subprocess helpers shared by build and probe
"""
