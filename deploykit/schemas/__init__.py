"""
DeployKit — Schemas
====================

    - topology.py: service definitions, readiness probes, mounts, ports
    - build.py:    toolchains, build stages, artifacts, layer keys
    - health.py:   HTTP response models of the runtime shell
"""
