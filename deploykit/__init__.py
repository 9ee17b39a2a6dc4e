"""
DeployKit — Package Initializer
================================

What: Deployment envelope for a service backed by a primary and a test
      PostgreSQL datastore: parameter set, topology, build pipeline,
      readiness probes and the application runtime shell.

Architecture Note:

    ┌─────────────────────────────────────┐
    │      CLI (cli.py) / Runtime shell   │  ← entry points
    ├─────────────────────────────────────┤
    │   Services (topology, build, probe) │  ← planning, validation, execution
    ├─────────────────────────────────────┤
    │   Schemas (pydantic models)         │  ← topology, build, HTTP contracts
    ├─────────────────────────────────────┤
    │   Config / Substitution / Database  │  ← parameter set, ${NAME}, engine
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
