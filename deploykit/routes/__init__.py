"""
DeployKit — Runtime Shell Routes
=================================

Route Inventory:
    - health.py:  GET /health   (datastore connectivity, uptime)

Business endpoints of the deployed application are not part of this package.
"""
