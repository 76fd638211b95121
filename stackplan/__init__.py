"""
stackplan - declarative resource-graph provisioning core.

This package contains the modules of the stackplan system:
- core: exception hierarchy and logging setup
- config: Pydantic settings and deployment unit loading
- models: resource nodes, deployment units, plans and state snapshots
- graph: dependency graph builder, plan resolver and diff engine
- execution: planner, retry policy and the execution driver
- providers: provider protocol and the simulated in-memory provider
- state: state persistence stores (in-memory and Redis)
- monitoring: Prometheus metrics
- orchestration: multi-unit deployments with cross-unit inputs
- topology: reference three-tier workflow-automation topology
"""

__version__ = "0.1.0"
