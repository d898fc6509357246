"""Add-data build orchestration.

- phases: zoning, cell discovery and build phases with typed results
- build_pipeline: dataset state machine, exclusion, cleanup, replication
"""
