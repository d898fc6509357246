"""Operations exposed to the transport layer.

- workspaces: create/get/list workspaces
- datasets: create/get/list datasets, octree statistics
- query: node lookup, region queries and artifact retrieval
"""
