"""Domain models for the octree index.

- geometry: UTM coordinates and georeferenced boxes
- records: Workspace, Dataset and GridCell registry records
- datablock: Octree nodes and id arithmetic
- documents: Persisted document shapes (pydantic)
"""
