"""LiDAR Octree Index.

Indexes large aerial point-cloud datasets for spatial range queries by
splitting each dataset into UTM grid cells and building one octree per
cell.  Octree nodes (datablocks) are persisted as binary artifacts in a
blob store with metadata in a document store, and region queries walk
the stored trees with overlap pruning.
"""

__version__ = "0.1.0"
