"""Point-cloud engine adapters.

- base: ``PointCloudEngine`` contract, result types and ``ToolFailureError``
- lastools: LAStools command-line adapter (laspy/pyproj for header reads)
- factory: name → engine registry
"""
