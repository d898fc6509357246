"""Octree construction.

- sizing: per-depth target point counts (fixed or distributed)
- builder: recursive per-cell octree builder
"""
