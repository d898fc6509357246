"""Single-unit build steps called by the orchestrator phases.

- zone_files: stage uploads, detect zones, merge per zone
- discover_cells: candidate grid cells and per-cell root extraction
- persist_datablock: finalize a node and write blob + metadata
"""
