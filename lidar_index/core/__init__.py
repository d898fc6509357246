"""Core utilities and shared infrastructure.

- config: Configuration loading and validation
- constants: Named constants, file tags, blob path prefixes
- exceptions: Custom exception hierarchy
- workdir: Scratch and request-scoped working directories
"""
