"""Persistence contracts and backends.

- base: async store interfaces and the ``Stores`` bundle
- memory: in-process document stores (JSON documents behind a lock)
- azure_blob: ``BlobStore`` on Azure Blob Storage
"""
