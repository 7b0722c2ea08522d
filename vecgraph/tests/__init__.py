"""
Tests Module: Unit and Integration Tests

Test Coverage:
    - Core types, configuration and the Result monad
    - Distance kernels and asymmetric (quantized) distance
    - Scalar and product quantization
    - Proximity graph (insert, search, delete, compaction, snapshot)
    - Vector store, blob backends and persisted layout
    - Index engine (query path, hot swap, read-only mode, reopen)
    - Concurrent readers with a writer
"""
