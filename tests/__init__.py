"""
Bike-sharing demand test suite

Tests live under tests/bikeshare/:
- test_features.py: transformer fit/apply parity and fail-loud gates
- test_pipeline.py: stage ordering, timeouts and failure routing
- test_registry.py: bundle validation and best-model selection
- test_serving.py: fallback, alias-aware peaks, memoised queries
- test_end_to_end.py: smoke run on synthetic data
"""
